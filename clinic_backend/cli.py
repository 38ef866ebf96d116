from __future__ import annotations

import argparse
import logging

from clinic_backend.auth_service import create_user, get_user_by_email, list_users, unlock_user
from clinic_backend.backup_codes import issue_backup_codes
from clinic_backend.config import get_settings
from clinic_backend.db import init_db
from clinic_backend.email_tokens import cleanup_expired
from clinic_backend.mail_service import mark_email_sent, pending_emails
from clinic_backend.preauth_store import PreAuthStore
from clinic_backend.seed import seed_demo_users


def cmd_init(args: argparse.Namespace) -> None:
    init_db()
    if args.demo:
        seed_demo_users()
    print("Database initialised." + (" Demo users loaded." if args.demo else ""))


def cmd_create_user(args: argparse.Namespace) -> None:
    uid = create_user(args.email, args.password, args.first_name, args.last_name, verified=True)
    print(f"User created: {uid}")


def cmd_list_users(args: argparse.Namespace) -> None:
    users = list_users()
    if not users:
        print("No users.")
        return
    for u in users:
        methods = [name for name, on in (("authenticator", u.two_factor_authenticator_enabled),
                                         ("email", u.two_factor_email_enabled)) if on]
        flags = "active" if u.is_active else "inactive"
        if not u.is_verified:
            flags += ",unverified"
        if u.locked_until:
            flags += f",locked until {u.locked_until.isoformat(timespec='seconds')}"
        print(f"{u.id} | {u.email} | {u.last_name} {u.first_name} | 2FA: {'+'.join(methods) or '-'} | {flags}")


def cmd_unlock(args: argparse.Namespace) -> None:
    ok = unlock_user(args.email)
    print("Unlocked." if ok else "User not found.")


def cmd_backup_codes(args: argparse.Namespace) -> None:
    """Operator reset: replaces the user's backup codes and prints them once."""
    u = get_user_by_email(args.email)
    if not u:
        print("User not found.")
        return
    if not u.two_factor_enabled:
        print("Two-factor authentication is not enabled for this user.")
        return
    for code in issue_backup_codes(u.id):
        print(code)


def cmd_purge(args: argparse.Namespace) -> None:
    sessions = PreAuthStore().purge_expired()
    tokens = cleanup_expired()
    print(f"Expired pre-auth sessions removed: {sessions}. Stale email tokens removed: {tokens}.")


def cmd_notifications(args: argparse.Namespace) -> None:
    """
    Stands in for the external mail system:
    - reads pending outbox emails
    - prints them
    - optionally marks them as sent
    """
    pending = pending_emails(limit=args.limit)
    if not pending:
        print("No pending emails.")
        return

    for e in pending:
        print(f"[{e.id}] {e.template} | {e.created_at.isoformat()} | to {e.recipient} | {e.subject}")
        if args.show_body:
            print(e.body)
            print()
        if args.mark_sent:
            mark_email_sent(e.id)

    if args.mark_sent:
        print("Emails marked as sent.")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="clinic_backend_cli", description="Clinic backend CLI (accounts and outbox)")
    sub = p.add_subparsers(required=True)

    p_init = sub.add_parser("init", help="Create the database tables")
    p_init.add_argument("--demo", action="store_true", help="Also load the demo users")
    p_init.set_defaults(func=cmd_init)

    p_user = sub.add_parser("create-user", help="Create a confirmed staff account")
    p_user.add_argument("--email", required=True)
    p_user.add_argument("--password", required=True)
    p_user.add_argument("--first-name", required=True)
    p_user.add_argument("--last-name", required=True)
    p_user.set_defaults(func=cmd_create_user)

    p_list = sub.add_parser("list-users", help="List accounts")
    p_list.set_defaults(func=cmd_list_users)

    p_unlock = sub.add_parser("unlock", help="Clear the lockout of an account")
    p_unlock.add_argument("--email", required=True)
    p_unlock.set_defaults(func=cmd_unlock)

    p_codes = sub.add_parser("backup-codes", help="Issue a fresh set of backup codes")
    p_codes.add_argument("--email", required=True)
    p_codes.set_defaults(func=cmd_backup_codes)

    p_purge = sub.add_parser("purge", help="Remove expired pre-auth sessions and stale email tokens")
    p_purge.set_defaults(func=cmd_purge)

    p_not = sub.add_parser("notifications", help="Read pending outbox emails (delivery simulation)")
    p_not.add_argument("--limit", type=int, default=50)
    p_not.add_argument("--show-body", action="store_true", help="Print the message bodies too")
    p_not.add_argument("--mark-sent", action="store_true", help="Mark as sent after printing")
    p_not.set_defaults(func=cmd_notifications)

    return p


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=get_settings().log_level, format="%(levelname)s %(name)s: %(message)s")
    init_db()  # makes sure the tables exist
    args.func(args)


if __name__ == "__main__":
    main()
