from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import delete, select, update

from clinic_backend.auth_models import EmailToken, EmailTokenType, PreAuthRecord, User
from clinic_backend.auth_security import hash_password, new_link_token, verify_password
from clinic_backend.config import Settings, get_settings
from clinic_backend.db import db_session, utcnow
from clinic_backend.email_tokens import consume_token, create_token, peek_token
from clinic_backend.errors import AccountLocked, InvalidCredentials, InvalidRequest
from clinic_backend.mail_service import MailService
from clinic_backend.validation import normalize_email, validate_credentials, validate_password, validate_registration

logger = logging.getLogger(__name__)

CONFIRMATION_TTL = timedelta(hours=24)
PASSWORD_RESET_TTL = timedelta(hours=1)


def create_user(
    email: str,
    password: str,
    first_name: str,
    last_name: str,
    verified: bool = True,
) -> str:
    reg = validate_registration(email, password, first_name, last_name).unwrap()

    with db_session() as s:
        exists = s.execute(select(User).where(User.email == reg.email)).scalar_one_or_none()
        if exists:
            raise InvalidRequest("Email already registered.")

        u = User(
            email=reg.email,
            password_hash=hash_password(reg.password),
            first_name=reg.first_name,
            last_name=reg.last_name,
            is_active=True,
            is_verified=verified,
        )
        s.add(u)
        s.flush()
        return u.id


def register_user(
    email: str,
    password: str,
    first_name: str,
    last_name: str,
    mail: MailService,
    now: datetime | None = None,
) -> str:
    """
    Self-service sign up: the account stays unverified (no login) until the
    confirmation link is opened.
    """
    user_id = create_user(email, password, first_name, last_name, verified=False)
    token = new_link_token()
    create_token(user_id, EmailTokenType.EMAIL_CONFIRMATION, token, CONFIRMATION_TTL, now=now)
    mail.send_user_confirmation(normalize_email(email), first_name.strip(), token)
    logger.info("User registered: %s", user_id)
    return user_id


def confirm_email(token: str, now: datetime | None = None) -> bool:
    user_id = consume_token(token, EmailTokenType.EMAIL_CONFIRMATION, now=now)
    if not user_id:
        return False
    with db_session() as s:
        s.execute(update(User).where(User.id == user_id).values(is_verified=True))
    logger.info("Email confirmed for user %s", user_id)
    return True


def resend_confirmation(email: str, mail: MailService, now: datetime | None = None) -> None:
    """New confirmation link for an unconfirmed account; silent otherwise."""
    u = get_user_by_email(email)
    if not u or not u.is_active or u.is_verified:
        logger.info("Confirmation resend skipped: unknown, inactive or already confirmed account")
        return
    token = new_link_token()
    create_token(u.id, EmailTokenType.EMAIL_CONFIRMATION, token, CONFIRMATION_TTL, now=now)
    mail.send_user_confirmation(u.email, u.first_name, token)


def get_user_by_id(user_id: str) -> User | None:
    with db_session() as s:
        return s.get(User, user_id)


def get_user_by_email(email: str) -> User | None:
    email = normalize_email(email)
    with db_session() as s:
        return s.execute(select(User).where(User.email == email)).scalar_one_or_none()


def list_users() -> list[User]:
    with db_session() as s:
        return list(s.scalars(select(User).order_by(User.email)))


def authenticate(
    email: str,
    password: str,
    now: datetime | None = None,
    settings: Settings | None = None,
) -> User:
    """
    Primary credential check.
    - unknown email, wrong password, inactive or unconfirmed account -> InvalidCredentials
    - lock in force                                                  -> AccountLocked
    Wrong passwords count towards the lockout policy.
    """
    settings = settings or get_settings()
    now = now or utcnow()

    creds = validate_credentials(email, password)
    if not creds.ok:
        raise InvalidCredentials()
    creds = creds.unwrap()

    u = get_user_by_email(creds.email)
    if not u:
        raise InvalidCredentials()
    if u.is_locked(now):
        raise AccountLocked()
    if not u.is_active or not u.is_verified:
        raise InvalidCredentials()

    if not verify_password(creds.password, u.password_hash):
        if record_failed_attempt(u.id, now=now, settings=settings):
            raise AccountLocked()
        raise InvalidCredentials()

    return u


def record_failed_attempt(
    user_id: str,
    now: datetime | None = None,
    settings: Settings | None = None,
) -> bool:
    """
    Bump the per-account failure counter (wrong passwords and wrong second
    factors). Returns True when this failure locked the account.
    """
    settings = settings or get_settings()
    now = now or utcnow()

    with db_session() as s:
        u = s.get(User, user_id)
        if u is None:
            return False
        if u.locked_until is not None and now >= u.locked_until:
            # previous lock is over: start counting again
            u.locked_until = None
            u.failed_login_attempts = 0

        u.failed_login_attempts += 1
        if u.failed_login_attempts < settings.login_max_failures:
            return False

        u.locked_until = now + timedelta(minutes=settings.lock_minutes)
        u.failed_login_attempts = 0
        # no half-finished login survives the lock
        s.execute(delete(PreAuthRecord).where(PreAuthRecord.user_id == user_id))
        s.execute(
            delete(EmailToken).where(
                EmailToken.user_id == user_id, EmailToken.type == EmailTokenType.TWO_FACTOR_LOGIN
            )
        )

    logger.warning("Account %s locked for %d minutes", user_id, settings.lock_minutes)
    return True


def record_successful_login(user_id: str, now: datetime | None = None, ip_address: str | None = None) -> None:
    with db_session() as s:
        s.execute(
            update(User)
            .where(User.id == user_id)
            .values(
                failed_login_attempts=0,
                locked_until=None,
                login_count=User.login_count + 1,
                last_login_at=now or utcnow(),
                last_login_ip=ip_address,
            )
        )


def unlock_user(email: str) -> bool:
    email = normalize_email(email)
    with db_session() as s:
        res = s.execute(
            update(User).where(User.email == email).values(failed_login_attempts=0, locked_until=None)
        )
        return res.rowcount == 1


def forgot_password(email: str, mail: MailService, now: datetime | None = None) -> None:
    """Same outcome whether or not the account exists."""
    u = get_user_by_email(email)
    if not u or not u.is_active:
        logger.info("Password reset requested for an unknown or inactive account")
        return
    token = new_link_token()
    create_token(u.id, EmailTokenType.PASSWORD_RESET, token, PASSWORD_RESET_TTL, now=now)
    mail.send_password_reset(u.email, u.first_name, token)


def validate_reset_token(token: str, now: datetime | None = None) -> bool:
    """Lets the reset form check a link before asking for the new password."""
    return peek_token(token, EmailTokenType.PASSWORD_RESET, now=now) is not None


def reset_password(token: str, new_password: str, now: datetime | None = None) -> bool:
    password = validate_password(new_password).unwrap()
    user_id = consume_token(token, EmailTokenType.PASSWORD_RESET, now=now)
    if not user_id:
        return False

    with db_session() as s:
        s.execute(
            update(User)
            .where(User.id == user_id)
            .values(
                password_hash=hash_password(password),
                failed_login_attempts=0,
                locked_until=None,
                refresh_jti=None,
            )
        )
        # half-finished logins started with the old password
        s.execute(delete(PreAuthRecord).where(PreAuthRecord.user_id == user_id))

    logger.info("Password reset for user %s", user_id)
    return True


def check_password(user_id: str, password: str) -> bool:
    u = get_user_by_id(user_id)
    return bool(u) and verify_password(password, u.password_hash)
