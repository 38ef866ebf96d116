"""
Second-factor enrollment: setup -> confirm -> (disable).

Backup codes are issued the first time a method is confirmed and are shown
only in that response (or after an explicit regeneration).
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete, update

from clinic_backend import totp
from clinic_backend.auth_models import EmailTokenType, PreAuthRecord, User
from clinic_backend.auth_security import new_numeric_code
from clinic_backend.auth_service import check_password, get_user_by_id
from clinic_backend.backup_codes import issue_backup_codes, remaining_backup_codes, revoke_backup_codes
from clinic_backend.config import Settings, get_settings
from clinic_backend.db import db_session, utcnow
from clinic_backend.email_tokens import consume_token, create_token
from clinic_backend.errors import InvalidCode, InvalidCredentials, InvalidRequest, MethodNotEnrolled
from clinic_backend.mail_service import MailService
from clinic_backend.two_factor import accept_totp_step
from clinic_backend.validation import Invalid, TwoFactorMethod, validate_method, validate_otp

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TwoFactorStatus:
    authenticator_enabled: bool
    email_enabled: bool
    remaining_backup_codes: int = 0
    backup_codes: list[str] | None = None  # only right after issuance

    def as_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "twoFactorAuthenticatorEnabled": self.authenticator_enabled,
            "twoFactorEmailEnabled": self.email_enabled,
            "remainingBackupCodes": self.remaining_backup_codes,
        }
        if self.backup_codes is not None:
            out["backupCodes"] = list(self.backup_codes)
        return out


@dataclass(frozen=True)
class AuthenticatorSetup:
    secret: str
    otpauth_uri: str
    qr_code_data_uri: str


def _user(user_id: str) -> User:
    u = get_user_by_id(user_id)
    if u is None or not u.is_active:
        raise InvalidCredentials()
    return u


def _is_enabled(u: User, method: TwoFactorMethod) -> bool:
    if method is TwoFactorMethod.AUTHENTICATOR:
        return u.two_factor_authenticator_enabled
    return u.two_factor_email_enabled


def _code(code: str | None) -> str:
    otp = validate_otp(code)
    if isinstance(otp, Invalid):
        raise InvalidCode()
    return otp.value


def two_factor_status(user_id: str, backup_codes: list[str] | None = None) -> TwoFactorStatus:
    u = _user(user_id)
    return TwoFactorStatus(
        authenticator_enabled=u.two_factor_authenticator_enabled,
        email_enabled=u.two_factor_email_enabled,
        remaining_backup_codes=remaining_backup_codes(user_id),
        backup_codes=backup_codes,
    )


def setup_two_factor(
    user_id: str,
    method: str | TwoFactorMethod,
    mail: MailService,
    now: datetime | None = None,
    settings: Settings | None = None,
) -> AuthenticatorSetup | None:
    """
    authenticator: new secret kept as pending until confirmed; returns the
    provisioning data (secret, otpauth URI, QR code).
    email: sends a setup code; returns None.
    """
    settings = settings or get_settings()
    method = validate_method(method, enrollable_only=True).unwrap()
    u = _user(user_id)
    if _is_enabled(u, method):
        raise InvalidRequest(f"Two-factor method '{method.value}' is already enabled.")

    if method is TwoFactorMethod.AUTHENTICATOR:
        secret = totp.new_secret()
        with db_session() as s:
            s.execute(update(User).where(User.id == user_id).values(totp_pending_secret=secret))
        uri = totp.provisioning_uri(secret, u.email, settings.totp_issuer)
        return AuthenticatorSetup(secret=secret, otpauth_uri=uri, qr_code_data_uri=totp.qr_data_uri(uri))

    code = new_numeric_code()
    create_token(
        user_id,
        EmailTokenType.TWO_FACTOR_SETUP,
        code,
        timedelta(minutes=settings.email_code_ttl_minutes),
        now=now,
        settings=settings,
    )
    mail.send_two_factor_code(u.email, u.first_name, code)
    return None


def confirm_two_factor(
    user_id: str,
    method: str | TwoFactorMethod,
    code: str,
    now: datetime | None = None,
    settings: Settings | None = None,
) -> TwoFactorStatus:
    settings = settings or get_settings()
    now = now or utcnow()
    method = validate_method(method, enrollable_only=True).unwrap()
    u = _user(user_id)
    if _is_enabled(u, method):
        raise InvalidRequest(f"Two-factor method '{method.value}' is already enabled.")
    code = _code(code)

    if method is TwoFactorMethod.AUTHENTICATOR:
        if not u.totp_pending_secret:
            raise InvalidRequest("Start the authenticator setup first.")
        step = totp.matching_step(u.totp_pending_secret, code, now, window=settings.totp_valid_window)
        if step is None:
            raise InvalidCode()
        with db_session() as s:
            s.execute(
                update(User)
                .where(User.id == user_id)
                .values(
                    totp_secret=u.totp_pending_secret,
                    totp_pending_secret=None,
                    totp_last_step=step,
                    two_factor_authenticator_enabled=True,
                )
            )
    else:
        if consume_token(code, EmailTokenType.TWO_FACTOR_SETUP, now=now, user_id=user_id, settings=settings) is None:
            raise InvalidCode()
        with db_session() as s:
            s.execute(update(User).where(User.id == user_id).values(two_factor_email_enabled=True))

    logger.info("Two-factor method enabled (%s): user %s", method.value, user_id)

    codes = None
    if remaining_backup_codes(user_id) == 0:
        codes = issue_backup_codes(user_id, now=now, settings=settings)
    return two_factor_status(user_id, backup_codes=codes)


def request_disable_code(
    user_id: str,
    mail: MailService,
    now: datetime | None = None,
    settings: Settings | None = None,
) -> None:
    """Email code required to switch email 2FA off."""
    settings = settings or get_settings()
    u = _user(user_id)
    if not u.two_factor_email_enabled:
        raise MethodNotEnrolled()
    code = new_numeric_code()
    create_token(
        user_id,
        EmailTokenType.TWO_FACTOR_DISABLE,
        code,
        timedelta(minutes=settings.email_code_ttl_minutes),
        now=now,
        settings=settings,
    )
    mail.send_two_factor_code(u.email, u.first_name, code)


def disable_two_factor(
    user_id: str,
    method: str | TwoFactorMethod,
    password: str,
    code: str,
    now: datetime | None = None,
    settings: Settings | None = None,
) -> TwoFactorStatus:
    """
    Needs the password and a current code of the method being disabled.
    With no method left, backup codes and pending logins are dropped.
    """
    settings = settings or get_settings()
    now = now or utcnow()
    method = validate_method(method, enrollable_only=True).unwrap()
    u = _user(user_id)
    if not check_password(user_id, password):
        raise InvalidCredentials()
    if not _is_enabled(u, method):
        raise MethodNotEnrolled()
    code = _code(code)

    if method is TwoFactorMethod.AUTHENTICATOR:
        if not u.totp_secret:
            raise InvalidCode()
        step = totp.matching_step(u.totp_secret, code, now, window=settings.totp_valid_window)
        if step is None or not accept_totp_step(user_id, step):
            raise InvalidCode()
        values: dict[str, Any] = {
            "two_factor_authenticator_enabled": False,
            "totp_secret": None,
            "totp_pending_secret": None,
            "totp_last_step": None,
        }
        still_enabled = u.two_factor_email_enabled
    else:
        if consume_token(code, EmailTokenType.TWO_FACTOR_DISABLE, now=now, user_id=user_id, settings=settings) is None:
            raise InvalidCode()
        values = {"two_factor_email_enabled": False}
        still_enabled = u.two_factor_authenticator_enabled

    with db_session() as s:
        s.execute(update(User).where(User.id == user_id).values(**values))
        if not still_enabled:
            s.execute(delete(PreAuthRecord).where(PreAuthRecord.user_id == user_id))

    if not still_enabled:
        revoke_backup_codes(user_id)

    logger.info("Two-factor method disabled (%s): user %s", method.value, user_id)
    return two_factor_status(user_id)


def regenerate_backup_codes(
    user_id: str,
    password: str,
    now: datetime | None = None,
    settings: Settings | None = None,
) -> TwoFactorStatus:
    u = _user(user_id)
    if not check_password(user_id, password):
        raise InvalidCredentials()
    if not u.two_factor_enabled:
        raise InvalidRequest("Two-factor authentication is not enabled.")
    codes = issue_backup_codes(user_id, now=now, settings=settings)
    return two_factor_status(user_id, backup_codes=codes)
