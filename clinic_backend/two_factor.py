"""
Two-factor handshake.

    Unauthenticated --initiate--> PendingSecondFactor --verify--> Authenticated
                                          |
                                          +--> Expired (TTL elapsed)
                                          +--> Revoked (too many failed codes)

The client only ever holds a signed pre-auth token; the record it points at
(`PreAuthRecord`, looked up by jti) is the source of truth for expiry,
enrolled methods and attempts.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

from sqlalchemy import or_, update

from clinic_backend import totp
from clinic_backend.auth_models import EmailTokenType, PreAuthRecord, User
from clinic_backend.auth_security import (
    create_preauth_token,
    decode_preauth_token,
    new_numeric_code,
    preauth_token_expired,
)
from clinic_backend.auth_service import authenticate, get_user_by_id, record_failed_attempt, record_successful_login
from clinic_backend.backup_codes import consume_backup_code
from clinic_backend.config import Settings, get_settings
from clinic_backend.db import db_session, utcnow
from clinic_backend.email_tokens import consume_token, create_token, last_login_code_at, revoke_session_tokens
from clinic_backend.errors import (
    AccountLocked,
    BackupCodeAlreadyUsed,
    EmailCodeCooldown,
    InvalidCode,
    MethodNotEnrolled,
    TokenExpired,
    TokenNotFound,
    infrastructure_errors,
)
from clinic_backend.mail_service import MailService
from clinic_backend.preauth_store import PreAuthStore
from clinic_backend.sessions import Session, open_session
from clinic_backend.validation import Invalid, TwoFactorMethod, validate_otp, validate_verify_request

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TwoFactorMethods:
    authenticator: bool
    email: bool

    def as_dict(self) -> dict[str, bool]:
        return {"authenticator": self.authenticator, "email": self.email}


@dataclass(frozen=True)
class PreAuthSession:
    two_factor_token: str
    email: str
    two_factor_methods: TwoFactorMethods
    expires_in: int  # seconds

    def as_dict(self) -> dict[str, Any]:
        return {
            "twoFactorToken": self.two_factor_token,
            "email": self.email,
            "twoFactorMethods": self.two_factor_methods.as_dict(),
            "expiresIn": self.expires_in,
        }


class TwoFactorHandshake:
    def __init__(
        self,
        store: PreAuthStore,
        mail: MailService,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.mail = mail
        self.settings = settings or get_settings()
        self.clock = clock

    # -------------------------
    # initiate
    # -------------------------
    def initiate(self, email: str, password: str, ip_address: str | None = None) -> PreAuthSession | Session:
        """
        Primary credentials. Accounts without a second factor get a session
        straight away; the others get a PreAuthSession.
        Each call creates an independent pre-auth record.
        """
        now = self.clock()
        with infrastructure_errors():
            user = authenticate(email, password, now=now, settings=self.settings)

            if not user.two_factor_enabled:
                record_successful_login(user.id, now=now, ip_address=ip_address)
                logger.info("Login without second factor: user %s", user.id)
                return self._session(user)

            rec = self.store.create(
                user.id,
                authenticator_available=user.two_factor_authenticator_enabled,
                email_available=user.two_factor_email_enabled,
                ttl_seconds=self.settings.preauth_ttl_seconds,
                now=now,
            )
            token = create_preauth_token(
                user.id, user.email, rec.jti, issued_at=now, expires_at=rec.expires_at, settings=self.settings
            )
            logger.info("Pre-auth session issued: user %s", user.id)

            if rec.email_available and not rec.authenticator_available:
                self._send_login_code(user, rec.jti, now)

        return PreAuthSession(
            two_factor_token=token,
            email=user.email,
            two_factor_methods=TwoFactorMethods(
                authenticator=rec.authenticator_available,
                email=rec.email_available,
            ),
            expires_in=self.settings.preauth_ttl_seconds,
        )

    def request_email_code(self, token: str) -> None:
        """
        (Re)send the email code for a pending session; older codes stop working.
        At most one code per EMAIL_CODE_RESEND_SECONDS.
        """
        now = self.clock()
        with infrastructure_errors():
            rec = self._lookup(token, now)
            if not rec.email_available:
                raise MethodNotEnrolled()
            last = last_login_code_at(rec.jti)
            if last is not None and now - last < timedelta(seconds=self.settings.email_code_resend_seconds):
                raise EmailCodeCooldown()
            user = get_user_by_id(rec.user_id)
            if user is None:
                raise TokenNotFound()
            self._send_login_code(user, rec.jti, now)

    # -------------------------
    # verify
    # -------------------------
    def verify(
        self,
        token: str,
        method: str | TwoFactorMethod,
        code: str,
        ip_address: str | None = None,
    ) -> Session:
        """
        Order of checks:
        1. token signature / record            -> TokenNotFound
        2. expiry (before anything about code) -> TokenExpired
           account lock in force               -> AccountLocked
        3. method enrolled                     -> MethodNotEnrolled
        4. atomic claim, lost race             -> TokenNotFound
        5. code                                -> InvalidCode / BackupCodeAlreadyUsed
        """
        req = validate_verify_request(token, method, code).unwrap()
        now = self.clock()

        with infrastructure_errors():
            rec = self._lookup(req.token, now)
            if not self._enrolled(rec, req.method):
                raise MethodNotEnrolled()

            if not self.store.claim(rec.jti):
                raise TokenNotFound()

            try:
                ok = self._check_code(rec, req.method, req.code, now)
            except BackupCodeAlreadyUsed:
                self._failed(rec, now)
                raise
            except Exception:
                self.store.release(rec.jti)
                raise

            if not ok:
                self._failed(rec, now)
                raise InvalidCode()

            if not self.store.consume(rec.jti):
                raise TokenNotFound()
            revoke_session_tokens(rec.jti)
            record_successful_login(rec.user_id, now=now, ip_address=ip_address)

            user = get_user_by_id(rec.user_id)
            if user is None:
                raise TokenNotFound()
            session = self._session(user)

        logger.info("Second factor accepted (%s): user %s", req.method.value, user.id)
        if req.method is TwoFactorMethod.BACKUP:
            self.mail.send_backup_code_used(user.email, user.first_name, ip_address or "unknown")
        return session

    # -------------------------
    # internals
    # -------------------------
    def _lookup(self, token: str, now: datetime) -> PreAuthRecord:
        payload = decode_preauth_token(token, self.settings)
        if payload is None:
            raise TokenNotFound()
        if preauth_token_expired(payload, now):
            raise TokenExpired()

        # a lock freezes every pending login of the account
        user = get_user_by_id(payload["sub"])
        if user is None:
            raise TokenNotFound()
        if user.is_locked(now):
            raise AccountLocked()

        rec = self.store.get(payload["jti"])
        if rec is None or rec.user_id != payload["sub"]:
            raise TokenNotFound()
        if now >= rec.expires_at:
            self.store.revoke(rec.jti)
            raise TokenExpired()
        return rec

    @staticmethod
    def _enrolled(rec: PreAuthRecord, method: TwoFactorMethod) -> bool:
        if method is TwoFactorMethod.AUTHENTICATOR:
            return rec.authenticator_available
        if method is TwoFactorMethod.EMAIL:
            return rec.email_available
        # backup codes come with any enrolled method
        return rec.authenticator_available or rec.email_available

    def _check_code(self, rec: PreAuthRecord, method: TwoFactorMethod, code: str, now: datetime) -> bool:
        if method is TwoFactorMethod.BACKUP:
            try:
                consume_backup_code(rec.user_id, code, now=now, settings=self.settings)
            except InvalidCode:
                return False
            return True

        otp = validate_otp(code)
        if isinstance(otp, Invalid):
            return False

        if method is TwoFactorMethod.EMAIL:
            return consume_token(
                otp.value,
                EmailTokenType.TWO_FACTOR_LOGIN,
                now=now,
                user_id=rec.user_id,
                preauth_jti=rec.jti,
                settings=self.settings,
            ) is not None

        user = get_user_by_id(rec.user_id)
        if user is None or not user.totp_secret:
            return False
        step = totp.matching_step(user.totp_secret, otp.value, now, window=self.settings.totp_valid_window)
        if step is None:
            return False
        return accept_totp_step(user.id, step)

    def _failed(self, rec: PreAuthRecord, now: datetime) -> None:
        revoked = self.store.release_failed(rec.jti, self.settings.preauth_max_attempts)
        if record_failed_attempt(rec.user_id, now=now, settings=self.settings):
            # the lock already dropped every pending session and its codes
            return
        if revoked:
            revoke_session_tokens(rec.jti)

    def _send_login_code(self, user: User, jti: str, now: datetime) -> None:
        code = new_numeric_code()
        create_token(
            user.id,
            EmailTokenType.TWO_FACTOR_LOGIN,
            code,
            timedelta(minutes=self.settings.email_code_ttl_minutes),
            now=now,
            preauth_jti=jti,
            settings=self.settings,
        )
        if not self.mail.send_two_factor_code(user.email, user.first_name, code):
            logger.warning("Two-factor code for user %s not delivered", user.id)

    def _session(self, user: User) -> Session:
        return open_session(user, self.settings)


def accept_totp_step(user_id: str, step: int) -> bool:
    """
    Record `step` as the last used TOTP step. False when the same or a later
    step was already accepted (replayed code).
    """
    with db_session() as s:
        res = s.execute(
            update(User)
            .where(User.id == user_id, or_(User.totp_last_step.is_(None), User.totp_last_step < step))
            .values(totp_last_step=step)
        )
        return res.rowcount == 1
