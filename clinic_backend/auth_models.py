from __future__ import annotations

import enum
import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Enum, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from clinic_backend.db import Base, utcnow


def new_uuid() -> str:
    return str(uuid.uuid4())


class PreAuthState(enum.Enum):
    PENDING = "PENDING"
    # transient claim held by the single verify call allowed to run
    VERIFYING = "VERIFYING"


class EmailTokenType(enum.Enum):
    TWO_FACTOR_LOGIN = "TWO_FACTOR_LOGIN"
    TWO_FACTOR_SETUP = "TWO_FACTOR_SETUP"
    TWO_FACTOR_DISABLE = "TWO_FACTOR_DISABLE"
    EMAIL_CONFIRMATION = "EMAIL_CONFIRMATION"
    PASSWORD_RESET = "PASSWORD_RESET"


class User(Base):
    """
    Application user (clinic staff).
    - unique, lower-cased email
    - password_hash with bcrypt (passlib)
    - second factors: authenticator (TOTP) and/or email codes
    """
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    last_name: Mapped[str] = mapped_column(String(100), nullable=False, default="")

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    two_factor_authenticator_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    two_factor_email_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    totp_secret: Mapped[str | None] = mapped_column(String(64), nullable=True)
    # secret generated by setup, promoted to totp_secret once confirmed
    totp_pending_secret: Mapped[str | None] = mapped_column(String(64), nullable=True)
    # last accepted TOTP time step (anti-replay)
    totp_last_step: Mapped[int | None] = mapped_column(Integer, nullable=True)

    failed_login_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    locked_until: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    login_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_login_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_login_ip: Mapped[str | None] = mapped_column(String(45), nullable=True)
    # jti of the one refresh token currently honoured (None: logged out)
    refresh_jti: Mapped[str | None] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    backup_codes: Mapped[list["BackupCode"]] = relationship(back_populates="user", cascade="all, delete-orphan")

    @property
    def two_factor_enabled(self) -> bool:
        return self.two_factor_authenticator_enabled or self.two_factor_email_enabled

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and now < self.locked_until

    def __repr__(self) -> str:
        return f"User({self.email})"


class BackupCode(Base):
    """Single-use fallback code; only its keyed hash is stored."""
    __tablename__ = "backup_codes"
    __table_args__ = (
        UniqueConstraint("user_id", "code_hash", name="uq_backup_code_user_hash"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    code_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    used_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    user: Mapped["User"] = relationship(back_populates="backup_codes")


class PreAuthRecord(Base):
    """
    Server side of a PreAuthSession: bridges primary-credential success and
    second-factor completion. Deleted on promotion or revocation.
    """
    __tablename__ = "preauth_sessions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    jti: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)

    authenticator_available: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    email_available: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    state: Mapped[PreAuthState] = mapped_column(Enum(PreAuthState), default=PreAuthState.PENDING, nullable=False)
    failed_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)


class EmailToken(Base):
    """
    Codes and links delivered by email (2FA codes, confirmation, password reset).
    Only the keyed hash is stored; single use via used_at.
    """
    __tablename__ = "email_tokens"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    token_hash: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    type: Mapped[EmailTokenType] = mapped_column(Enum(EmailTokenType), nullable=False)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    # set only for TWO_FACTOR_LOGIN codes
    preauth_jti: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    used_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    def is_valid(self, now: datetime) -> bool:
        return self.used_at is None and now < self.expires_at
