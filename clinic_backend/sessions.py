"""
Full sessions: a short-lived access JWT plus a refresh JWT.

Only the refresh jti stored on the user is honoured. Refreshing rotates it,
logout and password reset clear it.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import update

from clinic_backend.auth_models import User
from clinic_backend.auth_security import create_access_token, create_refresh_token, decode_refresh_token, new_jti
from clinic_backend.auth_service import get_user_by_id
from clinic_backend.config import Settings, get_settings
from clinic_backend.db import db_session, utcnow
from clinic_backend.errors import AccountLocked, InvalidRefreshToken

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Session:
    """Fully authenticated session (bearer JWT + refresh token)."""
    access_token: str
    refresh_token: str
    user_id: str
    email: str
    token_type: str = "bearer"


def _issue(user: User, jti: str, settings: Settings) -> Session:
    return Session(
        access_token=create_access_token(subject=user.id, extra={"email": user.email}, settings=settings),
        refresh_token=create_refresh_token(user.id, jti, settings),
        user_id=user.id,
        email=user.email,
    )


def open_session(user: User, settings: Settings | None = None) -> Session:
    """New session for a user who passed every factor; older refresh tokens stop working."""
    settings = settings or get_settings()
    jti = new_jti()
    with db_session() as s:
        s.execute(update(User).where(User.id == user.id).values(refresh_jti=jti))
    return _issue(user, jti, settings)


def refresh_session(refresh_token: str, now: datetime | None = None, settings: Settings | None = None) -> Session:
    settings = settings or get_settings()
    payload = decode_refresh_token(refresh_token, settings)
    if payload is None:
        raise InvalidRefreshToken()

    user = get_user_by_id(payload["sub"])
    if user is None or not user.is_active:
        raise InvalidRefreshToken()
    if user.is_locked(now or utcnow()):
        raise AccountLocked()

    jti = new_jti()
    with db_session() as s:
        res = s.execute(
            update(User)
            .where(User.id == user.id, User.refresh_jti == payload["jti"])
            .values(refresh_jti=jti)
        )
        rotated = res.rowcount == 1
    if not rotated:
        # already rotated, logged out or superseded by a newer login
        raise InvalidRefreshToken()
    return _issue(user, jti, settings)


def logout(user_id: str) -> None:
    with db_session() as s:
        s.execute(update(User).where(User.id == user_id).values(refresh_jti=None))
    logger.info("Logout: user %s", user_id)
