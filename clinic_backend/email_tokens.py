"""
Single-use tokens delivered by email (2FA codes, confirmation and reset links).

Only the keyed hash is stored. Short numeric codes are hashed together with
their scope (the pre-auth session for login codes, the user for setup and
disable codes) so equal codes issued to different people never collide.
Consumption is a conditional UPDATE on `used_at IS NULL`: a token can be
spent by exactly one caller.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import delete, or_, select, update

from clinic_backend.auth_models import EmailToken, EmailTokenType
from clinic_backend.auth_security import hash_code
from clinic_backend.config import Settings, get_settings
from clinic_backend.db import db_session, utcnow

logger = logging.getLogger(__name__)

USER_SCOPED = (EmailTokenType.TWO_FACTOR_SETUP, EmailTokenType.TWO_FACTOR_DISABLE)


def _scope(token_type: EmailTokenType, user_id: str | None, preauth_jti: str | None) -> str:
    if token_type is EmailTokenType.TWO_FACTOR_LOGIN:
        if not preauth_jti:
            raise ValueError("login codes are bound to a pre-auth session")
        return preauth_jti
    if token_type in USER_SCOPED:
        if not user_id:
            raise ValueError(f"{token_type.value} codes are bound to a user")
        return user_id
    return ""


def _hash(raw: str, scope: str, settings: Settings) -> str:
    return hash_code(f"{scope}:{raw}" if scope else raw, settings)


def create_token(
    user_id: str,
    token_type: EmailTokenType,
    raw: str,
    ttl: timedelta,
    now: datetime | None = None,
    preauth_jti: str | None = None,
    settings: Settings | None = None,
) -> EmailToken:
    """
    Store `raw` (generated by the caller). Previous tokens of the same kind
    are dropped: per pre-auth session for login codes, per user otherwise.
    Expired tokens of anyone are evicted on the way.
    """
    settings = settings or get_settings()
    now = now or utcnow()
    scope = _scope(token_type, user_id, preauth_jti)

    with db_session() as s:
        s.execute(delete(EmailToken).where(EmailToken.expires_at <= now))

        stale = delete(EmailToken).where(EmailToken.type == token_type)
        if token_type is EmailTokenType.TWO_FACTOR_LOGIN:
            stale = stale.where(EmailToken.preauth_jti == preauth_jti)
        else:
            stale = stale.where(EmailToken.user_id == user_id)
        s.execute(stale)

        tok = EmailToken(
            token_hash=_hash(raw, scope, settings),
            type=token_type,
            user_id=user_id,
            preauth_jti=preauth_jti,
            created_at=now,
            expires_at=now + ttl,
        )
        s.add(tok)
        s.flush()
        return tok


def _find(s, raw: str, token_type: EmailTokenType, now: datetime, user_id: str | None, scope: str,
          settings: Settings) -> EmailToken | None:
    tok = s.execute(
        select(EmailToken).where(
            EmailToken.token_hash == _hash(raw, scope, settings),
            EmailToken.type == token_type,
        )
    ).scalar_one_or_none()
    if tok is None or not tok.is_valid(now):
        return None
    if user_id is not None and tok.user_id != user_id:
        return None
    return tok


def peek_token(
    raw: str,
    token_type: EmailTokenType,
    now: datetime | None = None,
    user_id: str | None = None,
    preauth_jti: str | None = None,
    settings: Settings | None = None,
) -> str | None:
    """Owner of a token that is still spendable, without spending it."""
    if not raw:
        return None
    settings = settings or get_settings()
    scope = _scope(token_type, user_id, preauth_jti)
    with db_session() as s:
        tok = _find(s, raw, token_type, now or utcnow(), user_id, scope, settings)
        return tok.user_id if tok else None


def consume_token(
    raw: str,
    token_type: EmailTokenType,
    now: datetime | None = None,
    user_id: str | None = None,
    preauth_jti: str | None = None,
    settings: Settings | None = None,
) -> str | None:
    """
    Spend a token. Returns the owner's user id, or None when the token is
    unknown, expired, already used or bound to another user/session.
    Matching is exact (case-sensitive).
    """
    if not raw:
        return None
    settings = settings or get_settings()
    now = now or utcnow()
    scope = _scope(token_type, user_id, preauth_jti)

    with db_session() as s:
        tok = _find(s, raw, token_type, now, user_id, scope, settings)
        if tok is None:
            return None

        res = s.execute(
            update(EmailToken)
            .where(EmailToken.id == tok.id, EmailToken.used_at.is_(None))
            .values(used_at=now)
        )
        if res.rowcount != 1:
            return None
        return tok.user_id


def last_login_code_at(preauth_jti: str) -> datetime | None:
    """When the current login code of a pre-auth session was issued."""
    with db_session() as s:
        return s.execute(
            select(EmailToken.created_at)
            .where(EmailToken.preauth_jti == preauth_jti, EmailToken.type == EmailTokenType.TWO_FACTOR_LOGIN)
            .order_by(EmailToken.created_at.desc())
            .limit(1)
        ).scalar_one_or_none()


def revoke_session_tokens(preauth_jti: str) -> int:
    """Drop the login codes bound to a pre-auth session."""
    with db_session() as s:
        res = s.execute(delete(EmailToken).where(EmailToken.preauth_jti == preauth_jti))
        return res.rowcount


def cleanup_expired(now: datetime | None = None) -> int:
    """Delete tokens that can no longer be used."""
    now = now or utcnow()
    with db_session() as s:
        res = s.execute(
            delete(EmailToken).where(or_(EmailToken.expires_at <= now, EmailToken.used_at.is_not(None)))
        )
        n = res.rowcount
    if n:
        logger.info("Removed %d stale email tokens", n)
    return n
