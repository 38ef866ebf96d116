from __future__ import annotations

import hashlib
import hmac
import secrets
import string
from datetime import datetime, timedelta, timezone
from typing import Any

from jose import JWTError, jwt
from passlib.context import CryptContext

from clinic_backend.config import Settings, get_settings

PREAUTH_TOKEN_TYPE = "2fa_preauth"
REFRESH_TOKEN_TYPE = "refresh"
BACKUP_CODE_ALPHABET = string.ascii_uppercase + string.digits
BACKUP_CODE_GROUPS = 4
BACKUP_CODE_GROUP_SIZE = 4

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    if not password or not password_hash:
        return False
    return pwd_context.verify(password, password_hash)


def _ts(moment: datetime) -> int:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return int(moment.timestamp())


def create_access_token(
    subject: str,
    extra: dict[str, Any] | None = None,
    settings: Settings | None = None,
) -> str:
    """
    subject: the user id.
    Uses timezone-aware datetimes to avoid offset bugs on timestamps.
    """
    settings = settings or get_settings()
    now = datetime.now(timezone.utc)
    expire = now + timedelta(minutes=settings.access_token_expire_minutes)

    payload: dict[str, Any] = {
        "sub": subject,
        "iat": int(now.timestamp()),
        "exp": int(expire.timestamp()),
    }
    if extra:
        payload.update(extra)

    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_alg)


def decode_token(token: str, settings: Settings | None = None) -> dict[str, Any]:
    settings = settings or get_settings()
    return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_alg])


def get_subject(token: str, settings: Settings | None = None) -> str | None:
    try:
        payload = decode_token(token, settings)
        return payload.get("sub")
    except JWTError:
        return None


def create_preauth_token(
    user_id: str,
    email: str,
    jti: str,
    issued_at: datetime,
    expires_at: datetime,
    settings: Settings | None = None,
) -> str:
    """Signed pre-auth token; the jti points at the server-side record."""
    settings = settings or get_settings()
    payload = {
        "sub": user_id,
        "email": email,
        "jti": jti,
        "type": PREAUTH_TOKEN_TYPE,
        "iat": _ts(issued_at),
        "exp": _ts(expires_at),
    }
    return jwt.encode(payload, settings.jwt_2fa_secret, algorithm=settings.jwt_alg)


def decode_preauth_token(token: str, settings: Settings | None = None) -> dict[str, Any] | None:
    """
    Signature and type check only: expiry is compared by the caller against
    its own clock (and the server-side record).
    """
    settings = settings or get_settings()
    try:
        payload = jwt.decode(
            token,
            settings.jwt_2fa_secret,
            algorithms=[settings.jwt_alg],
            options={"verify_exp": False},
        )
    except JWTError:
        return None
    if payload.get("type") != PREAUTH_TOKEN_TYPE or not payload.get("jti") or not payload.get("sub"):
        return None
    return payload


def preauth_token_expired(payload: dict[str, Any], now: datetime) -> bool:
    exp = payload.get("exp")
    try:
        return _ts(now) >= int(exp)
    except (TypeError, ValueError):
        return True


def create_refresh_token(user_id: str, jti: str, settings: Settings | None = None) -> str:
    """Long-lived token, own secret; only the jti stored on the user is honoured."""
    settings = settings or get_settings()
    now = datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "jti": jti,
        "type": REFRESH_TOKEN_TYPE,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(days=settings.refresh_token_expire_days)).timestamp()),
    }
    return jwt.encode(payload, settings.jwt_refresh_secret, algorithm=settings.jwt_alg)


def decode_refresh_token(token: str, settings: Settings | None = None) -> dict[str, Any] | None:
    settings = settings or get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_refresh_secret, algorithms=[settings.jwt_alg])
    except JWTError:
        return None
    if payload.get("type") != REFRESH_TOKEN_TYPE or not payload.get("jti") or not payload.get("sub"):
        return None
    return payload


def hash_code(code: str, settings: Settings | None = None) -> str:
    """Keyed hash (HMAC-SHA256) for codes and email tokens; case-sensitive."""
    settings = settings or get_settings()
    return hmac.new(settings.code_pepper.encode("utf-8"), code.encode("utf-8"), hashlib.sha256).hexdigest()


def new_jti() -> str:
    return secrets.token_urlsafe(32)


def new_link_token() -> str:
    return secrets.token_hex(16)


def new_numeric_code(digits: int = 6) -> str:
    return "".join(secrets.choice(string.digits) for _ in range(digits))


def new_backup_code() -> str:
    """Format: ABCD-EFGH-IJKL-MNOP."""
    groups = [
        "".join(secrets.choice(BACKUP_CODE_ALPHABET) for _ in range(BACKUP_CODE_GROUP_SIZE))
        for _ in range(BACKUP_CODE_GROUPS)
    ]
    return "-".join(groups)


def normalize_backup_code(code: str) -> str:
    """Accepts lower case, spaces and missing dashes; returns the canonical form."""
    raw = "".join(ch for ch in code.upper() if ch.isalnum())
    return "-".join(raw[i:i + BACKUP_CODE_GROUP_SIZE] for i in range(0, len(raw), BACKUP_CODE_GROUP_SIZE))
