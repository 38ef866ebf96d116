from __future__ import annotations

import base64
import hmac
import io
from datetime import datetime, timezone

import pyotp
import qrcode

DIGITS = 6
INTERVAL = 30  # seconds


def new_secret() -> str:
    return pyotp.random_base32()


def _totp(secret: str) -> pyotp.TOTP:
    return pyotp.TOTP(secret, digits=DIGITS, interval=INTERVAL)


def _aware(moment: datetime) -> datetime:
    return moment.replace(tzinfo=timezone.utc) if moment.tzinfo is None else moment


def provisioning_uri(secret: str, email: str, issuer: str) -> str:
    return _totp(secret).provisioning_uri(name=email, issuer_name=issuer)


def qr_data_uri(otpauth_uri: str) -> str:
    img = qrcode.make(otpauth_uri)
    buf = io.BytesIO()
    img.save(buf)
    data = base64.b64encode(buf.getvalue()).decode("ascii")
    return f"data:image/png;base64,{data}"


def code_at(secret: str, moment: datetime) -> str:
    return _totp(secret).at(_aware(moment))


def matching_step(secret: str, code: str, now: datetime, window: int = 1) -> int | None:
    """
    Time step whose code equals `code`, searching ±window steps around now.
    None when nothing matches. Callers use the step for anti-replay.
    """
    if not code.isdigit() or len(code) != DIGITS:
        return None
    totp = _totp(secret)
    now = _aware(now)
    current = totp.timecode(now)
    for offset in range(-window, window + 1):
        if hmac.compare_digest(totp.at(now, offset), code):
            return current + offset
    return None
