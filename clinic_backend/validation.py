"""
Explicit request validation.

Each validator returns either `Valid(value)` with the normalised input or
`Invalid(errors)` with one message per offending field. Services call
`.unwrap()` and get an InvalidRequest, which the API answers with a 400
`invalid_request`.
"""
from __future__ import annotations

import enum
import re
from dataclasses import dataclass, field
from typing import Generic, TypeVar, Union

from clinic_backend.auth_security import normalize_backup_code
from clinic_backend.errors import InvalidRequest

T = TypeVar("T")

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
OTP_RE = re.compile(r"^\d{6}$")
BACKUP_CODE_RE = re.compile(r"^[A-Z0-9]{4}-[A-Z0-9]{4}-[A-Z0-9]{4}-[A-Z0-9]{4}$")
PASSWORD_MIN_LENGTH = 8


class TwoFactorMethod(enum.Enum):
    AUTHENTICATOR = "authenticator"
    EMAIL = "email"
    BACKUP = "backup"


# methods a user can enroll (backup codes come with any of them)
ENROLLABLE_METHODS = (TwoFactorMethod.AUTHENTICATOR, TwoFactorMethod.EMAIL)


@dataclass(frozen=True)
class Valid(Generic[T]):
    value: T
    ok: bool = field(default=True, init=False)

    def unwrap(self) -> T:
        return self.value


@dataclass(frozen=True)
class Invalid:
    errors: dict[str, str]
    ok: bool = field(default=False, init=False)

    def unwrap(self):
        raise InvalidRequest("; ".join(f"{k}: {v}" for k, v in self.errors.items()), self.errors)


Result = Union[Valid[T], Invalid]


@dataclass(frozen=True)
class Credentials:
    email: str
    password: str


@dataclass(frozen=True)
class VerifyRequest:
    token: str
    method: TwoFactorMethod
    code: str


@dataclass(frozen=True)
class Registration:
    email: str
    password: str
    first_name: str
    last_name: str


def _email_error(email: str) -> str | None:
    if not email:
        return "email is required"
    if not EMAIL_RE.match(email):
        return "email must be a valid email address"
    return None


def normalize_email(email: str | None) -> str:
    return (email or "").strip().lower()


def validate_credentials(email: str | None, password: str | None) -> Result[Credentials]:
    errors: dict[str, str] = {}
    email = normalize_email(email)
    err = _email_error(email)
    if err:
        errors["email"] = err
    if not password:
        errors["password"] = "password is required"
    if errors:
        return Invalid(errors)
    return Valid(Credentials(email=email, password=password))


def validate_password(password: str | None) -> Result[str]:
    if not password:
        return Invalid({"password": "password is required"})
    if len(password) < PASSWORD_MIN_LENGTH:
        return Invalid({"password": f"password must be at least {PASSWORD_MIN_LENGTH} characters long"})
    return Valid(password)


def validate_registration(
    email: str | None,
    password: str | None,
    first_name: str | None,
    last_name: str | None,
) -> Result[Registration]:
    errors: dict[str, str] = {}
    email = normalize_email(email)
    err = _email_error(email)
    if err:
        errors["email"] = err
    pwd = validate_password(password)
    if isinstance(pwd, Invalid):
        errors.update(pwd.errors)
    first_name = (first_name or "").strip()
    last_name = (last_name or "").strip()
    if not first_name:
        errors["first_name"] = "first_name is required"
    if not last_name:
        errors["last_name"] = "last_name is required"
    if errors:
        return Invalid(errors)
    return Valid(Registration(email=email, password=password or "", first_name=first_name, last_name=last_name))


def validate_method(method: str | TwoFactorMethod | None, *, enrollable_only: bool = False) -> Result[TwoFactorMethod]:
    if isinstance(method, TwoFactorMethod):
        parsed = method
    else:
        try:
            parsed = TwoFactorMethod((method or "").strip().lower())
        except ValueError:
            return Invalid({"method": "method must be one of: authenticator, email, backup"})
    if enrollable_only and parsed not in ENROLLABLE_METHODS:
        return Invalid({"method": "method must be one of: authenticator, email"})
    return Valid(parsed)


def validate_otp(code: str | None) -> Result[str]:
    """Authenticator and email codes: exactly six digits."""
    code = (code or "").strip()
    if not OTP_RE.match(code):
        return Invalid({"code": "code must be exactly 6 digits"})
    return Valid(code)


def validate_backup_code(code: str | None) -> Result[str]:
    normalized = normalize_backup_code(code or "")
    if not BACKUP_CODE_RE.match(normalized):
        return Invalid({"code": "backup code must look like ABCD-EFGH-IJKL-MNOP"})
    return Valid(normalized)


def validate_verify_request(
    token: str | None,
    method: str | TwoFactorMethod | None,
    code: str | None,
) -> Result[VerifyRequest]:
    """
    Shape check only. The code format is judged by the handshake itself, after
    the token and the method enrollment: a malformed code is a failed attempt.
    """
    errors: dict[str, str] = {}
    token = (token or "").strip()
    if not token:
        errors["twoFactorToken"] = "twoFactorToken is required"
    parsed = validate_method(method)
    if isinstance(parsed, Invalid):
        errors.update(parsed.errors)
    code = (code or "").strip()
    if not code:
        errors["code"] = "code is required"
    if errors:
        return Invalid(errors)
    return Valid(VerifyRequest(token=token, method=parsed.value, code=code))
