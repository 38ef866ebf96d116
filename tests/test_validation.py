from __future__ import annotations

import pytest

from clinic_backend.errors import InvalidRequest
from clinic_backend.validation import (
    Invalid,
    TwoFactorMethod,
    Valid,
    validate_backup_code,
    validate_credentials,
    validate_method,
    validate_otp,
    validate_password,
    validate_registration,
    validate_verify_request,
)


def test_credentials_are_normalised() -> None:
    res = validate_credentials("  Staff@Clinic.TEST ", "secret")
    assert isinstance(res, Valid)
    assert res.value.email == "staff@clinic.test"


def test_credentials_errors() -> None:
    res = validate_credentials("not-an-email", "")
    assert isinstance(res, Invalid)
    assert set(res.errors) == {"email", "password"}
    with pytest.raises(InvalidRequest) as exc:
        res.unwrap()
    assert exc.value.errors == res.errors
    assert isinstance(exc.value, ValueError)


def test_password_length() -> None:
    assert isinstance(validate_password("short"), Invalid)
    assert validate_password("long enough").unwrap() == "long enough"


def test_registration_reports_every_field() -> None:
    res = validate_registration("", "x", " ", None)
    assert isinstance(res, Invalid)
    assert set(res.errors) == {"email", "password", "first_name", "last_name"}


def test_method() -> None:
    assert validate_method("Authenticator").unwrap() is TwoFactorMethod.AUTHENTICATOR
    assert validate_method(TwoFactorMethod.BACKUP).unwrap() is TwoFactorMethod.BACKUP
    assert isinstance(validate_method("sms"), Invalid)
    assert isinstance(validate_method("backup", enrollable_only=True), Invalid)


def test_otp() -> None:
    assert validate_otp(" 123456 ").unwrap() == "123456"
    for bad in ("12345", "1234567", "12a456", None):
        assert isinstance(validate_otp(bad), Invalid)


def test_backup_code() -> None:
    assert validate_backup_code("abcd-efgh-ijkl-mnop").unwrap() == "ABCD-EFGH-IJKL-MNOP"
    assert isinstance(validate_backup_code("ABCD-EFGH"), Invalid)


def test_verify_request_checks_shape_only() -> None:
    req = validate_verify_request(" tok ", "email", "whatever").unwrap()
    assert req.token == "tok"
    assert req.method is TwoFactorMethod.EMAIL
    assert req.code == "whatever"

    res = validate_verify_request("", "fax", "")
    assert isinstance(res, Invalid)
    assert set(res.errors) == {"twoFactorToken", "method", "code"}
