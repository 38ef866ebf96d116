from __future__ import annotations

import pytest

from clinic_backend import totp
from clinic_backend.auth_service import get_user_by_id
from clinic_backend.backup_codes import remaining_backup_codes
from clinic_backend.errors import InvalidCode, InvalidCredentials, MethodNotEnrolled
from clinic_backend.two_factor import PreAuthSession, Session
from clinic_backend.two_factor_setup import (
    confirm_two_factor,
    disable_two_factor,
    regenerate_backup_codes,
    request_disable_code,
    setup_two_factor,
    two_factor_status,
)

from conftest import PASSWORD


def _enable_authenticator(user, mail, clock, settings):
    setup = setup_two_factor(user.id, "authenticator", mail, now=clock.now, settings=settings)
    code = totp.code_at(setup.secret, clock.now)
    return setup, confirm_two_factor(user.id, "authenticator", code, now=clock.now, settings=settings)


def test_authenticator_enrollment(make_user, mail, clock, settings) -> None:
    user = make_user()
    setup, status = _enable_authenticator(user, mail, clock, settings)

    assert setup.otpauth_uri.startswith("otpauth://totp/")
    assert setup.qr_code_data_uri.startswith("data:image/png;base64,")
    assert status.authenticator_enabled is True
    assert status.email_enabled is False
    assert len(status.backup_codes) == 10
    assert status.as_dict()["backupCodes"] == status.backup_codes

    u = get_user_by_id(user.id)
    assert u.totp_secret == setup.secret
    assert u.totp_pending_secret is None


def test_backup_codes_shown_only_once(make_user, mail, clock, settings) -> None:
    user = make_user()
    _enable_authenticator(user, mail, clock, settings)
    status = two_factor_status(user.id)
    assert status.backup_codes is None
    assert "backupCodes" not in status.as_dict()
    assert status.remaining_backup_codes == 10


def test_confirm_requires_setup_and_valid_code(make_user, mail, clock, settings) -> None:
    user = make_user()
    with pytest.raises(ValueError):
        confirm_two_factor(user.id, "authenticator", "123456", now=clock.now, settings=settings)

    setup_two_factor(user.id, "authenticator", mail, now=clock.now, settings=settings)
    with pytest.raises(InvalidCode):
        confirm_two_factor(user.id, "authenticator", "12345", now=clock.now, settings=settings)
    assert two_factor_status(user.id).authenticator_enabled is False


def test_setup_twice_is_rejected(make_user, mail, clock, settings) -> None:
    user = make_user()
    _enable_authenticator(user, mail, clock, settings)
    with pytest.raises(ValueError):
        setup_two_factor(user.id, "authenticator", mail, now=clock.now, settings=settings)
    with pytest.raises(ValueError):
        setup_two_factor(user.id, "backup", mail, now=clock.now, settings=settings)


def test_email_enrollment_then_login(make_user, mail, sender, clock, settings, handshake) -> None:
    user = make_user()
    assert setup_two_factor(user.id, "email", mail, now=clock.now, settings=settings) is None
    status = confirm_two_factor(user.id, "email", sender.last_code(user.email), now=clock.now, settings=settings)
    assert status.email_enabled is True
    assert len(status.backup_codes) == 10

    pre = handshake.initiate(user.email, PASSWORD)
    assert isinstance(pre, PreAuthSession)
    assert pre.two_factor_methods.as_dict() == {"authenticator": False, "email": True}


def test_second_method_keeps_existing_backup_codes(make_user, mail, sender, clock, settings) -> None:
    user = make_user()
    _enable_authenticator(user, mail, clock, settings)
    setup_two_factor(user.id, "email", mail, now=clock.now, settings=settings)
    status = confirm_two_factor(user.id, "email", sender.last_code(user.email), now=clock.now, settings=settings)
    assert status.backup_codes is None
    assert status.remaining_backup_codes == 10


def test_disable_authenticator(make_user, mail, clock, settings, handshake) -> None:
    user = make_user()
    setup, _ = _enable_authenticator(user, mail, clock, settings)
    clock.advance(seconds=30)
    code = totp.code_at(setup.secret, clock.now)

    with pytest.raises(InvalidCredentials):
        disable_two_factor(user.id, "authenticator", "wrong-password", code, now=clock.now, settings=settings)
    with pytest.raises(MethodNotEnrolled):
        disable_two_factor(user.id, "email", PASSWORD, code, now=clock.now, settings=settings)

    status = disable_two_factor(user.id, "authenticator", PASSWORD, code, now=clock.now, settings=settings)
    assert status.authenticator_enabled is False
    assert remaining_backup_codes(user.id) == 0
    assert get_user_by_id(user.id).totp_secret is None

    assert isinstance(handshake.initiate(user.email, PASSWORD), Session)


def test_disable_email_with_code(make_user, mail, sender, clock, settings) -> None:
    user = make_user()
    _enable_authenticator(user, mail, clock, settings)
    setup_two_factor(user.id, "email", mail, now=clock.now, settings=settings)
    confirm_two_factor(user.id, "email", sender.last_code(user.email), now=clock.now, settings=settings)

    request_disable_code(user.id, mail, now=clock.now, settings=settings)
    status = disable_two_factor(
        user.id, "email", PASSWORD, sender.last_code(user.email), now=clock.now, settings=settings
    )
    assert status.email_enabled is False
    assert status.authenticator_enabled is True
    # authenticator still on: backup codes stay
    assert status.remaining_backup_codes == 10


def test_request_disable_code_requires_email_method(make_user, mail, clock, settings) -> None:
    user = make_user(authenticator=True)
    with pytest.raises(MethodNotEnrolled):
        request_disable_code(user.id, mail, now=clock.now, settings=settings)


def test_regenerate_backup_codes(make_user, mail, clock, settings) -> None:
    user = make_user()
    _, first = _enable_authenticator(user, mail, clock, settings)
    with pytest.raises(InvalidCredentials):
        regenerate_backup_codes(user.id, "wrong-password", now=clock.now, settings=settings)

    status = regenerate_backup_codes(user.id, PASSWORD, now=clock.now, settings=settings)
    assert len(status.backup_codes) == 10
    assert not set(status.backup_codes) & set(first.backup_codes)


def test_regenerate_requires_two_factor(make_user, clock, settings) -> None:
    user = make_user()
    with pytest.raises(ValueError):
        regenerate_backup_codes(user.id, PASSWORD, now=clock.now, settings=settings)
