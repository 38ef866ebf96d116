from __future__ import annotations

import re
from datetime import timedelta

import pytest
from sqlalchemy import update

from clinic_backend.auth_models import User
from clinic_backend.auth_service import (
    authenticate,
    confirm_email,
    create_user,
    forgot_password,
    get_user_by_email,
    record_failed_attempt,
    register_user,
    resend_confirmation,
    reset_password,
    unlock_user,
    validate_reset_token,
)
from clinic_backend.db import db_session
from clinic_backend.errors import AccountLocked, InvalidCredentials, InvalidRequest

from conftest import PASSWORD

LINK_RE = re.compile(r"token=([0-9a-f]+)")


def _link_token(sender) -> str:
    return LINK_RE.search(sender.sent[-1][1].body).group(1)


def test_create_user_rejects_duplicates(make_user) -> None:
    user = make_user(email="dup@clinic.test")
    with pytest.raises(ValueError):
        create_user("DUP@clinic.test", PASSWORD, "Anna", "Neri")
    assert user.email == "dup@clinic.test"


def test_register_and_confirm(mail, sender, clock, settings) -> None:
    uid = register_user(" New@Clinic.test ", PASSWORD, "Luca", "Bruni", mail, now=clock.now)
    assert sender.templates() == ["confirmation"]
    assert sender.sent[0][0] == "new@clinic.test"

    # unconfirmed accounts cannot log in
    with pytest.raises(InvalidCredentials):
        authenticate("new@clinic.test", PASSWORD, now=clock.now, settings=settings)

    assert confirm_email(_link_token(sender), now=clock.now) is True
    assert authenticate("new@clinic.test", PASSWORD, now=clock.now, settings=settings).id == uid
    assert confirm_email(_link_token(sender), now=clock.now) is False


def test_register_validation(mail) -> None:
    with pytest.raises(ValueError):
        register_user("not-an-email", "short", "", "", mail)


def test_lockout_and_expiry(make_user, clock, settings) -> None:
    user = make_user()
    for _ in range(settings.login_max_failures - 1):
        assert record_failed_attempt(user.id, now=clock.now, settings=settings) is False
    assert record_failed_attempt(user.id, now=clock.now, settings=settings) is True

    with pytest.raises(AccountLocked):
        authenticate(user.email, PASSWORD, now=clock.now, settings=settings)

    clock.advance(minutes=settings.lock_minutes)
    assert authenticate(user.email, PASSWORD, now=clock.now, settings=settings).id == user.id


def test_unlock(make_user, clock, settings) -> None:
    user = make_user()
    for _ in range(settings.login_max_failures):
        record_failed_attempt(user.id, now=clock.now, settings=settings)
    assert unlock_user(user.email) is True
    assert authenticate(user.email, PASSWORD, now=clock.now, settings=settings).id == user.id
    assert unlock_user("ghost@clinic.test") is False


def test_inactive_user(make_user, clock, settings) -> None:
    user = make_user()
    with db_session() as s:
        s.execute(update(User).where(User.id == user.id).values(is_active=False))
    with pytest.raises(InvalidCredentials):
        authenticate(user.email, PASSWORD, now=clock.now, settings=settings)


def test_forgot_and_reset_password(make_user, mail, sender, clock, settings, store) -> None:
    user = make_user()
    store.create(user.id, authenticator_available=True, email_available=False, ttl_seconds=300)

    forgot_password(user.email, mail, now=clock.now)
    token = _link_token(sender)
    assert sender.templates() == ["password-reset"]

    with pytest.raises(ValueError):
        reset_password(token, "short", now=clock.now)
    assert reset_password(token, "BrandNew456", now=clock.now) is True
    assert reset_password(token, "BrandNew456", now=clock.now) is False

    assert authenticate(user.email, "BrandNew456", now=clock.now, settings=settings).id == user.id
    assert store.revoke_user(user.id) == 0


def test_reset_link_expires(make_user, mail, sender, clock) -> None:
    user = make_user()
    forgot_password(user.email, mail, now=clock.now)
    token = _link_token(sender)
    assert reset_password(token, "BrandNew456", now=clock.now + timedelta(hours=1)) is False


def test_forgot_password_unknown_account_is_silent(mail, sender) -> None:
    forgot_password("ghost@clinic.test", mail)
    assert sender.sent == []
    assert get_user_by_email("ghost@clinic.test") is None


def test_register_validation_is_an_invalid_request(mail) -> None:
    with pytest.raises(InvalidRequest) as exc:
        register_user("not-an-email", "short", "Luca", "Bruni", mail)
    assert exc.value.errors


def test_resend_confirmation(make_user, mail, sender, clock, settings) -> None:
    pending = make_user(verified=False)
    resend_confirmation(pending.email, mail, now=clock.now)
    assert sender.templates() == ["confirmation"]
    assert confirm_email(_link_token(sender), now=clock.now) is True
    assert authenticate(pending.email, PASSWORD, now=clock.now, settings=settings).id == pending.id

    # confirmed, unknown: nothing sent
    resend_confirmation(pending.email, mail, now=clock.now)
    resend_confirmation("ghost@clinic.test", mail, now=clock.now)
    assert len(sender.sent) == 1


def test_resent_confirmation_replaces_the_old_link(make_user, mail, sender, clock) -> None:
    pending = make_user(verified=False)
    resend_confirmation(pending.email, mail, now=clock.now)
    old = _link_token(sender)
    resend_confirmation(pending.email, mail, now=clock.now)
    new = _link_token(sender)
    assert confirm_email(old, now=clock.now) is False
    assert confirm_email(new, now=clock.now) is True


def test_validate_reset_token(make_user, mail, sender, clock) -> None:
    user = make_user()
    forgot_password(user.email, mail, now=clock.now)
    token = _link_token(sender)

    assert validate_reset_token(token, now=clock.now) is True
    assert validate_reset_token(token, now=clock.now) is True
    assert validate_reset_token("deadbeef", now=clock.now) is False
    assert reset_password(token, "BrandNew456", now=clock.now) is True
    assert validate_reset_token(token, now=clock.now) is False
