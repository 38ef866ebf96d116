from __future__ import annotations

import re

import pytest
from jose import JWTError
from sqlalchemy import update

from clinic_backend.auth_models import User
from clinic_backend.auth_security import decode_refresh_token, decode_token
from clinic_backend.auth_service import forgot_password, record_failed_attempt, reset_password
from clinic_backend.db import db_session
from clinic_backend.errors import AccountLocked, InvalidRefreshToken
from clinic_backend.sessions import logout, open_session, refresh_session

LINK_RE = re.compile(r"token=([0-9a-f]+)")


def test_refresh_rotates_the_token(make_user, settings) -> None:
    user = make_user()
    first = open_session(user, settings)
    second = refresh_session(first.refresh_token, settings=settings)
    assert decode_token(second.access_token)["sub"] == user.id
    assert second.refresh_token != first.refresh_token

    with pytest.raises(InvalidRefreshToken):
        refresh_session(first.refresh_token, settings=settings)
    assert refresh_session(second.refresh_token, settings=settings).user_id == user.id


def test_tokens_are_not_interchangeable(make_user, settings) -> None:
    session = open_session(make_user(), settings)
    assert decode_refresh_token(session.access_token, settings) is None
    with pytest.raises(JWTError):
        decode_token(session.refresh_token, settings)
    with pytest.raises(InvalidRefreshToken):
        refresh_session("garbage", settings=settings)


def test_new_login_supersedes_older_refresh_token(make_user, settings) -> None:
    user = make_user()
    old = open_session(user, settings)
    open_session(user, settings)
    with pytest.raises(InvalidRefreshToken):
        refresh_session(old.refresh_token, settings=settings)


def test_logout_invalidates_refresh_token(make_user, settings) -> None:
    user = make_user()
    session = open_session(user, settings)
    logout(user.id)
    with pytest.raises(InvalidRefreshToken):
        refresh_session(session.refresh_token, settings=settings)


def test_password_reset_invalidates_refresh_token(make_user, mail, sender, clock, settings) -> None:
    user = make_user()
    session = open_session(user, settings)
    forgot_password(user.email, mail, now=clock.now)
    token = LINK_RE.search(sender.sent[-1][1].body).group(1)
    assert reset_password(token, "BrandNew456", now=clock.now) is True

    with pytest.raises(InvalidRefreshToken):
        refresh_session(session.refresh_token, settings=settings)


def test_locked_or_inactive_user_cannot_refresh(make_user, clock, settings) -> None:
    locked = make_user()
    session = open_session(locked, settings)
    for _ in range(settings.login_max_failures):
        record_failed_attempt(locked.id, now=clock.now, settings=settings)
    with pytest.raises(AccountLocked):
        refresh_session(session.refresh_token, now=clock.now, settings=settings)

    inactive = make_user()
    session = open_session(inactive, settings)
    with db_session() as s:
        s.execute(update(User).where(User.id == inactive.id).values(is_active=False))
    with pytest.raises(InvalidRefreshToken):
        refresh_session(session.refresh_token, settings=settings)
