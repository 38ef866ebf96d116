from __future__ import annotations

import re
from dataclasses import replace
from datetime import datetime, timedelta

import pytest
from sqlalchemy import update

from clinic_backend import db, totp
from clinic_backend.auth_models import User
from clinic_backend.auth_service import create_user, get_user_by_id
from clinic_backend.config import Settings, get_settings
from clinic_backend.mail_service import MailService
from clinic_backend.mail_templates import RenderedEmail
from clinic_backend.preauth_store import PreAuthStore
from clinic_backend.two_factor import TwoFactorHandshake

PASSWORD = "Password123"
CODE_RE = re.compile(r"code is: (\d{6})")


class FakeClock:
    """Naive UTC clock moved by hand."""

    def __init__(self, start: datetime = datetime(2026, 1, 14, 9, 0, 0)) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class MemorySender:
    def __init__(self) -> None:
        self.sent: list[tuple[str, RenderedEmail]] = []

    def send(self, recipient: str, email: RenderedEmail) -> None:
        self.sent.append((recipient, email))

    def templates(self) -> list[str]:
        return [e.template for _, e in self.sent]

    def last_code(self, recipient: str) -> str:
        for to, email in reversed(self.sent):
            m = CODE_RE.search(email.body)
            if to == recipient and m:
                return m.group(1)
        raise AssertionError(f"no code sent to {recipient}")


class BrokenSender:
    def send(self, recipient: str, email: RenderedEmail) -> None:
        raise ConnectionError("smtp down")


@pytest.fixture(autouse=True)
def database(tmp_path):
    db.configure_engine(f"sqlite:///{tmp_path / 'test.sqlite'}")
    db.init_db()
    yield
    db.engine.dispose()


@pytest.fixture
def settings() -> Settings:
    return replace(get_settings(), preauth_ttl_seconds=300, preauth_max_attempts=5, totp_valid_window=1,
                   backup_code_count=10, login_max_failures=5, lock_minutes=15,
                   email_code_resend_seconds=60)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sender() -> MemorySender:
    return MemorySender()


@pytest.fixture
def mail(sender, settings, clock) -> MailService:
    return MailService(sender=sender, settings=settings, clock=clock)


@pytest.fixture
def store(clock) -> PreAuthStore:
    return PreAuthStore(clock=clock)


@pytest.fixture
def handshake(store, mail, settings, clock) -> TwoFactorHandshake:
    return TwoFactorHandshake(store, mail, settings=settings, clock=clock)


@pytest.fixture
def make_user():
    counter = iter(range(1, 1000))

    def _make(
        email: str | None = None,
        authenticator: bool = False,
        email_2fa: bool = False,
        verified: bool = True,
    ) -> User:
        email = email or f"staff{next(counter)}@clinic.test"
        uid = create_user(email, PASSWORD, "Anna", "Neri", verified=verified)
        with db.db_session() as s:
            s.execute(
                update(User)
                .where(User.id == uid)
                .values(
                    two_factor_authenticator_enabled=authenticator,
                    two_factor_email_enabled=email_2fa,
                    totp_secret=totp.new_secret() if authenticator else None,
                )
            )
        return get_user_by_id(uid)

    return _make
