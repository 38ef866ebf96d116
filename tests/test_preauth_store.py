from __future__ import annotations

from clinic_backend.auth_models import PreAuthState


def _record(store, user, ttl=300):
    return store.create(user.id, authenticator_available=True, email_available=False, ttl_seconds=ttl)


def test_create_and_get(store, make_user, clock) -> None:
    user = make_user()
    rec = _record(store, user)
    got = store.get(rec.jti)
    assert got.user_id == user.id
    assert got.state is PreAuthState.PENDING
    assert (got.expires_at - clock.now).total_seconds() == 300


def test_jti_is_unique(store, make_user) -> None:
    user = make_user()
    assert _record(store, user).jti != _record(store, user).jti


def test_claim_is_exclusive(store, make_user) -> None:
    rec = _record(store, make_user())
    assert store.claim(rec.jti) is True
    assert store.claim(rec.jti) is False

    store.release(rec.jti)
    assert store.claim(rec.jti) is True


def test_consume_requires_claim(store, make_user) -> None:
    rec = _record(store, make_user())
    assert store.consume(rec.jti) is False
    store.claim(rec.jti)
    assert store.consume(rec.jti) is True
    assert store.get(rec.jti) is None
    assert store.consume(rec.jti) is False


def test_release_failed_revokes_at_threshold(store, make_user) -> None:
    rec = _record(store, make_user())
    for attempt in range(1, 3):
        store.claim(rec.jti)
        assert store.release_failed(rec.jti, max_attempts=3) is False
        assert store.get(rec.jti).failed_attempts == attempt

    store.claim(rec.jti)
    assert store.release_failed(rec.jti, max_attempts=3) is True
    assert store.get(rec.jti) is None


def test_release_failed_without_claim_is_noop(store, make_user) -> None:
    rec = _record(store, make_user())
    assert store.release_failed(rec.jti, max_attempts=1) is False
    assert store.get(rec.jti) is not None


def test_purge_expired(store, make_user, clock) -> None:
    user = make_user()
    short = _record(store, user, ttl=60)
    long = _record(store, user, ttl=600)

    clock.advance(seconds=60)
    assert store.purge_expired() == 1
    assert store.get(short.jti) is None
    assert store.get(long.jti) is not None


def test_revoke_user(store, make_user) -> None:
    user = make_user()
    other = make_user()
    _record(store, user)
    _record(store, user)
    kept = _record(store, other)
    assert store.revoke_user(user.id) == 2
    assert store.get(kept.jti) is not None


def test_start_creates_tables_and_purges(store, make_user, clock) -> None:
    rec = _record(store, make_user(), ttl=1)
    clock.advance(seconds=5)
    store.start()
    assert store.get(rec.jti) is None
