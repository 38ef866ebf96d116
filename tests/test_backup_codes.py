from __future__ import annotations

import re
from concurrent.futures import ThreadPoolExecutor

import pytest

from clinic_backend.backup_codes import (
    consume_backup_code,
    issue_backup_codes,
    remaining_backup_codes,
    revoke_backup_codes,
)
from clinic_backend.errors import BackupCodeAlreadyUsed, InvalidCode

FORMAT = re.compile(r"^[A-Z0-9]{4}-[A-Z0-9]{4}-[A-Z0-9]{4}-[A-Z0-9]{4}$")


def test_issue_returns_unique_codes(make_user, settings) -> None:
    user = make_user()
    codes = issue_backup_codes(user.id, settings=settings)
    assert len(codes) == 10
    assert len(set(codes)) == 10
    assert all(FORMAT.match(c) for c in codes)
    assert remaining_backup_codes(user.id) == 10


def test_consume_third_code(make_user, settings) -> None:
    user = make_user()
    codes = issue_backup_codes(user.id, settings=settings)

    consume_backup_code(user.id, codes[2], settings=settings)
    assert remaining_backup_codes(user.id) == 9

    with pytest.raises(BackupCodeAlreadyUsed):
        consume_backup_code(user.id, codes[2], settings=settings)
    assert remaining_backup_codes(user.id) == 9


def test_code_input_is_normalised(make_user, settings) -> None:
    user = make_user()
    codes = issue_backup_codes(user.id, count=2, settings=settings)
    consume_backup_code(user.id, " " + codes[0].lower().replace("-", "") + " ", settings=settings)
    assert remaining_backup_codes(user.id) == 1


def test_unknown_or_malformed_code(make_user, settings) -> None:
    user = make_user()
    issue_backup_codes(user.id, settings=settings)
    with pytest.raises(InvalidCode):
        consume_backup_code(user.id, "AAAA-BBBB-CCCC-DDDD", settings=settings)
    with pytest.raises(InvalidCode):
        consume_backup_code(user.id, "short", settings=settings)


def test_codes_belong_to_their_user(make_user, settings) -> None:
    alice = make_user()
    bob = make_user()
    codes = issue_backup_codes(alice.id, settings=settings)
    issue_backup_codes(bob.id, settings=settings)
    with pytest.raises(InvalidCode):
        consume_backup_code(bob.id, codes[0], settings=settings)


def test_reissue_invalidates_old_codes(make_user, settings) -> None:
    user = make_user()
    old = issue_backup_codes(user.id, settings=settings)
    issue_backup_codes(user.id, count=5, settings=settings)
    assert remaining_backup_codes(user.id) == 5
    with pytest.raises(InvalidCode):
        consume_backup_code(user.id, old[0], settings=settings)


def test_revoke(make_user, settings) -> None:
    user = make_user()
    issue_backup_codes(user.id, settings=settings)
    assert revoke_backup_codes(user.id) == 10
    assert remaining_backup_codes(user.id) == 0


def test_concurrent_consumption_single_winner(make_user, settings) -> None:
    user = make_user()
    code = issue_backup_codes(user.id, settings=settings)[0]

    def attempt(_):
        try:
            consume_backup_code(user.id, code, settings=settings)
            return "ok"
        except BackupCodeAlreadyUsed:
            return "used"

    with ThreadPoolExecutor(max_workers=6) as pool:
        results = list(pool.map(attempt, range(6)))

    assert results.count("ok") == 1
    assert results.count("used") == 5
