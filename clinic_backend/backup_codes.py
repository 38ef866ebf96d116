from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import delete, func, select, update

from clinic_backend.auth_models import BackupCode
from clinic_backend.auth_security import hash_code, new_backup_code
from clinic_backend.config import Settings, get_settings
from clinic_backend.db import db_session, utcnow
from clinic_backend.errors import BackupCodeAlreadyUsed, InvalidCode
from clinic_backend.validation import Invalid, validate_backup_code

logger = logging.getLogger(__name__)


def issue_backup_codes(
    user_id: str,
    count: int | None = None,
    now: datetime | None = None,
    settings: Settings | None = None,
) -> list[str]:
    """
    Replace the user's backup codes with `count` fresh ones.
    The plain codes are returned once and never stored.
    """
    settings = settings or get_settings()
    count = count or settings.backup_code_count
    now = now or utcnow()

    codes: list[str] = []
    while len(codes) < count:
        code = new_backup_code()
        if code not in codes:
            codes.append(code)

    with db_session() as s:
        s.execute(delete(BackupCode).where(BackupCode.user_id == user_id))
        for code in codes:
            s.add(BackupCode(user_id=user_id, code_hash=hash_code(code, settings), created_at=now))

    logger.info("Issued %d backup codes for user %s", count, user_id)
    return codes


def consume_backup_code(
    user_id: str,
    code: str,
    now: datetime | None = None,
    settings: Settings | None = None,
) -> None:
    """
    Spend one backup code in its own transaction.
    - unknown / malformed code -> InvalidCode
    - code already spent       -> BackupCodeAlreadyUsed
    The conditional update lets exactly one concurrent caller win.
    """
    settings = settings or get_settings()
    parsed = validate_backup_code(code)
    if isinstance(parsed, Invalid):
        raise InvalidCode()
    code_hash = hash_code(parsed.value, settings)

    with db_session() as s:
        res = s.execute(
            update(BackupCode)
            .where(
                BackupCode.user_id == user_id,
                BackupCode.code_hash == code_hash,
                BackupCode.used_at.is_(None),
            )
            .values(used_at=now or utcnow())
        )
        if res.rowcount == 1:
            logger.info("Backup code consumed for user %s", user_id)
            return

        spent = s.execute(
            select(BackupCode.id).where(BackupCode.user_id == user_id, BackupCode.code_hash == code_hash)
        ).first()

    if spent is not None:
        raise BackupCodeAlreadyUsed()
    raise InvalidCode()


def remaining_backup_codes(user_id: str) -> int:
    with db_session() as s:
        q = select(func.count(BackupCode.id)).where(BackupCode.user_id == user_id, BackupCode.used_at.is_(None))
        return int(s.execute(q).scalar_one())


def revoke_backup_codes(user_id: str) -> int:
    with db_session() as s:
        res = s.execute(delete(BackupCode).where(BackupCode.user_id == user_id))
        return res.rowcount
