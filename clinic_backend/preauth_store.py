"""
Server-side store of pre-authentication sessions.

Lifecycle: `start()` at service start (tables + purge of stale entries),
records created by the handshake, removed on promotion/revocation. Every
`create` also evicts the records that have expired. Each state change is a
single conditional statement, so two concurrent callers can never both move
the same record.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import delete, select, update

from clinic_backend.auth_models import PreAuthRecord, PreAuthState
from clinic_backend.auth_security import new_jti
from clinic_backend.db import db_session, init_db, utcnow

logger = logging.getLogger(__name__)


class PreAuthStore:
    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self.clock = clock

    def start(self) -> None:
        init_db()
        self.purge_expired()

    def create(
        self,
        user_id: str,
        authenticator_available: bool,
        email_available: bool,
        ttl_seconds: int,
        now: datetime | None = None,
    ) -> PreAuthRecord:
        now = now or self.clock()
        with db_session() as s:
            # abandoned logins go away as new ones arrive
            purged = s.execute(delete(PreAuthRecord).where(PreAuthRecord.expires_at <= now)).rowcount
            if purged:
                logger.info("Purged %d expired pre-auth sessions", purged)

            rec = PreAuthRecord(
                jti=new_jti(),
                user_id=user_id,
                authenticator_available=authenticator_available,
                email_available=email_available,
                state=PreAuthState.PENDING,
                failed_attempts=0,
                created_at=now,
                expires_at=now + timedelta(seconds=ttl_seconds),
            )
            s.add(rec)
            s.flush()
            return rec

    def get(self, jti: str) -> PreAuthRecord | None:
        with db_session() as s:
            return s.execute(select(PreAuthRecord).where(PreAuthRecord.jti == jti)).scalar_one_or_none()

    def claim(self, jti: str) -> bool:
        """PENDING -> VERIFYING. True only for the single caller that moved it."""
        with db_session() as s:
            res = s.execute(
                update(PreAuthRecord)
                .where(PreAuthRecord.jti == jti, PreAuthRecord.state == PreAuthState.PENDING)
                .values(state=PreAuthState.VERIFYING)
            )
            return res.rowcount == 1

    def release(self, jti: str) -> None:
        """Give the claim back without counting an attempt (infrastructure faults)."""
        with db_session() as s:
            s.execute(
                update(PreAuthRecord)
                .where(PreAuthRecord.jti == jti, PreAuthRecord.state == PreAuthState.VERIFYING)
                .values(state=PreAuthState.PENDING)
            )

    def release_failed(self, jti: str, max_attempts: int) -> bool:
        """
        Count a failed attempt and give the claim back.
        Returns True when the threshold is reached and the record was revoked.
        """
        with db_session() as s:
            rec = s.execute(
                select(PreAuthRecord).where(
                    PreAuthRecord.jti == jti, PreAuthRecord.state == PreAuthState.VERIFYING
                )
            ).scalar_one_or_none()
            if rec is None:
                return False

            attempts = rec.failed_attempts + 1
            if attempts >= max_attempts:
                s.execute(delete(PreAuthRecord).where(PreAuthRecord.id == rec.id))
                logger.warning("Pre-auth session revoked after %d failed attempts (user %s)", attempts, rec.user_id)
                return True

            s.execute(
                update(PreAuthRecord)
                .where(PreAuthRecord.id == rec.id, PreAuthRecord.state == PreAuthState.VERIFYING)
                .values(state=PreAuthState.PENDING, failed_attempts=attempts)
            )
            return False

    def consume(self, jti: str) -> bool:
        """Promotion: delete the claimed record. True for exactly one caller."""
        with db_session() as s:
            res = s.execute(
                delete(PreAuthRecord).where(
                    PreAuthRecord.jti == jti, PreAuthRecord.state == PreAuthState.VERIFYING
                )
            )
            return res.rowcount == 1

    def revoke(self, jti: str) -> bool:
        with db_session() as s:
            res = s.execute(delete(PreAuthRecord).where(PreAuthRecord.jti == jti))
            return res.rowcount == 1

    def revoke_user(self, user_id: str) -> int:
        with db_session() as s:
            res = s.execute(delete(PreAuthRecord).where(PreAuthRecord.user_id == user_id))
            return res.rowcount

    def purge_expired(self, now: datetime | None = None) -> int:
        now = now or self.clock()
        with db_session() as s:
            res = s.execute(delete(PreAuthRecord).where(PreAuthRecord.expires_at <= now))
            n = res.rowcount
        if n:
            logger.info("Purged %d expired pre-auth sessions", n)
        return n
