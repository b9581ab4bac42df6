"""
auth/revocation.py -- Durable record of issued refresh tokens.

This table is the single source of truth for refresh-token validity beyond
the signature check: a well-formed, unexpired JWT whose jti is revoked -- or
unknown, e.g. already swept -- is rejected.

Linearizability: revoke() and rotate() are conditional updates
(UPDATE ... WHERE jti = :jti AND revoked = false). The database serializes
writers on the row, so of N concurrent calls on the same jti exactly one sees
rowcount == 1. rotate() performs that update and the insert of the successor
in ONE transaction: either the old token is consumed and the new one exists,
or neither happened.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import and_, delete, insert, select, update
from sqlalchemy.engine import Engine

from auth.models import RefreshTokenRecord
from auth.schema import refresh_tokens
from core.clock import Clock, from_epoch, to_epoch, utcnow

logger = logging.getLogger("tenantauth.auth.revocation")


class RevocationStore:
    """Repository for refresh_tokens.

    Usage:
        store = RevocationStore(engine)
        store.persist(RefreshTokenRecord(jti=..., principal_id=1, expires_at=..., family_id=...))
        store.is_revoked(jti)      # False
        store.revoke(jti)          # True (this call revoked it)
        store.revoke(jti)          # False (already revoked)
    """

    def __init__(self, engine: Engine, clock: Clock = utcnow) -> None:
        self.engine = engine
        self._clock = clock

    def persist(self, record: RefreshTokenRecord) -> None:
        with self.engine.connect() as conn:
            conn.execute(insert(refresh_tokens).values(**_record_values(record, self._clock())))
            conn.commit()

    def get(self, jti: str) -> RefreshTokenRecord | None:
        with self.engine.connect() as conn:
            row = conn.execute(select(refresh_tokens).where(refresh_tokens.c.jti == jti)).fetchone()
        return _row_to_record(row) if row is not None else None

    def is_revoked(self, jti: str) -> bool:
        """True if the jti is revoked or was never recorded (fail closed)."""
        with self.engine.connect() as conn:
            revoked = conn.execute(select(refresh_tokens.c.revoked).where(refresh_tokens.c.jti == jti)).scalar()
        return revoked is None or bool(revoked)

    def revoke(self, jti: str) -> bool:
        """Mark one jti revoked. Returns True only for the call that flipped it."""
        with self.engine.connect() as conn:
            result = conn.execute(
                update(refresh_tokens)
                .where(and_(refresh_tokens.c.jti == jti, refresh_tokens.c.revoked.is_(False)))
                .values(revoked=True)
            )
            conn.commit()
        return result.rowcount == 1

    def rotate(self, old_jti: str, successor: RefreshTokenRecord) -> bool:
        """Consume old_jti and record its successor atomically.

        Returns False -- and records nothing -- if old_jti was already
        revoked or does not exist.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                update(refresh_tokens)
                .where(and_(refresh_tokens.c.jti == old_jti, refresh_tokens.c.revoked.is_(False)))
                .values(revoked=True)
            )
            if result.rowcount != 1:
                return False
            conn.execute(insert(refresh_tokens).values(**_record_values(successor, self._clock())))
        return True

    def revoke_family(self, family_id: str) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                update(refresh_tokens)
                .where(and_(refresh_tokens.c.family_id == family_id, refresh_tokens.c.revoked.is_(False)))
                .values(revoked=True)
            )
            conn.commit()
        return result.rowcount

    def revoke_all(self, principal_id: int) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                update(refresh_tokens)
                .where(and_(refresh_tokens.c.principal_id == principal_id, refresh_tokens.c.revoked.is_(False)))
                .values(revoked=True)
            )
            conn.commit()
        return result.rowcount

    def sweep_expired(self) -> int:
        """Delete rows whose expiry has passed. Idempotent, delete-only.

        Safe alongside live traffic: a swept jti reads as revoked through
        is_revoked(), and its JWT is already past exp anyway.
        """
        now = to_epoch(self._clock())
        with self.engine.connect() as conn:
            result = conn.execute(delete(refresh_tokens).where(refresh_tokens.c.expires_at < now))
            conn.commit()
        if result.rowcount:
            logger.info("Swept %d expired refresh tokens", result.rowcount)
        return result.rowcount


def _record_values(record: RefreshTokenRecord, created_at: datetime) -> dict:
    return {
        "jti": record.jti,
        "principal_id": record.principal_id,
        "tenant_id": record.tenant_id,
        "device_id": record.device_id,
        "family_id": record.family_id,
        "revoked": record.revoked,
        "expires_at": to_epoch(record.expires_at),
        "created_at": to_epoch(record.created_at or created_at),
    }


def _row_to_record(row) -> RefreshTokenRecord:
    return RefreshTokenRecord(
        jti=row.jti,
        principal_id=row.principal_id,
        tenant_id=row.tenant_id,
        device_id=row.device_id,
        family_id=row.family_id,
        revoked=bool(row.revoked),
        expires_at=from_epoch(row.expires_at),
        created_at=from_epoch(row.created_at),
    )
