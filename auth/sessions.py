"""
auth/sessions.py -- Stateful browser sessions.

Security design decisions:
  Fixation: create() always mints a brand-new identifier from
       secrets.token_urlsafe(32). A pre-authentication identifier is never
       reused or upgraded; the gateway destroys it before creating the new
       session.

  Storage: only SHA-256(session_id) is stored. The raw identifier exists in
       the client's cookie and in memory for the current request, nothing
       else.

  Idle timeout: touch() is a conditional UPDATE that only refreshes
       last_activity_at when the session is still inside both the idle and
       the absolute lifetime. A miss deletes the row and raises
       SessionExpired, so an expired session can never be revived by a
       racing request.

  Anti-forgery: each session carries a random token minted at create().
       Callers compare it with hmac.compare_digest on every state-mutating
       request.

The manager is transport-agnostic: cookies are the web layer's concern.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets

from sqlalchemy import and_, delete, insert, select, update
from sqlalchemy.engine import Engine

from auth.errors import AntiForgeryError, SessionExpired
from auth.models import Session, User
from auth.schema import sessions
from core.clock import Clock, from_epoch, to_epoch, utcnow

logger = logging.getLogger("tenantauth.auth.sessions")


def _digest(session_id: str) -> str:
    return hashlib.sha256(session_id.encode("utf-8")).hexdigest()


class SessionManager:
    """Create, renew and destroy server-side sessions.

    Usage:
        manager = SessionManager(engine, idle_timeout_seconds=1800)
        session = manager.create(user, tenant_id=user.tenant_id)
        manager.touch(session.id)      # Session, or raises SessionExpired
        manager.destroy(session.id)
    """

    def __init__(
        self,
        engine: Engine,
        *,
        idle_timeout_seconds: int = 30 * 60,
        absolute_timeout_seconds: int = 12 * 60 * 60,
        clock: Clock = utcnow,
    ) -> None:
        self.engine = engine
        self.idle_timeout_seconds = idle_timeout_seconds
        self.absolute_timeout_seconds = absolute_timeout_seconds
        self._clock = clock

    @classmethod
    def from_settings(cls, engine: Engine, settings, clock: Clock = utcnow) -> SessionManager:
        return cls(
            engine,
            idle_timeout_seconds=settings.session_idle_timeout_seconds,
            absolute_timeout_seconds=settings.session_absolute_timeout_seconds,
            clock=clock,
        )

    def create(self, principal: User, tenant_id: int | None) -> Session:
        now = self._clock()
        session = Session(
            id=secrets.token_urlsafe(32),
            principal_id=principal.id,
            tenant_id=tenant_id,
            kind=principal.kind,
            anti_forgery_token=secrets.token_urlsafe(32),
            created_at=now,
            last_activity_at=now,
        )
        with self.engine.connect() as conn:
            conn.execute(
                insert(sessions).values(
                    id_hash=_digest(session.id),
                    principal_id=session.principal_id,
                    tenant_id=session.tenant_id,
                    kind=session.kind,
                    anti_forgery_token=session.anti_forgery_token,
                    created_at=to_epoch(now),
                    last_activity_at=to_epoch(now),
                )
            )
            conn.commit()
        return session

    def touch(self, session_id: str) -> Session:
        """Refresh activity on a live session, or destroy it and raise SessionExpired."""
        id_hash = _digest(session_id)
        now = to_epoch(self._clock())
        with self.engine.connect() as conn:
            result = conn.execute(
                update(sessions)
                .where(
                    and_(
                        sessions.c.id_hash == id_hash,
                        sessions.c.last_activity_at > now - self.idle_timeout_seconds,
                        sessions.c.created_at > now - self.absolute_timeout_seconds,
                    )
                )
                .values(last_activity_at=now)
            )
            conn.commit()
            if result.rowcount != 1:
                conn.execute(delete(sessions).where(sessions.c.id_hash == id_hash))
                conn.commit()
                raise SessionExpired()
            row = conn.execute(select(sessions).where(sessions.c.id_hash == id_hash)).fetchone()
        if row is None:
            # Destroyed by a concurrent logout between the update and the read.
            raise SessionExpired()
        return Session(
            id=session_id,
            principal_id=row.principal_id,
            tenant_id=row.tenant_id,
            kind=row.kind,
            anti_forgery_token=row.anti_forgery_token,
            created_at=from_epoch(row.created_at),
            last_activity_at=from_epoch(row.last_activity_at),
        )

    def destroy(self, session_id: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(delete(sessions).where(sessions.c.id_hash == _digest(session_id)))
            conn.commit()
        return result.rowcount > 0

    def destroy_all_for_principal(self, principal_id: int) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(delete(sessions).where(sessions.c.principal_id == principal_id))
            conn.commit()
        logger.info("Destroyed %d sessions for principal %s", result.rowcount, principal_id)
        return result.rowcount

    def purge_idle(self) -> int:
        """Maintenance: delete sessions past either timeout. Delete-only, idempotent."""
        now = to_epoch(self._clock())
        with self.engine.connect() as conn:
            result = conn.execute(
                delete(sessions).where(
                    (sessions.c.last_activity_at <= now - self.idle_timeout_seconds)
                    | (sessions.c.created_at <= now - self.absolute_timeout_seconds)
                )
            )
            conn.commit()
        return result.rowcount

    @staticmethod
    def verify_anti_forgery(session: Session, presented: str | None) -> None:
        """Raise AntiForgeryError unless presented matches the session token."""
        expected = session.anti_forgery_token.encode("utf-8")
        if not presented or not hmac.compare_digest(presented.encode("utf-8"), expected):
            logger.info("Anti-forgery token mismatch for principal %s", session.principal_id)
            raise AntiForgeryError()
