"""
auth/lockout.py -- Failed-attempt tracking and temporary lockout.

Two rolling counters live in the auth_throttle table:

  ("identity", <username>)  -- locks one account after LOCKOUT_THRESHOLD
                               failures inside LOCKOUT_WINDOW_SECONDS.
  ("source", <address>)     -- throttles one client address after
                               SOURCE_THROTTLE_THRESHOLD failures, whatever
                               identities it targets.

Concurrency: each failure is counted by ONE upsert statement
(INSERT ... ON CONFLICT DO UPDATE SET failures = failures + 1). The database
applies concurrent increments in a total order.

The login path counts an attempt BEFORE the password is checked: reserve()
increments the identity counter and refuses the attempt once the count
passes the threshold. A burst of parallel guesses therefore gets at most
`threshold` password checks. record_attempt(..., reserved=True) settles the
reservation afterwards: a failure keeps it, a success clears the counter,
and an uncounted refusal hands it back.

Every attempt, counted or not, is also appended to login_attempts for the
audit trail. That table is insert-only; prune_attempts() enforces retention.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from sqlalchemy import and_, case, delete, insert, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine

from auth.models import LoginAttempt
from auth.schema import auth_throttle, login_attempts
from core.clock import Clock, from_epoch, to_epoch, utcnow

logger = logging.getLogger("tenantauth.auth.lockout")

IDENTITY_SCOPE = "identity"
SOURCE_SCOPE = "source"

# Failure reasons recorded for audit only. They describe attempts that were
# refused before any password check, so they do not extend an active lockout.
UNCOUNTED_REASONS = frozenset({"ACCOUNT_LOCKED", "RATE_LIMITED"})


class AttemptStore:
    """Persistence for login_attempts (audit) and auth_throttle (counters)."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        dialect = engine.dialect.name
        if dialect == "sqlite":
            self._upsert = sqlite_insert
        elif dialect == "postgresql":
            self._upsert = pg_insert
        else:
            raise ValueError(f"Atomic upsert not supported for dialect {dialect!r}")

    def append(self, attempt: LoginAttempt) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                insert(login_attempts).values(
                    identity=attempt.identity,
                    source_address=attempt.source_address,
                    user_agent=attempt.user_agent,
                    attempted_at=to_epoch(attempt.attempted_at),
                    success=attempt.success,
                    failure_reason=attempt.failure_reason,
                )
            )
            conn.commit()

    def increment(self, scope: str, key: str, now: float, window: float, threshold: int) -> int:
        """Count one failure and return the counter value after the increment.

        A counter whose window has elapsed restarts at 1. Reaching the
        threshold stamps locked_until = now + window in the same transaction.
        """
        cutoff = now - window
        in_window = auth_throttle.c.window_start > cutoff
        stmt = self._upsert(auth_throttle).values(
            scope=scope, key=key, window_start=now, failures=1, locked_until=None
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[auth_throttle.c.scope, auth_throttle.c.key],
            set_={
                "failures": case((in_window, auth_throttle.c.failures + 1), else_=1),
                "window_start": case((in_window, auth_throttle.c.window_start), else_=now),
                "locked_until": case((in_window, auth_throttle.c.locked_until), else_=None),
            },
        )
        row_key = and_(auth_throttle.c.scope == scope, auth_throttle.c.key == key)
        with self.engine.begin() as conn:
            conn.execute(stmt)
            conn.execute(
                update(auth_throttle)
                .where(
                    and_(
                        row_key,
                        auth_throttle.c.failures >= threshold,
                        (auth_throttle.c.locked_until.is_(None)) | (auth_throttle.c.locked_until <= now),
                    )
                )
                .values(locked_until=now + window)
            )
            failures = conn.execute(select(auth_throttle.c.failures).where(row_key)).scalar()
        return failures or 0

    def decrement(self, scope: str, key: str, threshold: int) -> None:
        """Hand back one counted attempt; drops the lock if the count falls below the threshold."""
        failures = auth_throttle.c.failures
        with self.engine.begin() as conn:
            conn.execute(
                update(auth_throttle)
                .where(and_(auth_throttle.c.scope == scope, auth_throttle.c.key == key, failures > 0))
                .values(
                    failures=failures - 1,
                    locked_until=case((failures - 1 < threshold, None), else_=auth_throttle.c.locked_until),
                )
            )

    def locked_until(self, scope: str, key: str) -> float | None:
        with self.engine.connect() as conn:
            return conn.execute(
                select(auth_throttle.c.locked_until).where(
                    and_(auth_throttle.c.scope == scope, auth_throttle.c.key == key)
                )
            ).scalar()

    def reset(self, scope: str, key: str) -> None:
        with self.engine.connect() as conn:
            conn.execute(delete(auth_throttle).where(and_(auth_throttle.c.scope == scope, auth_throttle.c.key == key)))
            conn.commit()

    def prune_attempts(self, before: float) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(delete(login_attempts).where(login_attempts.c.attempted_at < before))
            conn.commit()
        return result.rowcount

    def prune_counters(self, before: float) -> int:
        """Drop counters whose window and lock both ended before `before`."""
        with self.engine.connect() as conn:
            result = conn.execute(
                delete(auth_throttle).where(
                    and_(
                        auth_throttle.c.window_start < before,
                        (auth_throttle.c.locked_until.is_(None)) | (auth_throttle.c.locked_until < before),
                    )
                )
            )
            conn.commit()
        return result.rowcount

    def recent(self, identity: str, limit: int = 20) -> list[LoginAttempt]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(login_attempts)
                .where(login_attempts.c.identity == identity)
                .order_by(login_attempts.c.attempted_at.desc(), login_attempts.c.id.desc())
                .limit(limit)
            ).fetchall()
        return [
            LoginAttempt(
                id=r.id,
                identity=r.identity,
                source_address=r.source_address,
                user_agent=r.user_agent,
                attempted_at=from_epoch(r.attempted_at),
                success=bool(r.success),
                failure_reason=r.failure_reason,
            )
            for r in rows
        ]


class LockoutGuard:
    """Per-identity lockout plus per-source throttling.

    Usage:
        guard = LockoutGuard(AttemptStore(engine), threshold=5, window_seconds=900)
        if guard.is_locked("alice") or not guard.reserve("alice"): ...
        # check the password, then settle the reservation
        guard.record_attempt("alice", "203.0.113.9", False, "WRONG_PASSWORD", reserved=True)
    """

    def __init__(
        self,
        attempts: AttemptStore,
        *,
        threshold: int = 5,
        window_seconds: int = 900,
        source_threshold: int = 50,
        clock: Clock = utcnow,
    ) -> None:
        self.attempts = attempts
        self.threshold = threshold
        self.window_seconds = window_seconds
        self.source_threshold = source_threshold
        self._clock = clock

    @classmethod
    def from_settings(cls, attempts: AttemptStore, settings, clock: Clock = utcnow) -> LockoutGuard:
        return cls(
            attempts,
            threshold=settings.lockout_threshold,
            window_seconds=settings.lockout_window_seconds,
            source_threshold=settings.source_throttle_threshold,
            clock=clock,
        )

    def is_locked(self, identity: str) -> bool:
        return self._active_lock(IDENTITY_SCOPE, _normalize(identity))

    def is_throttled(self, source_address: str) -> bool:
        return self._active_lock(SOURCE_SCOPE, source_address)

    def reserve(self, identity: str) -> bool:
        """Count one attempt against `identity` before its password is checked.

        Returns False once the count passes the threshold; the caller must
        refuse the attempt without hashing and settle it as ACCOUNT_LOCKED.
        """
        failures = self.attempts.increment(
            IDENTITY_SCOPE, _normalize(identity), to_epoch(self._clock()), self.window_seconds, self.threshold
        )
        if failures == self.threshold:
            logger.warning("Identity locked after %d attempts (window %ds)", failures, self.window_seconds)
        return failures <= self.threshold

    def record_attempt(
        self,
        identity: str,
        source_address: str,
        success: bool,
        failure_reason: str | None = None,
        user_agent: str | None = None,
        *,
        reserved: bool = False,
    ) -> None:
        """Append the audit row and update the counters.

        Success clears the identity counter (the source counter keeps
        running: one good login must not launder a spraying campaign).
        Failures increment both counters unless the attempt was refused
        before any password check (UNCOUNTED_REASONS). With reserved=True the
        identity counter was already incremented by reserve(), so a failure
        leaves it as is and an uncounted refusal gives the reservation back.
        """
        identity = _normalize(identity)
        now = self._clock()
        self.attempts.append(
            LoginAttempt(
                identity=identity,
                source_address=source_address,
                attempted_at=now,
                success=success,
                failure_reason=failure_reason,
                user_agent=user_agent,
            )
        )
        if success:
            self.attempts.reset(IDENTITY_SCOPE, identity)
            return
        if failure_reason in UNCOUNTED_REASONS:
            if reserved:
                self.attempts.decrement(IDENTITY_SCOPE, identity, self.threshold)
            return
        epoch = to_epoch(now)
        if not reserved:
            failures = self.attempts.increment(IDENTITY_SCOPE, identity, epoch, self.window_seconds, self.threshold)
            if failures == self.threshold:
                logger.warning("Identity locked after %d failed attempts (window %ds)", failures, self.window_seconds)
        source_failures = self.attempts.increment(
            SOURCE_SCOPE, source_address, epoch, self.window_seconds, self.source_threshold
        )
        if source_failures == self.source_threshold:
            logger.warning("Source %s throttled after %d failed attempts", source_address, source_failures)

    def prune(self, retention: timedelta) -> int:
        """Retention sweep: delete audit rows older than `retention` and dead counters."""
        now = self._clock()
        removed = self.attempts.prune_attempts(to_epoch(now - retention))
        self.attempts.prune_counters(to_epoch(now) - self.window_seconds)
        return removed

    def _active_lock(self, scope: str, key: str) -> bool:
        until = self.attempts.locked_until(scope, key)
        return until is not None and until > to_epoch(self._clock())


def _normalize(identity: str) -> str:
    return identity.strip().lower()
