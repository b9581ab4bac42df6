"""
auth/maintenance.py -- Periodic housekeeping for auth state.

Every step is delete-only and idempotent, so the sweep can run beside live
traffic, overlap with another sweep, or be re-run after a crash:

  refresh_tokens  -- rows past expires_at (revoked or not; a missing jti
                     reads as revoked, so deletion never revives a token)
  login_attempts  -- audit rows older than the retention window
  sessions        -- sessions past the idle or absolute timeout
  cache_entries   -- permission cache entries older than their TTL

Called from the app lifespan on a timer and from `python main.py sweep`.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from auth.lockout import LockoutGuard
from auth.revocation import RevocationStore
from auth.sessions import SessionManager
from cache.store import PermissionCache

logger = logging.getLogger("tenantauth.auth.maintenance")


def sweep(
    revocations: RevocationStore,
    lockout: LockoutGuard,
    sessions: SessionManager,
    cache: PermissionCache | None,
    retention_days: int,
) -> dict[str, int]:
    result = {
        "refresh_tokens": revocations.sweep_expired(),
        "login_attempts": lockout.prune(timedelta(days=retention_days)),
        "sessions": sessions.purge_idle(),
        "cache_entries": cache.purge_expired() if cache is not None else 0,
    }
    logger.info(
        "Maintenance sweep: %d refresh tokens, %d login attempts, %d sessions, %d cache entries removed",
        result["refresh_tokens"],
        result["login_attempts"],
        result["sessions"],
        result["cache_entries"],
    )
    return result
