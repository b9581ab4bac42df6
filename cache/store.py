"""
cache/store.py -- In-process cache for resolved permission sets.

Resolving a principal's permissions touches four tables. The result for a
(principal, tenant) pair is cached for a short TTL (default 15 minutes).
The TTL is only a safety net: every administrative change that can affect a
pair pushes an explicit invalidation, so a revoked permission disappears on
the very next request.

The cache is an explicit object built at process start and handed to the
resolver; there is no module-level instance. `namespace` isolates
deployments sharing a log stream and is carried in every log line.

Concurrency:
  One lock guards the dict; reads and invalidations are both O(1) under it.
  A resolver snapshots generation() BEFORE reading the database and passes
  it back to set(). Any invalidation in between bumps the generation and the
  stale result is dropped instead of cached.

Usage:
    cache = PermissionCache(ttl=900, namespace="eu-1")
    gen = cache.generation()
    value = cache.get(7, 3)              # None on miss or expiry
    cache.set(7, 3, resolved, gen)
    cache.invalidate(7, 3)
    cache.purge_expired()                # call periodically to trim old entries
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Optional

from core.clock import Clock, to_epoch, utcnow

logger = logging.getLogger("tenantauth.cache")

_DEFAULT_TTL = 15 * 60  # seconds

_Key = tuple[int, Optional[int]]


class PermissionCache:
    def __init__(self, ttl: int = _DEFAULT_TTL, namespace: str = "default", clock: Clock = utcnow) -> None:
        self.ttl = ttl
        self.namespace = namespace
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[_Key, tuple[Any, float]] = {}
        self._generation = 0

    def generation(self) -> int:
        with self._lock:
            return self._generation

    def get(self, principal_id: int, tenant_id: Optional[int]) -> Optional[Any]:
        """Return the cached value if present and not expired."""
        key = (principal_id, tenant_id)
        now = to_epoch(self._clock())
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, cached_at = entry
            if now - cached_at > self.ttl:
                del self._entries[key]
                return None
            return value

    def set(self, principal_id: int, tenant_id: Optional[int], value: Any, generation: int) -> bool:
        """Store value unless an invalidation happened since `generation` was taken."""
        with self._lock:
            if generation != self._generation:
                return False
            self._entries[(principal_id, tenant_id)] = (value, to_epoch(self._clock()))
            return True

    def invalidate(self, principal_id: int, tenant_id: Optional[int]) -> None:
        with self._lock:
            self._generation += 1
            self._entries.pop((principal_id, tenant_id), None)
        logger.debug("[%s] invalidated principal=%s tenant=%s", self.namespace, principal_id, tenant_id)

    def invalidate_principal(self, principal_id: int) -> int:
        with self._lock:
            self._generation += 1
            doomed = [k for k in self._entries if k[0] == principal_id]
            for key in doomed:
                del self._entries[key]
        logger.debug("[%s] invalidated %d entries for principal=%s", self.namespace, len(doomed), principal_id)
        return len(doomed)

    def invalidate_tenant(self, tenant_id: int) -> int:
        with self._lock:
            self._generation += 1
            doomed = [k for k in self._entries if k[1] == tenant_id]
            for key in doomed:
                del self._entries[key]
        logger.debug("[%s] invalidated %d entries for tenant=%s", self.namespace, len(doomed), tenant_id)
        return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._generation += 1
            self._entries.clear()
        logger.info("[%s] permission cache cleared", self.namespace)

    def purge_expired(self) -> int:
        """Delete all entries older than TTL. Returns number of entries removed."""
        cutoff = to_epoch(self._clock()) - self.ttl
        with self._lock:
            doomed = [k for k, (_, cached_at) in self._entries.items() if cached_at < cutoff]
            for key in doomed:
                del self._entries[key]
        return len(doomed)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def close(self) -> None:
        self.clear()
