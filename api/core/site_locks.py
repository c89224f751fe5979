"""
Per-site mutual exclusion for reconcile transactions.

Holding a site's lock across snapshot, persist, render, activate and
restore keeps two mutations of the same site (including a scheduler
renewal) from interleaving and restoring each other's snapshots.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Dict

logger = logging.getLogger(__name__)


class SiteLocks:
    """Keyed asyncio locks, created on demand and dropped when idle."""

    def __init__(self, enabled: bool = True):
        self.enabled = enabled
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, site_id: str):
        """Hold the lock for ``site_id`` for the duration of the block."""
        if not self.enabled:
            yield
            return

        lock = self._locks.setdefault(site_id, asyncio.Lock())
        self._waiters[site_id] = self._waiters.get(site_id, 0) + 1
        try:
            if lock.locked():
                logger.debug(f"Waiting for lock on site {site_id}")
            async with lock:
                yield
        finally:
            self._waiters[site_id] -= 1
            if self._waiters[site_id] == 0:
                del self._waiters[site_id]
                del self._locks[site_id]

    def is_locked(self, site_id: str) -> bool:
        lock = self._locks.get(site_id)
        return bool(lock and lock.locked())
