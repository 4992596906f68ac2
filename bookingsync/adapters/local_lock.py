"""In-process implementation of SyncLockPort.

Sufficient for a single API process. Deployments running several workers
need a shared lock (e.g. a database advisory lock) behind the same port.
"""

from __future__ import annotations

import logging

logger = logging.getLogger(__name__)


class InProcessSyncLock:
    """Keys held by running cycles. Check-and-set happens without awaiting."""

    def __init__(self) -> None:
        self._held: set[str] = set()

    async def acquire(self, key: str) -> bool:
        if key in self._held:
            logger.debug("Sync lock for %s is already held", key)
            return False
        self._held.add(key)
        return True

    async def release(self, key: str) -> None:
        self._held.discard(key)

    def is_held(self, key: str) -> bool:
        return key in self._held
