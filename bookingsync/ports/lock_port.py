"""Lock port — mutual exclusion the sync trigger requires from its host.

Two reconciliations against the same checkpoint could double-import or race
on push writes, so a cycle only runs while holding the lock for its
calendar. The reconciler itself takes no lock; whoever triggers it does.
"""

from __future__ import annotations

from typing import Protocol


class SyncLockPort(Protocol):
    """Non-blocking lock keyed by calendar resource id."""

    async def acquire(self, key: str) -> bool:
        """Take the lock; False if another holder has it."""
        ...

    async def release(self, key: str) -> None: ...
