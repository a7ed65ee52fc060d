"""Per-save run locks.

At most one backup run per save is active at a time. Runs on different saves
never contend. The registry hands out a ``SaveLockToken`` that the
orchestrator passes explicitly to each stage; there is no ambient
"run in progress" state.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from savesync.config import ConflictPolicy
from savesync.exceptions import ConcurrentRunConflictError

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SaveLockToken:
    """Proof that the holder owns the run lock for ``save_id``."""

    save_id: int
    token: str = field(default_factory=lambda: uuid.uuid4().hex)


class SaveLockRegistry:
    """Hands out one ``asyncio.Lock`` per save id.

    With ``ConflictPolicy.REJECT`` a second request for a busy save raises
    ``ConcurrentRunConflictError`` immediately; with ``ConflictPolicy.WAIT``
    it queues until the active run releases the lock. Locks are only
    meaningful within one event loop.
    """

    def __init__(self, policy: ConflictPolicy = ConflictPolicy.REJECT) -> None:
        self.policy = policy
        self._locks: dict[int, asyncio.Lock] = {}
        self._users: dict[int, int] = {}
        self._holders: dict[int, SaveLockToken] = {}

    def _lock_for(self, save_id: int) -> asyncio.Lock:
        lock = self._locks.get(save_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[save_id] = lock
        return lock

    def is_locked(self, save_id: int) -> bool:
        lock = self._locks.get(save_id)
        return lock is not None and lock.locked()

    def holder(self, save_id: int) -> SaveLockToken | None:
        return self._holders.get(save_id)

    def check(self, token: SaveLockToken) -> None:
        """Raise ``RuntimeError`` unless ``token`` currently holds its save's lock."""
        if self.holder(token.save_id) != token:
            raise RuntimeError(f"Lock token for save {token.save_id} is not the active holder")

    @asynccontextmanager
    async def acquire(self, save_id: int) -> AsyncGenerator[SaveLockToken]:
        """Hold the run lock for ``save_id`` for the duration of the block."""
        lock = self._lock_for(save_id)
        if self.policy is ConflictPolicy.REJECT and lock.locked():
            raise ConcurrentRunConflictError(save_id)
        if lock.locked():
            logger.info("Save %d is busy, waiting for the active run to finish", save_id)
        self._users[save_id] = self._users.get(save_id, 0) + 1
        try:
            await lock.acquire()
            token = SaveLockToken(save_id)
            self._holders[save_id] = token
            try:
                yield token
            finally:
                del self._holders[save_id]
                lock.release()
        finally:
            # Forget the lock once no run holds it or waits for it.
            self._users[save_id] -= 1
            if not self._users[save_id]:
                del self._users[save_id]
                del self._locks[save_id]
