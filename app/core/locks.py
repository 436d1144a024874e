"""Keyed mutexes for serializing subscription transitions.

Each key (``subscription:<id>`` or ``user:<id>``) maps to its own
``asyncio.Lock``. Entries are reference counted and dropped once no task
holds or waits on them, so the registry does not grow with the number of
subscriptions ever touched.

Note: this serializes tasks inside one process. Across processes the state
machine additionally re-reads the row with ``SELECT ... FOR UPDATE``.
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

from app.core.exceptions import LockTimeoutError

logger = logging.getLogger(__name__)


@dataclass
class _Entry:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    refs: int = 0


class KeyedLockRegistry:
    """Registry of per-key asyncio locks with bounded acquisition."""

    def __init__(self, default_timeout: float | None = None) -> None:
        self._entries: dict[str, _Entry] = {}
        self._default_timeout = default_timeout

    def __len__(self) -> int:
        return len(self._entries)

    def is_locked(self, key: str) -> bool:
        entry = self._entries.get(key)
        return bool(entry and entry.lock.locked())

    @asynccontextmanager
    async def hold(self, key: str, timeout: float | None = None) -> AsyncIterator[None]:
        """
        Hold the lock for ``key`` for the duration of the context.

        Raises LockTimeoutError if the lock is not acquired within ``timeout``
        seconds. The lock is released on every exit path.
        """
        wait = self._default_timeout if timeout is None else timeout
        entry = self._entries.setdefault(key, _Entry())
        entry.refs += 1
        try:
            try:
                if wait is None:
                    await entry.lock.acquire()
                else:
                    await asyncio.wait_for(entry.lock.acquire(), timeout=wait)
            except TimeoutError:
                logger.warning(f"[locks] Timed out after {wait}s waiting for {key}")
                raise LockTimeoutError(key) from None
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            entry.refs -= 1
            if entry.refs == 0 and self._entries.get(key) is entry:
                del self._entries[key]


def subscription_key(subscription_id: object) -> str:
    return f"subscription:{subscription_id}"


def user_key(user_id: str) -> str:
    return f"user:{user_id}"


subscription_locks = KeyedLockRegistry()
