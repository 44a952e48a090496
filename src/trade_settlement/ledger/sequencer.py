"""Per-account single-writer serialization of ledger submissions.

Every transaction from one account consumes that account's next sequence
number, so two in-flight submissions from the same account collide. The
sequencer hands out one asyncio.Lock per address: submissions from one
account queue up behind each other, other accounts proceed untouched.

A sequencer must be shared by every service in the process (inject the same
instance, or use ``AccountSequencer.shared()``); it does not coordinate
across processes.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, ClassVar

if TYPE_CHECKING:
    from collections.abc import AsyncIterator


class AccountSequencer:
    _shared: ClassVar[AccountSequencer | None] = None

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, int] = {}

    @classmethod
    def shared(cls) -> AccountSequencer:
        """Return the process-wide sequencer."""
        if cls._shared is None:
            cls._shared = cls()
        return cls._shared

    def is_busy(self, address: str) -> bool:
        lock = self._locks.get(address)
        return lock is not None and lock.locked()

    def tracked_accounts(self) -> set[str]:
        return set(self._locks)

    @asynccontextmanager
    async def serialize(self, address: str) -> AsyncIterator[None]:
        """Hold the single-writer slot of ``address`` for the block.

        A lock lives only while some task holds or awaits it, so idle
        accounts leave nothing behind.
        """
        lock = self._locks.setdefault(address, asyncio.Lock())
        self._holders[address] = self._holders.get(address, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[address] -= 1
            if self._holders[address] == 0:
                del self._holders[address]
                del self._locks[address]
