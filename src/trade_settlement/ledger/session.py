"""Explicitly owned, reference-counted ledger connection.

Replaces an ambient module-level client: the application creates one
LedgerSession at startup, injects it into the XRPL gateway, and shuts it
down on exit.

Lifecycle:
    connect:   lazily on first ``acquire()``
    reconnect: transparently when the websocket was dropped
    shutdown:  closes the socket; later acquires fail fast

Usage:
    session = LedgerSession(settings.ledger_ws_url)
    async with session.acquire() as client:
        response = await client.request(AccountInfo(account=address))
    await session.shutdown()
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from xrpl.asyncio.clients import AsyncWebsocketClient

from trade_settlement.domain.exceptions import LedgerUnavailableError
from trade_settlement.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable

logger = get_logger(__name__)


class LedgerSession:
    """Owns one websocket client and counts its active users."""

    def __init__(
        self,
        url: str,
        client_factory: Callable[[str], Any] = AsyncWebsocketClient,
    ) -> None:
        self._url = url
        self._client_factory = client_factory
        self._client: Any = None
        self._ref_count = 0
        self._closed = False
        self._lock = asyncio.Lock()

    @property
    def ref_count(self) -> int:
        return self._ref_count

    @property
    def is_connected(self) -> bool:
        return self._client is not None and self._client.is_open()

    async def connect(self) -> Any:
        """Return an open client, (re)connecting if needed."""
        async with self._lock:
            if self._closed:
                raise LedgerUnavailableError("Ledger session has been shut down")
            if self._client is not None and self._client.is_open():
                return self._client

            if self._client is not None:
                logger.warning("ledger.session.reconnecting", url=self._url)
            client = self._client_factory(self._url)
            try:
                await client.open()
            except (OSError, TimeoutError) as exc:
                logger.error("ledger.session.connect_failed", url=self._url, error=str(exc))
                raise LedgerUnavailableError(f"Cannot connect to ledger at {self._url}: {exc}") from exc

            self._client = client
            logger.info("ledger.session.connected", url=self._url)
            return client

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[Any]:
        """Borrow the connected client for the duration of the block."""
        client = await self.connect()
        self._ref_count += 1
        try:
            yield client
        finally:
            self._ref_count -= 1

    async def shutdown(self) -> None:
        """Close the connection. In-flight users keep their borrowed client."""
        async with self._lock:
            self._closed = True
            if self._client is not None and self._client.is_open():
                await self._client.close()
                logger.info("ledger.session.closed", url=self._url, active_users=self._ref_count)
            self._client = None
