"""Tests for the reference-counted ledger session."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from trade_settlement.domain.exceptions import LedgerUnavailableError
from trade_settlement.ledger.session import LedgerSession

URL = "wss://ledger.test:51233"


def _client(open_: bool = True) -> MagicMock:
    client = MagicMock()
    client.open = AsyncMock()
    client.close = AsyncMock()
    client.is_open = MagicMock(return_value=open_)
    return client


class TestLedgerSession:
    @pytest.mark.asyncio
    async def test_connects_lazily(self) -> None:
        client = _client()
        factory = MagicMock(return_value=client)
        session = LedgerSession(URL, client_factory=factory)

        factory.assert_not_called()
        async with session.acquire() as borrowed:
            assert borrowed is client
            assert session.ref_count == 1
        assert session.ref_count == 0
        factory.assert_called_once_with(URL)
        client.open.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_reuses_open_client(self) -> None:
        client = _client()
        factory = MagicMock(return_value=client)
        session = LedgerSession(URL, client_factory=factory)

        async with session.acquire():
            async with session.acquire():
                assert session.ref_count == 2
        assert factory.call_count == 1

    @pytest.mark.asyncio
    async def test_reconnects_dropped_socket(self) -> None:
        first, second = _client(), _client()
        factory = MagicMock(side_effect=[first, second])
        session = LedgerSession(URL, client_factory=factory)

        async with session.acquire():
            pass
        first.is_open.return_value = False

        async with session.acquire() as borrowed:
            assert borrowed is second
        assert session.is_connected

    @pytest.mark.asyncio
    async def test_connect_failure(self) -> None:
        client = _client()
        client.open.side_effect = OSError("connection refused")
        session = LedgerSession(URL, client_factory=MagicMock(return_value=client))

        with pytest.raises(LedgerUnavailableError, match="Cannot connect"):
            async with session.acquire():
                pass
        assert not session.is_connected

    @pytest.mark.asyncio
    async def test_shutdown_fails_fast_afterwards(self) -> None:
        client = _client()
        session = LedgerSession(URL, client_factory=MagicMock(return_value=client))
        async with session.acquire():
            pass

        await session.shutdown()
        client.close.assert_awaited_once()
        assert not session.is_connected

        with pytest.raises(LedgerUnavailableError, match="shut down"):
            async with session.acquire():
                pass
