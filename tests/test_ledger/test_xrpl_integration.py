"""Live round trip against the XRPL testnet.

Needs network access and a working faucet, so it only runs when
RUN_LEDGER_INTEGRATION=1 is set:

    RUN_LEDGER_INTEGRATION=1 pytest -m integration
"""

from __future__ import annotations

import os
import time
from decimal import Decimal

import pytest

from trade_settlement.config import get_settings
from trade_settlement.domain.conditions import generate_condition
from trade_settlement.domain.ledger_time import compute_deadlines
from trade_settlement.ledger.intents import (
    SettlementAsset,
    escrow_create_intent,
    escrow_finish_intent,
)
from trade_settlement.ledger.session import LedgerSession
from trade_settlement.ledger.xrpl_gateway import XrplLedgerGateway

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(
        os.environ.get("RUN_LEDGER_INTEGRATION") != "1",
        reason="set RUN_LEDGER_INTEGRATION=1 to run against the testnet",
    ),
]


class TestTestnetEscrow:
    @pytest.mark.asyncio
    async def test_create_and_finish_escrow(self) -> None:
        settings = get_settings()
        session = LedgerSession(settings.ledger_ws_url)
        gateway = XrplLedgerGateway(session)
        try:
            owner = (await gateway.provision_wallet()).key
            destination = (await gateway.provision_wallet()).key
            pair = generate_condition()
            deadlines = compute_deadlines(time.time(), cancel_after_days=1)

            created = await gateway.submit_and_confirm(
                escrow_create_intent(
                    owner=owner.address,
                    destination=destination.address,
                    amount=Decimal("1"),
                    condition=pair.condition,
                    deadlines=deadlines,
                    asset=SettlementAsset(code="XRP"),
                    idempotency_key="INTEGRATION:0",
                ),
                owner,
            )
            assert created.success, created.result_code
            node = await gateway.get_settlement_object(owner.address, created.assigned_sequence)
            assert node is not None

            finished = await gateway.submit_and_confirm(
                escrow_finish_intent(
                    destination.address,
                    owner.address,
                    created.assigned_sequence,
                    pair.condition,
                    pair.fulfillment,
                ),
                destination,
            )
            assert finished.success, finished.result_code
            assert await gateway.get_settlement_object(
                owner.address, created.assigned_sequence
            ) is None
        finally:
            await session.shutdown()
