#!/usr/bin/env python3
"""Trade Settlement: End-to-End Simulation.

Runs four scenarios with a buyer, a supplier and an inspecting facilitator:

    Scenario 1: Happy Path
        - Facilitator issues KYC credentials to buyer and supplier
        - Deal of 500 USD in milestones [30, 40, 30] is funded
        - Facilitator verifies and buyer releases each milestone -> completed

    Scenario 2: Dispute After Partial Settlement
        - First milestone released, then the buyer disputes
        - Released milestone stands, the others are frozen -> disputed

    Scenario 3: Interrupted Funding
        - Ledger times out on the second EscrowCreate (but applies it)
        - Re-running fund adopts the escrow instead of creating it twice

    Scenario 4: Expired Deal
        - Funded deal is never settled; after CancelAfter the escrows go back
          to the buyer -> cancelled

Usage:
    # Option A: SQLite in-memory with the simulated ledger (instant, no network):
    uv run python simulation.py --sqlite

    # Option B: PostgreSQL (DATABASE_URL) with the simulated ledger:
    uv run python simulation.py

    # Option C: Scenario 1 against the XRPL testnet (faucet wallets):
    uv run python simulation.py --sqlite --live --scenario 1

    # Run a specific scenario:
    uv run python simulation.py --sqlite --scenario 3
"""

from __future__ import annotations

import argparse
import asyncio
import time
from decimal import Decimal
from typing import Any

# ---------------------------------------------------------------------------
# Configure structured logging BEFORE importing app modules
# ---------------------------------------------------------------------------
from trade_settlement.logging_config import get_logger, setup_logging

setup_logging(log_level="INFO", json_logs=False)
logger = get_logger("simulation")

from trade_settlement.config import get_settings  # noqa: E402
from trade_settlement.domain.exceptions import LedgerUnavailableError  # noqa: E402
from trade_settlement.ledger import (  # noqa: E402
    LedgerSession,
    SimulatedLedgerGateway,
    XrplLedgerGateway,
)
from trade_settlement.schemas.deal import CreateDealRequest, MilestoneSpec  # noqa: E402
from trade_settlement.services import DealService, VerificationService, WalletService  # noqa: E402

# Module-level state
_sqlite_engine = None
_session_factory = None


class SimulationClock:
    """Wall clock that scenarios can move forward together with the simulated ledger."""

    def __init__(self) -> None:
        self.offset = 0.0

    def __call__(self) -> float:
        return time.time() + self.offset


# ---------------------------------------------------------------------------
# Database lifecycle helpers
# ---------------------------------------------------------------------------
async def init_database(use_sqlite: bool = False) -> None:
    """Initialize database engine and create tables."""
    global _sqlite_engine, _session_factory

    from trade_settlement.infrastructure.database.engine import make_session_factory
    from trade_settlement.infrastructure.database.orm_models import Base

    if use_sqlite:
        from sqlalchemy.ext.asyncio import create_async_engine

        _sqlite_engine = create_async_engine("sqlite+aiosqlite:///:memory:", echo=False)
        _session_factory = make_session_factory(_sqlite_engine)
        async with _sqlite_engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("database.sqlite_initialized")
    else:
        from trade_settlement.infrastructure.database.engine import get_session_factory, init_db

        await init_db()
        _session_factory = get_session_factory()


async def shutdown_database() -> None:
    """Close database connections."""
    global _sqlite_engine, _session_factory

    if _sqlite_engine is not None:
        await _sqlite_engine.dispose()
        _sqlite_engine = None
    else:
        from trade_settlement.infrastructure.database.engine import close_db

        await close_db()
    _session_factory = None


# ---------------------------------------------------------------------------
# Print helpers
# ---------------------------------------------------------------------------
def banner(text: str) -> None:
    width = 70
    print("\n" + "=" * width)
    print(f"  {text}")
    print("=" * width + "\n")


def section(text: str) -> None:
    print(f"\n--- {text} ---\n")


def print_deal(deal: Any) -> None:
    print(f"  {deal.deal_reference}: status={deal.status} compliance={deal.compliance_status}")
    print(f"  Escrow balance: {deal.escrow_balance}  Supplier balance: {deal.supplier_balance}")
    for m in deal.milestones:
        escrow = m.escrow
        seq = escrow.sequence if escrow is not None else None
        print(f"    [{m.index}] {m.name:<20} {m.percentage:>3}% {m.amount:>12} {m.status:<9} seq={seq}")


async def print_audit_trail(deals: DealService, deal_id: Any) -> None:
    print("\n  Audit Trail:")
    for i, entry in enumerate(await deals.get_deal_history(deal_id), 1):
        tx = (entry.hash or "-")[:16]
        print(f"    {i}. [{entry.type}] amount={entry.amount} tx={tx}")
    print()


# ---------------------------------------------------------------------------
# Shared setup
# ---------------------------------------------------------------------------
async def onboard_parties(session: Any, gateway: Any, clock: SimulationClock) -> dict[str, str]:
    """Provision buyer, supplier and facilitator wallets and KYC the trading parties."""
    wallets = WalletService(session, gateway)
    buyer = await wallets.create_participant_wallet("Acme Imports", "buyer")
    supplier = await wallets.create_participant_wallet("Highland Coffee Co", "supplier")
    inspector = await wallets.create_participant_wallet("Port Inspection Ltd", "facilitator")

    verifier = VerificationService(session, gateway, now=clock)
    issuer = inspector.participant.ledger_address
    await verifier.verify_participant(issuer, buyer.participant.ledger_address)
    await verifier.verify_participant(issuer, supplier.participant.ledger_address)

    return {
        "buyer": buyer.participant.ledger_address,
        "supplier": supplier.participant.ledger_address,
        "facilitator": issuer,
    }


def coffee_deal(parties: dict[str, str], facilitator: bool = True) -> CreateDealRequest:
    return CreateDealRequest(
        name="Green coffee, 20 bags",
        description="FOB Mombasa, inspected at port of loading",
        amount=Decimal("500"),
        buyer_address=parties["buyer"],
        supplier_address=parties["supplier"],
        facilitator_address=parties["facilitator"] if facilitator else None,
        milestones=[
            MilestoneSpec(name="Contract signed", percentage=30),
            MilestoneSpec(name="Goods shipped", percentage=40),
            MilestoneSpec(name="Goods received", percentage=30),
        ],
    )


# ===========================================================================
# Scenario 1: Happy Path
# ===========================================================================
async def scenario_1_happy_path(gateway: Any, clock: SimulationClock) -> None:
    banner("SCENARIO 1: Happy Path, Three Milestones")

    async with _session_factory() as session:
        section("Step 1: Onboard parties")
        parties = await onboard_parties(session, gateway, clock)
        deals = DealService(session, gateway, now=clock)

        section("Step 2: Create and fund the deal")
        deal = await deals.create_deal(coffee_deal(parties))
        deal = await deals.fund_deal(deal.id)
        print_deal(deal)

        section("Step 3: Verify and release each milestone")
        for milestone in deal.milestones:
            await deals.verify_milestone(deal.id, milestone.index, parties["facilitator"])
            deal = await deals.release_milestone(deal.id, milestone.index)
        print_deal(deal)
        assert deal.status == "completed", f"Expected completed, got {deal.status}"

        findings = await deals.reconcile_deal(deal.id)
        print(f"  Reconciliation findings: {len(findings)}")
        await print_audit_trail(deals, deal.id)


# ===========================================================================
# Scenario 2: Dispute After Partial Settlement
# ===========================================================================
async def scenario_2_dispute(gateway: Any, clock: SimulationClock) -> None:
    banner("SCENARIO 2: Dispute After Partial Settlement")

    async with _session_factory() as session:
        parties = await onboard_parties(session, gateway, clock)
        deals = DealService(session, gateway, now=clock)

        deal = await deals.create_deal(coffee_deal(parties, facilitator=False))
        deal = await deals.fund_deal(deal.id)

        section("Step 1: Release the first milestone")
        deal = await deals.release_milestone(deal.id, 0)

        section("Step 2: Buyer disputes the shipment")
        deal = await deals.dispute_deal(deal.id, "Container arrived with water damage")
        print_deal(deal)
        assert [m.status for m in deal.milestones] == ["Released", "Disputed", "Disputed"]
        await print_audit_trail(deals, deal.id)


# ===========================================================================
# Scenario 3: Interrupted Funding
# ===========================================================================
async def scenario_3_interrupted_funding(
    gateway: SimulatedLedgerGateway, clock: SimulationClock
) -> None:
    banner("SCENARIO 3: Interrupted Funding, Timeout Then Resume")

    async with _session_factory() as session:
        parties = await onboard_parties(session, gateway, clock)
        deals = DealService(session, gateway, now=clock)
        deal = await deals.create_deal(coffee_deal(parties, facilitator=False))

        section("Step 1: Second EscrowCreate times out after being applied")
        escrows_before = gateway.escrow_count
        gateway.timeout_next(apply=True, after=1)
        try:
            await deals.fund_deal(deal.id)
        except LedgerUnavailableError as exc:
            print(f"  Funding interrupted: {exc.message}")
        print_deal(await deals.get_deal(deal.id))

        section("Step 2: Re-run funding")
        deal = await deals.fund_deal(deal.id)
        print_deal(deal)
        created = gateway.escrow_count - escrows_before
        print(f"  Escrows on ledger for this deal: {created} (expected 3)")
        assert created == 3


# ===========================================================================
# Scenario 4: Expired Deal
# ===========================================================================
async def scenario_4_expired_deal(gateway: SimulatedLedgerGateway, clock: SimulationClock) -> None:
    banner("SCENARIO 4: Expired Deal, Escrows Returned")

    async with _session_factory() as session:
        parties = await onboard_parties(session, gateway, clock)
        deals = DealService(session, gateway, now=clock)
        deal = await deals.create_deal(coffee_deal(parties, facilitator=False))
        deal = await deals.fund_deal(deal.id)
        before = gateway.balance_xrp(parties["buyer"])

        section("Step 1: Let the escrows expire")
        days = get_settings().escrow_default_cancel_after_days + 1
        clock.offset += days * 86400

        section("Step 2: Cancel the deal")
        deal = await deals.cancel_deal(deal.id, reason="Shipment window missed")
        print_deal(deal)
        print(f"  Buyer XRP before/after: {before} / {gateway.balance_xrp(parties['buyer'])}")
        await print_audit_trail(deals, deal.id)


# ===========================================================================
# Main
# ===========================================================================
async def run(use_sqlite: bool = False, live: bool = False, scenario: int = 0) -> None:
    """Run the selected scenarios. A live ledger only runs the happy path."""
    scenarios = {
        1: scenario_1_happy_path,
        2: scenario_2_dispute,
        3: scenario_3_interrupted_funding,
        4: scenario_4_expired_deal,
    }
    if scenario and scenario not in scenarios:
        print(f"Unknown scenario {scenario}. Available: 1, 2, 3, 4")
        return
    if live and scenario not in (0, 1):
        print("Only scenario 1 runs against a live ledger")
        return
    selected = [scenarios[scenario]] if scenario else list(scenarios.values())
    if live:
        selected = [scenario_1_happy_path]

    await init_database(use_sqlite=use_sqlite)
    clock = SimulationClock()
    ledger_session = None
    if live:
        ledger_session = LedgerSession(get_settings().ledger_ws_url)
        gateway: Any = XrplLedgerGateway(ledger_session)
    else:
        gateway = SimulatedLedgerGateway(now=clock)

    try:
        print("\n  TRADE SETTLEMENT: SIMULATION")
        print(f"  Database: {'SQLite (in-memory)' if use_sqlite else 'PostgreSQL'}")
        print(f"  Ledger: {'XRPL ' + get_settings().ledger_network if live else 'simulated'}")
        for run_scenario in selected:
            await run_scenario(gateway, clock)
        print("\n" + "=" * 70)
        print("  ALL SCENARIOS COMPLETED SUCCESSFULLY")
        print("=" * 70 + "\n")
    finally:
        if ledger_session is not None:
            await ledger_session.shutdown()
        await shutdown_database()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Trade Settlement Simulation")
    parser.add_argument(
        "--scenario",
        type=int,
        default=0,
        help="Run a specific scenario (1-4). Default: run all.",
    )
    parser.add_argument(
        "--sqlite",
        action="store_true",
        help="Use SQLite in-memory instead of PostgreSQL (no Docker needed).",
    )
    parser.add_argument(
        "--live",
        action="store_true",
        help="Use the XRPL network from LEDGER_WS_URL instead of the simulated ledger.",
    )
    args = parser.parse_args()
    asyncio.run(run(use_sqlite=args.sqlite, live=args.live, scenario=args.scenario))
