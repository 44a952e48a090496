"""Shared test fixtures for the Trade Settlement test suite.

Provides:
    - An in-memory SQLite database per test (aiosqlite, StaticPool)
    - A simulated ledger sharing a controllable clock with the services
    - Factory helpers for onboarding participants and creating deals
    - Async test support via pytest-asyncio
"""

from __future__ import annotations

import time
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from trade_settlement.config import Settings
from trade_settlement.infrastructure.database.engine import make_session_factory
from trade_settlement.infrastructure.database.orm_models import Base
from trade_settlement.ledger.sequencer import AccountSequencer
from trade_settlement.ledger.simulated import SimulatedLedgerGateway
from trade_settlement.schemas.deal import CreateDealRequest, MilestoneSpec
from trade_settlement.services.deal_service import DealService
from trade_settlement.services.verification_service import VerificationService
from trade_settlement.services.wallet_service import WalletService

TOKEN_ISSUER = "rQhWct2fv4Vc4KRjRgMrxa8xPN9Zx9iLKV"


class FakeClock:
    """Wall clock that tests move forward explicitly."""

    def __init__(self, start: float | None = None) -> None:
        self.now = start if start is not None else time.time()

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float = 0, days: float = 0) -> None:
        self.now += seconds + days * 86400


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def make_settings(**overrides) -> Settings:  # noqa: ANN003
    values = {
        "app_env": "development",
        "database_url": "sqlite+aiosqlite:///:memory:",
        "settlement_asset": "XRP",
        "settlement_token_issuer": TOKEN_ISSUER,
        "escrow_default_cancel_after_days": 30,
        "escrow_default_finish_after_days": 0,
        "identity_base_url": "https://settlement.test",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def settings_factory():  # noqa: ANN201
    return make_settings


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def engine():  # noqa: ANN201
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session(engine):  # noqa: ANN001, ANN201
    factory = make_session_factory(engine)
    async with factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------


@pytest.fixture
def ledger(clock: FakeClock, settings: Settings) -> SimulatedLedgerGateway:
    return SimulatedLedgerGateway(now=clock, epoch_offset=settings.ledger_epoch_offset)


@pytest.fixture
def sequencer() -> AccountSequencer:
    return AccountSequencer()


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------


@pytest.fixture
def wallet_service(session, ledger, sequencer, settings) -> WalletService:  # noqa: ANN001
    return WalletService(session, ledger, sequencer=sequencer, settings=settings)


@pytest.fixture
def verification_service(session, ledger, sequencer, settings, clock) -> VerificationService:  # noqa: ANN001
    return VerificationService(session, ledger, sequencer=sequencer, settings=settings, now=clock)


@pytest.fixture
def deal_service(session, ledger, sequencer, settings, clock) -> DealService:  # noqa: ANN001
    return DealService(session, ledger, sequencer=sequencer, settings=settings, now=clock)


@pytest_asyncio.fixture
async def parties(wallet_service: WalletService) -> dict[str, str]:
    """Buyer, supplier and facilitator with funded wallets, not yet verified."""
    buyer = await wallet_service.create_participant_wallet("Acme Imports", "buyer")
    supplier = await wallet_service.create_participant_wallet("Highland Coffee", "supplier")
    facilitator = await wallet_service.create_participant_wallet("Port Inspection", "facilitator")
    return {
        "buyer": buyer.participant.ledger_address,
        "supplier": supplier.participant.ledger_address,
        "facilitator": facilitator.participant.ledger_address,
    }


def build_deal_request(
    parties: dict[str, str],
    percentages: list[int] | None = None,
    amount: str = "500",
    with_facilitator: bool = False,
) -> CreateDealRequest:
    percentages = percentages or [30, 40, 30]
    return CreateDealRequest(
        name="Green coffee shipment",
        amount=Decimal(amount),
        buyer_address=parties["buyer"],
        supplier_address=parties["supplier"],
        facilitator_address=parties["facilitator"] if with_facilitator else None,
        milestones=[
            MilestoneSpec(name=f"Milestone {i}", percentage=p) for i, p in enumerate(percentages)
        ],
    )


@pytest.fixture
def deal_request():  # noqa: ANN201
    """Factory for CreateDealRequest; milestones default to [30, 40, 30] of 500."""
    return build_deal_request
