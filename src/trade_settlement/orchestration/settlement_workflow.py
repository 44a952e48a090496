"""Settlement Workflow: drives a deal from participant KYC to final release.

The workflow runs these steps in order:

    verify parties -> create deal -> fund -> [verify milestone] -> release (per milestone)

Milestone attestation runs only when the deal has a facilitator. Release
stops after ``release_count`` milestones when given, which leaves the deal
``active`` for a caller to dispute or finish later.

Usage:
    from trade_settlement.orchestration.settlement_workflow import run_settlement_workflow

    state = await run_settlement_workflow(
        session=db_session,
        gateway=SimulatedLedgerGateway(),
        request=CreateDealRequest(...),
        issuer_address=facilitator_address,
    )
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, TypedDict

from trade_settlement.domain.exceptions import SettlementError
from trade_settlement.logging_config import clear_deal_context, get_logger
from trade_settlement.services.deal_service import DealService
from trade_settlement.services.verification_service import VerificationService

if TYPE_CHECKING:
    from collections.abc import Callable

    from sqlalchemy.ext.asyncio import AsyncSession

    from trade_settlement.config import Settings
    from trade_settlement.ledger.protocol import LedgerGateway
    from trade_settlement.ledger.sequencer import AccountSequencer
    from trade_settlement.schemas.deal import CreateDealRequest

logger = get_logger(__name__)


class SettlementWorkflowState(TypedDict, total=False):
    """Outcome of one workflow run."""

    deal_id: str
    deal_reference: str
    compliance_status: str
    funded: bool
    released: list[int]
    final_status: str
    escrow_balance: str
    supplier_balance: str
    transaction_hashes: list[str]
    error: str
    error_code: str


async def run_settlement_workflow(
    session: AsyncSession,
    gateway: LedgerGateway,
    request: CreateDealRequest,
    issuer_address: str | None = None,
    release_count: int | None = None,
    sequencer: AccountSequencer | None = None,
    settings: Settings | None = None,
    now: Callable[[], float] = time.time,
) -> SettlementWorkflowState:
    """Run the settlement workflow for a new deal.

    Args:
        session: AsyncSession for database access.
        gateway: Ledger gateway used for every ledger step.
        request: The deal to create.
        issuer_address: Credential issuer for buyer and supplier KYC; skipped when None.
        release_count: Number of milestones to release; all when None.

    Returns:
        SettlementWorkflowState with the final status. Domain errors are
        recorded in ``error``/``error_code`` instead of being raised.
    """
    deals = DealService(session, gateway, sequencer=sequencer, settings=settings, now=now)
    verifier = VerificationService(
        session, gateway, sequencer=sequencer, settings=settings, now=now
    )

    state: SettlementWorkflowState = {
        "funded": False,
        "released": [],
        "final_status": "",
        "error": "",
        "error_code": "",
    }

    try:
        # --- Step 1: KYC ---
        if issuer_address is not None:
            logger.info("workflow.verify_parties", issuer=issuer_address)
            await verifier.verify_participant(issuer_address, request.buyer_address)
            await verifier.verify_participant(issuer_address, request.supplier_address)

        # --- Step 2: Create ---
        deal = await deals.create_deal(request)
        state["deal_id"] = str(deal.id)
        state["deal_reference"] = deal.deal_reference
        state["compliance_status"] = deal.compliance_status

        # --- Step 3: Fund ---
        logger.info("workflow.fund")
        deal = await deals.fund_deal(deal.id)
        state["funded"] = True

        # --- Step 4: Verify and release, in order ---
        limit = len(deal.milestones) if release_count is None else release_count
        for milestone in list(deal.milestones)[:limit]:
            if deal.facilitator is not None:
                deal = await deals.verify_milestone(
                    deal.id, milestone.index, deal.facilitator.ledger_address
                )
            deal = await deals.release_milestone(deal.id, milestone.index)
            state["released"].append(milestone.index)

        state["final_status"] = deal.status
        state["escrow_balance"] = str(deal.escrow_balance)
        state["supplier_balance"] = str(deal.supplier_balance)
        state["transaction_hashes"] = list(deal.transaction_hashes)
        logger.info(
            "workflow.completed",
            final_status=deal.status,
            released=state["released"],
        )

    except SettlementError as exc:
        logger.exception("workflow.error", error_code=exc.code)
        state["error"] = exc.message
        state["error_code"] = exc.code
        state["final_status"] = "ERROR"

    finally:
        clear_deal_context()

    return state
