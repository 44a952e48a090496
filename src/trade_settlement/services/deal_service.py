"""Deal Service: the deal lifecycle exposed to callers.

This is the application layer that coordinates between:
    - Domain state machines (transition guards)
    - Escrow orchestrator (ledger-side funding, release and cancellation)
    - Repositories (data access)
    - Transaction log (audit trail)

Every operation either applies fully or raises a typed SettlementError
before changing anything. Callers must not run two mutating operations on
the same deal concurrently.
"""

from __future__ import annotations

import time
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from trade_settlement.config import get_settings
from trade_settlement.domain.balances import split_amount, validate_percentages
from trade_settlement.domain.conditions import generate_condition
from trade_settlement.domain.enums import (
    DealStatus,
    EscrowRecordStatus,
    MilestoneStatus,
    TransactionLogType,
    VerificationStatus,
)
from trade_settlement.domain.exceptions import (
    DealDisputedError,
    DealNotFoundError,
    InvalidStateTransitionError,
    MilestoneNotFoundError,
    MilestoneNotPendingError,
    ParticipantNotFoundError,
    UnauthorizedVerifierError,
    ValidationError,
)
from trade_settlement.domain.state_machine import (
    DealStateMachine,
    MilestoneStateMachine,
    can_fire,
    fire_transition,
)
from trade_settlement.infrastructure.database.orm_models import Deal, EscrowRecord, Milestone
from trade_settlement.infrastructure.database.repositories import (
    DealCounterRepository,
    DealRepository,
    ParticipantRepository,
    TransactionLogRepository,
)
from trade_settlement.logging_config import bind_deal_context, get_logger
from trade_settlement.services.escrow_orchestrator import EscrowOrchestrator
from trade_settlement.services.verification_service import compliance_status_for

if TYPE_CHECKING:
    import uuid
    from collections.abc import Callable

    from sqlalchemy.ext.asyncio import AsyncSession

    from trade_settlement.config import Settings
    from trade_settlement.infrastructure.database.orm_models import (
        Participant,
        TransactionLogEntry,
    )
    from trade_settlement.ledger.protocol import LedgerGateway
    from trade_settlement.ledger.sequencer import AccountSequencer
    from trade_settlement.schemas.deal import CreateDealRequest, EscrowDiscrepancy

logger = get_logger(__name__)


class DealService:
    """Manages the deal lifecycle from draft to completion."""

    def __init__(
        self,
        session: AsyncSession,
        gateway: LedgerGateway,
        sequencer: AccountSequencer | None = None,
        settings: Settings | None = None,
        now: Callable[[], float] = time.time,
    ) -> None:
        self._session = session
        self._settings = settings or get_settings()
        self._now = now
        self._orchestrator = EscrowOrchestrator(
            session, gateway, sequencer=sequencer, settings=self._settings, now=now
        )
        self._deal_repo = DealRepository(session)
        self._counter_repo = DealCounterRepository(session)
        self._participant_repo = ParticipantRepository(session)
        self._log_repo = TransactionLogRepository(session)

    # ------------------------------------------------------------------
    # Deal Creation
    # ------------------------------------------------------------------

    async def create_deal(self, request: CreateDealRequest) -> Deal:
        """Create a deal in draft status with one escrow record per milestone.

        Each escrow record is pre-populated with a fresh condition and its
        encrypted fulfillment; nothing touches the ledger yet.

        Raises:
            ValidationError: If percentages do not total 100 or parties overlap.
            ParticipantNotFoundError: If a referenced participant is not registered.
        """
        percentages = [m.percentage for m in request.milestones]
        validate_percentages(percentages)
        if request.buyer_address == request.supplier_address:
            raise ValidationError("Buyer and supplier must be different participants")
        if request.facilitator_address in (request.buyer_address, request.supplier_address):
            raise ValidationError("Facilitator must differ from buyer and supplier")

        buyer = await self._require_participant(request.buyer_address, "buyer")
        supplier = await self._require_participant(request.supplier_address, "supplier")
        facilitator = None
        if request.facilitator_address is not None:
            facilitator = await self._require_participant(
                request.facilitator_address, "facilitator"
            )

        amount = Decimal(request.amount)
        shares = split_amount(amount, percentages)
        reference = await self._counter_repo.next_deal_reference(
            datetime.fromtimestamp(self._now(), UTC).year
        )

        milestones = []
        for index, (spec, share) in enumerate(zip(request.milestones, shares, strict=True)):
            pair = generate_condition()
            milestone = Milestone(
                index=index,
                name=spec.name,
                description=spec.description,
                percentage=spec.percentage,
                amount=share,
                status=MilestoneStatus.PENDING.value,
            )
            if facilitator is not None:
                milestone.verifier_address = facilitator.ledger_address
                milestone.credential_label = self._settings.milestone_credential_label
                milestone.verification_status = VerificationStatus.PENDING.value
            milestone.escrow = EscrowRecord(
                owner=buyer.ledger_address,
                destination=supplier.ledger_address,
                amount=share,
                condition=pair.condition,
                fulfillment=pair.fulfillment,
                status=EscrowRecordStatus.CREATED.value,
                idempotency_key=f"{reference}:{index}",
            )
            milestones.append(milestone)

        deal = Deal(
            deal_reference=reference,
            name=request.name,
            description=request.description,
            amount=amount,
            currency=request.currency or self._settings.default_currency,
            settlement_asset=request.settlement_asset or self._settings.settlement_asset,
            escrow_balance=Decimal(0),
            supplier_balance=Decimal(0),
            status=DealStatus.DRAFT.value,
            dispute=False,
            buyer=buyer,
            supplier=supplier,
            facilitator=facilitator,
            credential_provider=(
                facilitator.issuer
                if facilitator is not None and facilitator.issuer
                else self._settings.credential_provider
            ),
            transaction_hashes=[],
            milestones=milestones,
        )
        deal.compliance_status = compliance_status_for(deal).value
        deal = await self._deal_repo.create(deal)

        await self._log_repo.record(
            TransactionLogType.DEAL_CREATED,
            deal_id=deal.id,
            amount=amount,
            from_address=buyer.ledger_address,
            to_address=supplier.ledger_address,
            metadata={
                "deal_reference": reference,
                "milestones": len(milestones),
                "facilitator": facilitator.ledger_address if facilitator else None,
            },
        )
        await self._session.commit()

        bind_deal_context(str(deal.id), reference)
        logger.info(
            "deal.created",
            amount=str(amount),
            currency=deal.currency,
            milestones=len(milestones),
        )
        return deal

    # ------------------------------------------------------------------
    # Ledger-backed steps
    # ------------------------------------------------------------------

    async def fund_deal(self, deal_id: uuid.UUID) -> Deal:
        """Lock every milestone's share in its own ledger escrow."""
        deal = await self._get_deal_or_raise(deal_id)
        return await self._orchestrator.fund_deal(deal)

    async def release_milestone(self, deal_id: uuid.UUID, index: int) -> Deal:
        """Release milestone ``index`` to the supplier."""
        deal = await self._get_deal_or_raise(deal_id)
        return await self._orchestrator.release_milestone(deal, index)

    async def cancel_deal(self, deal_id: uuid.UUID, reason: str | None = None) -> Deal:
        """Cancel a draft or funded deal, returning locked escrows to the buyer."""
        deal = await self._get_deal_or_raise(deal_id)
        if not can_fire(DealStateMachine, deal.status, "cancel_deal"):
            raise InvalidStateTransitionError(deal.status, "cancel_deal")

        await self._orchestrator.cancel_escrows(deal)

        old_status = deal.status
        deal.status = fire_transition(DealStateMachine, deal.status, "cancel_deal")
        deal.escrow_balance = Decimal(0)
        deal.supplier_balance = Decimal(0)
        await self._log_repo.record(
            TransactionLogType.DEAL_CANCELLED,
            deal_id=deal.id,
            amount=deal.amount,
            metadata={"old_status": old_status, "reason": reason},
        )
        await self._session.commit()

        logger.info("deal.cancelled", old_status=old_status)
        return deal

    # ------------------------------------------------------------------
    # Verification and disputes
    # ------------------------------------------------------------------

    async def verify_milestone(
        self, deal_id: uuid.UUID, index: int, verifier_address: str
    ) -> Deal:
        """Record the facilitator's attestation that milestone ``index`` is complete.

        Verifying an already verified milestone is a no-op.

        Raises:
            MilestoneNotFoundError, DealDisputedError, InvalidStateTransitionError,
            MilestoneNotPendingError, UnauthorizedVerifierError.
        """
        deal = await self._get_deal_or_raise(deal_id)
        milestone = deal.milestone_at(index)
        if milestone is None:
            raise MilestoneNotFoundError(str(deal_id), index)
        if deal.dispute or deal.status == DealStatus.DISPUTED:
            raise DealDisputedError(str(deal_id))
        if not can_fire(DealStateMachine, deal.status, "milestone_verified"):
            raise InvalidStateTransitionError(deal.status, "milestone_verified")
        if milestone.status != MilestoneStatus.PENDING:
            raise MilestoneNotPendingError(index, milestone.status)
        if deal.facilitator is None or deal.facilitator.ledger_address != verifier_address:
            raise UnauthorizedVerifierError(verifier_address)

        if milestone.verification_status == VerificationStatus.VERIFIED:
            logger.info("deal.milestone_already_verified", milestone_index=index)
            return deal

        milestone.verification_status = VerificationStatus.VERIFIED.value
        milestone.verified_at = datetime.fromtimestamp(self._now(), UTC)
        deal.status = fire_transition(DealStateMachine, deal.status, "milestone_verified")

        await self._log_repo.record(
            TransactionLogType.MILESTONE_VERIFIED,
            deal_id=deal.id,
            participant_id=deal.facilitator.id,
            amount=milestone.amount,
            from_address=verifier_address,
            metadata={
                "milestone_index": index,
                "milestone_name": milestone.name,
                "credential_label": milestone.credential_label,
            },
        )
        await self._session.commit()

        logger.info("deal.milestone_verified", milestone_index=index, verifier=verifier_address)
        return deal

    async def dispute_deal(self, deal_id: uuid.UUID, reason: str) -> Deal:
        """Freeze every pending milestone. Released milestones are untouched.

        Raises:
            ValidationError: If no reason is given.
            InvalidStateTransitionError: If the deal is already terminal.
        """
        deal = await self._get_deal_or_raise(deal_id)
        if not reason or not reason.strip():
            raise ValidationError("A dispute reason is required")
        old_status = deal.status
        new_status = fire_transition(DealStateMachine, deal.status, "raise_dispute")

        frozen = []
        for milestone in deal.milestones:
            if milestone.status != MilestoneStatus.PENDING:
                continue
            milestone.status = fire_transition(
                MilestoneStateMachine, milestone.status, "dispute_milestone"
            )
            if milestone.verification_status == VerificationStatus.PENDING:
                milestone.verification_status = VerificationStatus.DISPUTED.value
            frozen.append(milestone.index)

        deal.status = new_status
        deal.dispute = True
        deal.dispute_reason = reason.strip()

        await self._log_repo.record(
            TransactionLogType.DEAL_DISPUTED,
            deal_id=deal.id,
            metadata={
                "old_status": old_status,
                "reason": deal.dispute_reason,
                "disputed_milestones": frozen,
            },
        )
        await self._session.commit()

        logger.warning("deal.disputed", old_status=old_status, disputed_milestones=frozen)
        return deal

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_deal(self, deal_id: uuid.UUID) -> Deal:
        return await self._get_deal_or_raise(deal_id)

    async def get_deal_by_reference(self, reference: str) -> Deal:
        deal = await self._deal_repo.get_by_reference(reference)
        if deal is None:
            raise DealNotFoundError(reference)
        return deal

    async def list_deals(self, status: DealStatus | None = None) -> list[Deal]:
        return await self._deal_repo.list_all(status=status)

    async def list_deals_by_wallet(self, address: str) -> list[Deal]:
        """Every deal in which ``address`` is buyer, supplier or facilitator."""
        participant = await self._participant_repo.get_by_address(address)
        if participant is None:
            raise ParticipantNotFoundError(address)
        return await self._deal_repo.list_by_participant(participant.id)

    async def get_escrow_status(self, owner: str, sequence: int) -> dict[str, Any] | None:
        return await self._orchestrator.get_escrow_status(owner, sequence)

    async def reconcile_deal(self, deal_id: uuid.UUID) -> list[EscrowDiscrepancy]:
        deal = await self._get_deal_or_raise(deal_id)
        return await self._orchestrator.reconcile_deal(deal)

    async def get_deal_history(self, deal_id: uuid.UUID) -> list[TransactionLogEntry]:
        """Full audit trail for a deal, oldest first."""
        await self._get_deal_or_raise(deal_id)
        return await self._log_repo.get_by_deal(deal_id)

    async def get_wallet_history(self, address: str) -> list[TransactionLogEntry]:
        participant = await self._participant_repo.get_by_address(address)
        if participant is None:
            raise ParticipantNotFoundError(address)
        return await self._log_repo.get_by_participant(participant.id)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _get_deal_or_raise(self, deal_id: uuid.UUID) -> Deal:
        deal = await self._deal_repo.get_by_id(deal_id)
        if deal is None:
            raise DealNotFoundError(str(deal_id))
        bind_deal_context(str(deal.id), deal.deal_reference)
        return deal

    async def _require_participant(self, address: str, role: str) -> Participant:
        participant = await self._participant_repo.get_by_address(address)
        if participant is None:
            raise ParticipantNotFoundError(address, role)
        return participant
