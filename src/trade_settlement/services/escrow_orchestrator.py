"""Escrow Orchestrator: per-milestone escrow lifecycle on the ledger.

Coordinates between:
    - Ledger gateway (EscrowCreate / EscrowFinish / EscrowCancel, object queries)
    - Domain state machines (deal, milestone and escrow-record guards)
    - Repositories (escrow records, transaction log)

Every confirmed ledger step is committed immediately. A funding run that
fails part-way leaves the escrows it created recorded, and re-running it
skips them. Before each EscrowCreate the funding account's next sequence is
pinned on the record and committed, so a creation whose outcome is unknown
(timeout) is recovered on the next run by looking the object up at that
sequence instead of creating a second escrow. Releases work the same way:
the supplier's sequence is pinned before each EscrowFinish, and a retry
after a timeout adopts the finish found at that sequence in the supplier's
history.

Submissions from one account are serialized through the AccountSequencer.
Serializing operations on the same deal is the caller's responsibility.
"""

from __future__ import annotations

import time
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from trade_settlement.config import get_settings
from trade_settlement.domain.balances import check_balances, derive_balances, quantize_amount
from trade_settlement.domain.enums import (
    DealStatus,
    DiscrepancyKind,
    EscrowRecordStatus,
    LedgerTransactionType,
    MilestoneStatus,
    TransactionLogType,
    VerificationStatus,
)
from trade_settlement.domain.exceptions import (
    AlreadyReleasedError,
    DealDisputedError,
    EscrowNotOnLedgerError,
    InvalidStateTransitionError,
    KeyMaterialMissingError,
    LedgerRejectedError,
    LedgerUnavailableError,
    MilestoneNotFoundError,
    MilestoneNotPendingError,
    MilestoneNotVerifiedError,
    OrderViolationError,
    PreconditionError,
)
from trade_settlement.domain.ledger_time import compute_deadlines, ledger_now
from trade_settlement.domain.state_machine import (
    DealStateMachine,
    EscrowRecordStateMachine,
    MilestoneStateMachine,
    can_fire,
    fire_transition,
)
from trade_settlement.infrastructure.database.repositories import (
    ParticipantRepository,
    TransactionLogRepository,
)
from trade_settlement.ledger.intents import (
    SettlementAsset,
    escrow_cancel_intent,
    escrow_create_intent,
    escrow_finish_intent,
    settlement_amount,
)
from trade_settlement.ledger.sequencer import AccountSequencer
from trade_settlement.logging_config import get_logger
from trade_settlement.schemas.deal import EscrowDiscrepancy

if TYPE_CHECKING:
    from collections.abc import Callable
    from decimal import Decimal

    from sqlalchemy.ext.asyncio import AsyncSession

    from trade_settlement.config import Settings
    from trade_settlement.infrastructure.database.orm_models import (
        Deal,
        EscrowRecord,
        Milestone,
    )
    from trade_settlement.ledger.protocol import LedgerGateway, LedgerTransaction, WalletKey

logger = get_logger(__name__)


def ledger_amount_repr(amount: Any) -> str:
    """Normalize an XRPL Amount field: drops for XRP, the value for tokens."""
    if isinstance(amount, dict):
        return str(amount.get("value", ""))
    return str(amount)


class EscrowOrchestrator:
    """Creates, finishes, cancels and reconciles the escrows of a deal."""

    def __init__(
        self,
        session: AsyncSession,
        gateway: LedgerGateway,
        sequencer: AccountSequencer | None = None,
        settings: Settings | None = None,
        now: Callable[[], float] = time.time,
    ) -> None:
        self._session = session
        self._gateway = gateway
        self._sequencer = sequencer or AccountSequencer.shared()
        self._settings = settings or get_settings()
        self._now = now
        self._participant_repo = ParticipantRepository(session)
        self._log_repo = TransactionLogRepository(session)

    # ------------------------------------------------------------------
    # Funding
    # ------------------------------------------------------------------

    async def fund_deal(self, deal: Deal) -> Deal:
        """Create one escrow per milestone, in index order, then mark the deal funded.

        Raises:
            PreconditionError: If the deal is not in draft status.
            KeyMaterialMissingError: If the buyer's signing material is absent.
            LedgerRejectedError: If an EscrowCreate validates with a failure code.
            LedgerUnavailableError: If an EscrowCreate outcome is unknown.
        """
        if deal.status != DealStatus.DRAFT:
            raise PreconditionError(
                f"Cannot fund deal in {deal.status} status", code="DEAL_NOT_DRAFT"
            )
        buyer_key = await self._require_key(deal.buyer.ledger_address)
        asset = SettlementAsset.from_settings(self._settings, deal.settlement_asset)

        account = await self._gateway.get_account_state(buyer_key.address)
        logger.info(
            "escrow.funding_started",
            buyer=buyer_key.address,
            balance_drops=account.balance,
            milestones=len(deal.milestones),
        )

        async with self._sequencer.serialize(buyer_key.address):
            for milestone in deal.milestones:
                escrow = self._escrow_of(milestone)
                if escrow.status == EscrowRecordStatus.CREATED and escrow.create_transaction_hash:
                    logger.info(
                        "escrow.skip_already_created",
                        milestone_index=milestone.index,
                        sequence=escrow.sequence,
                    )
                    continue
                await self._create_escrow(deal, milestone, buyer_key, asset)

        deal.status = fire_transition(DealStateMachine, deal.status, "fund_confirmed")
        derived = derive_balances(deal.status, deal.milestones)
        deal.escrow_balance = derived.escrow
        deal.supplier_balance = derived.supplier
        await self._checkpoint()

        logger.info("deal.funded", escrow_balance=str(deal.escrow_balance))
        return deal

    async def _create_escrow(
        self,
        deal: Deal,
        milestone: Milestone,
        signer: WalletKey,
        asset: SettlementAsset,
    ) -> None:
        escrow = self._escrow_of(milestone)

        if escrow.pending_sequence is not None and await self._adopt_pending(deal, milestone):
            return

        account = await self._gateway.get_account_state(signer.address)
        deadlines = compute_deadlines(
            self._now(),
            self._settings.escrow_default_cancel_after_days,
            self._settings.escrow_default_finish_after_days,
            self._settings.ledger_epoch_offset,
        )
        units = self._settlement_units(milestone.amount)
        intent = escrow_create_intent(
            owner=escrow.owner,
            destination=escrow.destination,
            amount=units,
            condition=escrow.condition,
            deadlines=deadlines,
            asset=asset,
            idempotency_key=escrow.idempotency_key,
            sequence=account.sequence,
        )

        escrow.pending_sequence = account.sequence
        await self._checkpoint()

        try:
            result = await self._gateway.submit_and_confirm(intent, signer)
        except LedgerUnavailableError:
            logger.warning(
                "escrow.create_outcome_unknown",
                milestone_index=milestone.index,
                pending_sequence=escrow.pending_sequence,
            )
            raise

        if not result.success:
            escrow.pending_sequence = None
            await self._checkpoint()
            logger.error(
                "escrow.create_failed",
                milestone_index=milestone.index,
                result=result.result_code,
            )
            raise LedgerRejectedError("EscrowCreate", result.result_code, result.hash or None)

        await self._record_created(
            deal,
            milestone,
            sequence=result.assigned_sequence or account.sequence,
            tx_hash=result.hash,
            cancel_after=deadlines.cancel_after,
            finish_after=deadlines.finish_after,
            ledger_amount=ledger_amount_repr(settlement_amount(units, asset)),
        )

    async def _adopt_pending(self, deal: Deal, milestone: Milestone) -> bool:
        """Adopt an escrow created by an earlier run whose outcome was unknown."""
        escrow = self._escrow_of(milestone)

        node = await self._gateway.get_settlement_object(escrow.owner, escrow.pending_sequence)
        if node is None or str(node.get("Condition", "")).upper() != escrow.condition.upper():
            logger.info(
                "escrow.pending_not_found",
                milestone_index=milestone.index,
                pending_sequence=escrow.pending_sequence,
            )
            return False

        logger.info(
            "escrow.adopted",
            milestone_index=milestone.index,
            sequence=escrow.pending_sequence,
        )
        await self._record_created(
            deal,
            milestone,
            sequence=escrow.pending_sequence,
            tx_hash=str(node.get("PreviousTxnID", "")),
            cancel_after=node.get("CancelAfter"),
            finish_after=node.get("FinishAfter"),
            ledger_amount=ledger_amount_repr(node.get("Amount")),
        )
        return True

    async def _record_created(
        self,
        deal: Deal,
        milestone: Milestone,
        sequence: int,
        tx_hash: str,
        cancel_after: int | None,
        finish_after: int | None,
        ledger_amount: str,
    ) -> None:
        escrow = self._escrow_of(milestone)

        escrow.sequence = sequence
        escrow.pending_sequence = None
        escrow.create_transaction_hash = tx_hash
        escrow.transaction_hash = tx_hash
        escrow.cancel_after = cancel_after
        escrow.finish_after = finish_after
        escrow.ledger_amount = ledger_amount
        deal.append_transaction_hash(tx_hash)

        await self._log_repo.record(
            TransactionLogType.ESCROW_CREATED,
            deal_id=deal.id,
            tx_hash=tx_hash,
            amount=milestone.amount,
            from_address=escrow.owner,
            to_address=escrow.destination,
            metadata={
                "milestone_index": milestone.index,
                "milestone_name": milestone.name,
                "escrow_sequence": sequence,
                "ledger_amount": ledger_amount,
                "idempotency_key": escrow.idempotency_key,
            },
        )
        await self._checkpoint()

        logger.info(
            "escrow.created",
            milestone_index=milestone.index,
            sequence=sequence,
            tx_hash=tx_hash,
            ledger_amount=ledger_amount,
        )

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    async def release_milestone(self, deal: Deal, index: int) -> Deal:
        """Finish milestone ``index``'s escrow, revealing its fulfillment.

        All preconditions are checked before any ledger call. If the ledger
        rejects the EscrowFinish, no local state changes. If its outcome was
        unknown, calling this again adopts the finish when it validated.

        Raises:
            MilestoneNotFoundError, DealDisputedError, OrderViolationError,
            AlreadyReleasedError, MilestoneNotPendingError,
            InvalidStateTransitionError, MilestoneNotVerifiedError,
            BalanceInconsistencyError, KeyMaterialMissingError,
            EscrowNotOnLedgerError: Before any submission.
            LedgerRejectedError: If the EscrowFinish fails on ledger.
            LedgerUnavailableError: If its outcome is unknown.
        """
        milestone = deal.milestone_at(index)
        if milestone is None:
            raise MilestoneNotFoundError(str(deal.id), index)
        if deal.dispute or deal.status == DealStatus.DISPUTED:
            raise DealDisputedError(str(deal.id))
        if index > 0:
            previous = deal.milestone_at(index - 1)
            if previous is None or previous.status != MilestoneStatus.RELEASED:
                raise OrderViolationError(index)
        if milestone.status == MilestoneStatus.RELEASED:
            raise AlreadyReleasedError(index)
        if milestone.status != MilestoneStatus.PENDING:
            raise MilestoneNotPendingError(index, milestone.status)

        is_final = all(
            m.status == MilestoneStatus.RELEASED for m in deal.milestones if m.index != index
        )
        deal_event = "release_final" if is_final else "release_partial"
        if not can_fire(DealStateMachine, deal.status, deal_event):
            raise InvalidStateTransitionError(deal.status, deal_event)

        if (
            self._settings.require_facilitator_verification
            and deal.facilitator_id is not None
            and milestone.verification_status != VerificationStatus.VERIFIED
        ):
            raise MilestoneNotVerifiedError(index)

        check_balances(deal)

        escrow = self._active_escrow(milestone)
        supplier_key = await self._require_key(deal.supplier.ledger_address)

        if escrow.pending_finish_sequence is not None:
            finished = await self._find_pending_finish(milestone, supplier_key.address)
            if finished is not None:
                return await self._record_released(deal, milestone, finished.hash, deal_event)

        node = await self._gateway.get_settlement_object(escrow.owner, escrow.sequence)
        if node is None:
            raise EscrowNotOnLedgerError(escrow.owner, escrow.sequence)

        async with self._sequencer.serialize(supplier_key.address):
            account = await self._gateway.get_account_state(supplier_key.address)
            intent = escrow_finish_intent(
                finisher=supplier_key.address,
                owner=escrow.owner,
                offer_sequence=escrow.sequence,
                condition=escrow.condition,
                fulfillment=escrow.fulfillment,
                sequence=account.sequence,
            )
            escrow.pending_finish_sequence = account.sequence
            await self._checkpoint()
            try:
                result = await self._gateway.submit_and_confirm(intent, supplier_key)
            except LedgerUnavailableError:
                logger.warning(
                    "escrow.release_outcome_unknown",
                    milestone_index=index,
                    pending_finish_sequence=escrow.pending_finish_sequence,
                )
                raise

        if not result.success:
            escrow.pending_finish_sequence = None
            await self._checkpoint()
            logger.error(
                "escrow.release_failed",
                milestone_index=index,
                sequence=escrow.sequence,
                result=result.result_code,
            )
            raise LedgerRejectedError("EscrowFinish", result.result_code, result.hash or None)

        return await self._record_released(deal, milestone, result.hash, deal_event)

    async def _find_pending_finish(
        self, milestone: Milestone, finisher: str
    ) -> LedgerTransaction | None:
        """Look up an EscrowFinish sent by an earlier run whose outcome was unknown.

        Returns the transaction if it validated successfully against this
        escrow. Otherwise the pin is cleared so the release is submitted again;
        an earlier finish that never validated holds the same sequence and
        cannot apply once the new one does.
        """
        escrow = milestone.escrow
        tx = await self._gateway.get_transaction(finisher, escrow.pending_finish_sequence)
        if (
            tx is not None
            and tx.success
            and tx.transaction_type == LedgerTransactionType.ESCROW_FINISH
            and tx.fields.get("Owner") == escrow.owner
            and tx.fields.get("OfferSequence") == escrow.sequence
        ):
            logger.info(
                "escrow.release_adopted",
                milestone_index=milestone.index,
                tx_hash=tx.hash,
            )
            return tx

        logger.info(
            "escrow.pending_finish_not_found",
            milestone_index=milestone.index,
            pending_finish_sequence=escrow.pending_finish_sequence,
            result=tx.result_code if tx is not None else None,
        )
        escrow.pending_finish_sequence = None
        await self._checkpoint()
        return None

    async def _record_released(
        self, deal: Deal, milestone: Milestone, tx_hash: str, deal_event: str
    ) -> Deal:
        escrow = milestone.escrow
        index = milestone.index

        milestone.status = fire_transition(MilestoneStateMachine, milestone.status, "release")
        milestone.released_at = datetime.fromtimestamp(self._now(), UTC)
        if milestone.verification_status is not None:
            milestone.verification_status = VerificationStatus.VERIFIED.value
        escrow.status = fire_transition(EscrowRecordStateMachine, escrow.status, "finish")
        escrow.transaction_hash = tx_hash
        escrow.pending_finish_sequence = None
        deal.append_transaction_hash(tx_hash)

        deal.status = fire_transition(DealStateMachine, deal.status, deal_event)
        derived = derive_balances(deal.status, deal.milestones)
        deal.escrow_balance = derived.escrow
        deal.supplier_balance = derived.supplier

        await self._log_repo.record(
            TransactionLogType.ESCROW_RELEASED,
            deal_id=deal.id,
            tx_hash=tx_hash,
            amount=milestone.amount,
            from_address=escrow.owner,
            to_address=escrow.destination,
            metadata={
                "milestone_index": index,
                "milestone_name": milestone.name,
                "escrow_sequence": escrow.sequence,
                "ledger_amount": escrow.ledger_amount,
            },
        )
        await self._checkpoint()

        logger.info(
            "escrow.released",
            milestone_index=index,
            tx_hash=tx_hash,
            deal_status=deal.status,
            supplier_balance=str(deal.supplier_balance),
        )
        return deal

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    async def cancel_escrows(self, deal: Deal) -> Deal:
        """Return every still-locked escrow of ``deal`` to the buyer.

        Escrows can only be cancelled once their CancelAfter deadline has
        passed; every escrow is checked before the first submission.
        Records that never reached the ledger are closed locally.
        """
        pending = [
            m for m in deal.milestones
            if m.escrow is not None and m.escrow.status == EscrowRecordStatus.CREATED
        ]
        if not pending:
            return deal

        for milestone in pending:
            if milestone.escrow.pending_finish_sequence is not None:
                raise PreconditionError(
                    f"Release of milestone {milestone.index} has an unknown outcome; "
                    "retry the release first",
                    code="RELEASE_OUTCOME_UNKNOWN",
                )

        for milestone in pending:
            if milestone.escrow.pending_sequence is not None:
                await self._adopt_pending(deal, milestone)

        now = ledger_now(self._settings.ledger_epoch_offset, self._now())
        on_ledger = [m for m in pending if m.escrow.is_on_ledger]
        for milestone in on_ledger:
            cancel_after = milestone.escrow.cancel_after
            if cancel_after is None or now <= cancel_after:
                raise PreconditionError(
                    f"Escrow of milestone {milestone.index} cannot be cancelled "
                    f"before ledger time {cancel_after}",
                    code="ESCROW_NOT_EXPIRED",
                )

        owner_key = await self._require_key(deal.buyer.ledger_address) if on_ledger else None

        for milestone in pending:
            escrow = milestone.escrow
            if not escrow.is_on_ledger:
                escrow.status = fire_transition(
                    EscrowRecordStateMachine, escrow.status, "cancel_escrow"
                )
                continue
            await self._cancel_escrow(deal, milestone, owner_key)

        await self._checkpoint()
        return deal

    async def _cancel_escrow(self, deal: Deal, milestone: Milestone, signer: WalletKey) -> None:
        escrow = self._escrow_of(milestone)

        intent = escrow_cancel_intent(signer.address, escrow.owner, escrow.sequence)
        async with self._sequencer.serialize(signer.address):
            result = await self._gateway.submit_and_confirm(intent, signer)
        if not result.success:
            logger.error(
                "escrow.cancel_failed",
                milestone_index=milestone.index,
                result=result.result_code,
            )
            raise LedgerRejectedError("EscrowCancel", result.result_code, result.hash or None)

        escrow.status = fire_transition(EscrowRecordStateMachine, escrow.status, "cancel_escrow")
        escrow.transaction_hash = result.hash
        deal.append_transaction_hash(result.hash)
        await self._log_repo.record(
            TransactionLogType.ESCROW_CANCELLED,
            deal_id=deal.id,
            tx_hash=result.hash,
            amount=milestone.amount,
            from_address=escrow.owner,
            to_address=escrow.owner,
            metadata={"milestone_index": milestone.index, "escrow_sequence": escrow.sequence},
        )
        await self._checkpoint()
        logger.info("escrow.cancelled", milestone_index=milestone.index, tx_hash=result.hash)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_escrow_status(self, owner: str, sequence: int) -> dict[str, Any] | None:
        """Return the ledger escrow object, or None if it is not (or no longer) there."""
        return await self._gateway.get_settlement_object(owner, sequence)

    async def reconcile_deal(self, deal: Deal) -> list[EscrowDiscrepancy]:
        """Compare each escrow record with the ledger. Read-only."""
        findings: list[EscrowDiscrepancy] = []
        for milestone in deal.milestones:
            escrow = milestone.escrow
            if escrow is None or escrow.sequence is None:
                continue
            node = await self._gateway.get_settlement_object(escrow.owner, escrow.sequence)
            findings.extend(self._compare(milestone.index, escrow, node))

        for finding in findings:
            logger.warning(
                "escrow.reconcile_discrepancy",
                milestone_index=finding.milestone_index,
                kind=finding.kind.value,
                detail=finding.detail,
            )
        logger.info("escrow.reconciled", discrepancies=len(findings))
        return findings

    @staticmethod
    def _compare(
        index: int, escrow: EscrowRecord, node: dict[str, Any] | None
    ) -> list[EscrowDiscrepancy]:
        def finding(kind: DiscrepancyKind, detail: str) -> EscrowDiscrepancy:
            return EscrowDiscrepancy(
                milestone_index=index,
                owner=escrow.owner,
                sequence=escrow.sequence,
                kind=kind,
                detail=detail,
            )

        if escrow.status == EscrowRecordStatus.CREATED:
            if node is None:
                return [finding(DiscrepancyKind.MISSING_ON_LEDGER, "Recorded as created, absent on ledger")]
            found = []
            if str(node.get("Condition", "")).upper() != escrow.condition.upper():
                found.append(finding(DiscrepancyKind.CONDITION_MISMATCH, "Ledger condition differs"))
            ledger_amount = ledger_amount_repr(node.get("Amount"))
            if escrow.ledger_amount is not None and ledger_amount != escrow.ledger_amount:
                found.append(
                    finding(
                        DiscrepancyKind.AMOUNT_MISMATCH,
                        f"Recorded {escrow.ledger_amount}, ledger holds {ledger_amount}",
                    )
                )
            return found

        if node is not None:
            return [
                finding(
                    DiscrepancyKind.STILL_LOCKED_ON_LEDGER,
                    f"Recorded as {escrow.status}, still locked on ledger",
                )
            ]
        return []

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _escrow_of(milestone: Milestone) -> EscrowRecord:
        if milestone.escrow is None:
            raise PreconditionError(
                f"Milestone {milestone.index} has no escrow record",
                code="ESCROW_RECORD_MISSING",
            )
        return milestone.escrow

    @staticmethod
    def _active_escrow(milestone: Milestone) -> EscrowRecord:
        escrow = milestone.escrow
        if escrow is None or not escrow.is_on_ledger or escrow.status != EscrowRecordStatus.CREATED:
            raise PreconditionError(
                f"Milestone {milestone.index} has no active escrow", code="ESCROW_NOT_ACTIVE"
            )
        return escrow

    def _settlement_units(self, amount: Decimal) -> Decimal:
        return quantize_amount(amount / self._settings.settlement_unit_rate)

    async def _require_key(self, address: str) -> WalletKey:
        key = await self._participant_repo.get_key(address)
        if key is None:
            raise KeyMaterialMissingError(address)
        return key

    async def _checkpoint(self) -> None:
        await self._session.flush()
        await self._session.commit()
