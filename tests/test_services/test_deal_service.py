"""Tests for the DealService: creation, funding, release, dispute and cancel.

Runs against the simulated ledger and an in-memory database, so every
scenario exercises the real state machines, repositories and ledger calls.
"""

from __future__ import annotations

import uuid
from collections import Counter
from datetime import UTC, datetime
from decimal import Decimal

import pytest

from trade_settlement.domain.conditions import fulfillment_matches
from trade_settlement.domain.enums import DealStatus, TransactionLogType
from trade_settlement.domain.exceptions import (
    AlreadyReleasedError,
    DealDisputedError,
    DealNotFoundError,
    InvalidStateTransitionError,
    LedgerRejectedError,
    MilestoneNotFoundError,
    OrderViolationError,
    ParticipantNotFoundError,
    PreconditionError,
    ValidationError,
)
from trade_settlement.infrastructure.database.repositories import ParticipantRepository
from trade_settlement.schemas.deal import DealView


def _log_types(entries) -> Counter:  # noqa: ANN001
    return Counter(entry.type for entry in entries)


class TestCreateDeal:
    @pytest.mark.asyncio
    async def test_milestone_amounts(self, deal_service, parties, deal_request) -> None:  # noqa: ANN001
        deal = await deal_service.create_deal(deal_request(parties))

        assert deal.status == DealStatus.DRAFT
        assert [m.amount for m in deal.milestones] == [
            Decimal("150"),
            Decimal("200"),
            Decimal("150"),
        ]
        assert sum(m.escrow.amount for m in deal.milestones) == Decimal("500")
        assert all(m.status == "Pending" for m in deal.milestones)
        assert deal.escrow_balance == 0
        assert deal.supplier_balance == 0

    @pytest.mark.asyncio
    async def test_escrows_prepared_but_not_on_ledger(self, deal_service, parties, deal_request, ledger) -> None:  # noqa: ANN001
        deal = await deal_service.create_deal(deal_request(parties))

        conditions = {m.escrow.condition for m in deal.milestones}
        assert len(conditions) == 3
        for milestone in deal.milestones:
            escrow = milestone.escrow
            assert escrow.sequence is None
            assert not escrow.is_on_ledger
            assert escrow.owner == parties["buyer"]
            assert escrow.destination == parties["supplier"]
            assert escrow.idempotency_key == f"{deal.deal_reference}:{milestone.index}"
            assert fulfillment_matches(escrow.condition, escrow.fulfillment)
        assert ledger.escrow_count == 0

    @pytest.mark.asyncio
    async def test_sequential_references(self, deal_service, parties, deal_request, clock) -> None:  # noqa: ANN001
        first = await deal_service.create_deal(deal_request(parties))
        second = await deal_service.create_deal(deal_request(parties))
        year = datetime.fromtimestamp(clock(), UTC).year

        assert first.deal_reference == f"DEAL-{year}-0001"
        assert second.deal_reference == f"DEAL-{year}-0002"
        assert (await deal_service.get_deal_by_reference(second.deal_reference)).id == second.id

    @pytest.mark.asyncio
    async def test_percentages_must_total_100(self, deal_service, parties, deal_request) -> None:  # noqa: ANN001
        with pytest.raises(ValidationError):
            await deal_service.create_deal(deal_request(parties, percentages=[30, 40, 20]))
        assert await deal_service.list_deals() == []

    @pytest.mark.asyncio
    async def test_buyer_and_supplier_must_differ(self, deal_service, parties, deal_request) -> None:  # noqa: ANN001
        request = deal_request({**parties, "supplier": parties["buyer"]})
        with pytest.raises(ValidationError, match="different"):
            await deal_service.create_deal(request)

    @pytest.mark.asyncio
    async def test_unknown_participant(self, deal_service, parties, deal_request) -> None:  # noqa: ANN001
        request = deal_request({**parties, "supplier": "rUnregisteredSupplierAddress000"})
        with pytest.raises(ParticipantNotFoundError) as exc_info:
            await deal_service.create_deal(request)
        assert exc_info.value.code == "PARTICIPANT_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_view_never_exposes_fulfillment(self, deal_service, parties, deal_request) -> None:  # noqa: ANN001
        deal = await deal_service.create_deal(deal_request(parties, with_facilitator=True))
        payload = DealView.from_deal(deal).model_dump_json()

        assert deal.milestones[0].escrow.condition in payload
        for milestone in deal.milestones:
            assert milestone.escrow.fulfillment not in payload
        assert "fulfillment" not in payload


class TestFundDeal:
    @pytest.mark.asyncio
    async def test_funds_every_milestone(self, deal_service, parties, deal_request, ledger) -> None:  # noqa: ANN001
        deal = await deal_service.create_deal(deal_request(parties))
        deal = await deal_service.fund_deal(deal.id)

        assert deal.status == DealStatus.FUNDED
        assert deal.escrow_balance == Decimal("500")
        assert deal.supplier_balance == 0
        assert ledger.escrow_count == 3
        assert ledger.balance_xrp(parties["buyer"]) == Decimal("95")

        sequences = [m.escrow.sequence for m in deal.milestones]
        assert sequences == sorted(sequences)
        assert len(set(sequences)) == 3
        for milestone in deal.milestones:
            node = await deal_service.get_escrow_status(parties["buyer"], milestone.escrow.sequence)
            assert node["Condition"] == milestone.escrow.condition
            assert milestone.escrow.cancel_after is not None
            assert milestone.escrow.transaction_hash in deal.transaction_hashes
        assert [m.escrow.ledger_amount for m in deal.milestones] == ["1500000", "2000000", "1500000"]

    @pytest.mark.asyncio
    async def test_escrows_created_in_index_order(self, deal_service, parties, deal_request, ledger) -> None:  # noqa: ANN001
        deal = await deal_service.create_deal(deal_request(parties))
        ledger.submitted.clear()
        await deal_service.fund_deal(deal.id)

        keys = [intent.idempotency_key for intent in ledger.submitted]
        assert keys == [f"{deal.deal_reference}:{i}" for i in range(3)]

    @pytest.mark.asyncio
    async def test_funding_twice_is_rejected(self, deal_service, parties, deal_request, ledger) -> None:  # noqa: ANN001
        deal = await deal_service.create_deal(deal_request(parties))
        await deal_service.fund_deal(deal.id)

        with pytest.raises(PreconditionError):
            await deal_service.fund_deal(deal.id)
        assert ledger.escrow_count == 3

    @pytest.mark.asyncio
    async def test_audit_trail(self, deal_service, parties, deal_request) -> None:  # noqa: ANN001
        deal = await deal_service.create_deal(deal_request(parties))
        await deal_service.fund_deal(deal.id)

        history = await deal_service.get_deal_history(deal.id)
        assert _log_types(history) == Counter(
            {
                TransactionLogType.DEAL_CREATED.value: 1,
                TransactionLogType.ESCROW_CREATED.value: 3,
            }
        )


class TestReleaseMilestone:
    @pytest.mark.asyncio
    async def test_first_release_activates_deal(self, deal_service, parties, deal_request, ledger) -> None:  # noqa: ANN001
        deal = await deal_service.create_deal(deal_request(parties))
        await deal_service.fund_deal(deal.id)
        deal = await deal_service.release_milestone(deal.id, 0)

        first = deal.milestones[0]
        assert first.status == "Released"
        assert first.released_at is not None
        assert first.escrow.status == "finished"
        assert first.escrow.transaction_hash != first.escrow.create_transaction_hash
        assert deal.status == DealStatus.ACTIVE
        assert deal.supplier_balance == first.amount
        assert deal.escrow_balance == Decimal("350")
        assert ledger.balance_xrp(parties["supplier"]) == Decimal("101.5")
        assert await deal_service.get_escrow_status(parties["buyer"], first.escrow.sequence) is None

    @pytest.mark.asyncio
    async def test_out_of_order_release(self, deal_service, parties, deal_request, ledger) -> None:  # noqa: ANN001
        deal = await deal_service.create_deal(deal_request(parties))
        await deal_service.fund_deal(deal.id)
        submitted = len(ledger.submitted)

        with pytest.raises(OrderViolationError) as exc_info:
            await deal_service.release_milestone(deal.id, 1)

        assert isinstance(exc_info.value, PreconditionError)
        assert len(ledger.submitted) == submitted
        deal = await deal_service.get_deal(deal.id)
        assert deal.status == DealStatus.FUNDED
        assert all(m.status == "Pending" for m in deal.milestones)
        assert deal.escrow_balance == Decimal("500")

    @pytest.mark.asyncio
    async def test_final_release_completes_deal(self, deal_service, parties, deal_request) -> None:  # noqa: ANN001
        deal = await deal_service.create_deal(deal_request(parties))
        await deal_service.fund_deal(deal.id)
        for index in range(3):
            deal = await deal_service.release_milestone(deal.id, index)

        assert deal.status == DealStatus.COMPLETED
        assert deal.escrow_balance == 0
        assert deal.supplier_balance == Decimal("500")
        assert all(m.escrow.status == "finished" for m in deal.milestones)

        history = await deal_service.get_deal_history(deal.id)
        assert _log_types(history)[TransactionLogType.ESCROW_RELEASED.value] == 3

    @pytest.mark.asyncio
    async def test_single_milestone_deal(self, deal_service, parties, deal_request) -> None:  # noqa: ANN001
        deal = await deal_service.create_deal(deal_request(parties, percentages=[100]))
        deal = await deal_service.fund_deal(deal.id)
        assert deal.escrow_balance == Decimal("500")

        deal = await deal_service.release_milestone(deal.id, 0)
        assert deal.status == DealStatus.COMPLETED
        assert deal.supplier_balance == Decimal("500")

    @pytest.mark.asyncio
    async def test_already_released(self, deal_service, parties, deal_request) -> None:  # noqa: ANN001
        deal = await deal_service.create_deal(deal_request(parties))
        await deal_service.fund_deal(deal.id)
        await deal_service.release_milestone(deal.id, 0)

        with pytest.raises(AlreadyReleasedError):
            await deal_service.release_milestone(deal.id, 0)

    @pytest.mark.asyncio
    async def test_unknown_milestone(self, deal_service, parties, deal_request) -> None:  # noqa: ANN001
        deal = await deal_service.create_deal(deal_request(parties))
        await deal_service.fund_deal(deal.id)

        with pytest.raises(MilestoneNotFoundError):
            await deal_service.release_milestone(deal.id, 7)

    @pytest.mark.asyncio
    async def test_release_requires_funding(self, deal_service, parties, deal_request, ledger) -> None:  # noqa: ANN001
        deal = await deal_service.create_deal(deal_request(parties))

        with pytest.raises(InvalidStateTransitionError):
            await deal_service.release_milestone(deal.id, 0)

    @pytest.mark.asyncio
    async def test_ledger_rejection_changes_nothing(self, deal_service, parties, deal_request, ledger) -> None:  # noqa: ANN001
        deal = await deal_service.create_deal(deal_request(parties))
        await deal_service.fund_deal(deal.id)
        ledger.fail_next("tecNO_PERMISSION")

        with pytest.raises(LedgerRejectedError) as exc_info:
            await deal_service.release_milestone(deal.id, 0)

        assert exc_info.value.result_code == "tecNO_PERMISSION"
        deal = await deal_service.get_deal(deal.id)
        assert deal.status == DealStatus.FUNDED
        assert deal.milestones[0].status == "Pending"
        assert deal.milestones[0].escrow.status == "created"
        assert deal.supplier_balance == 0
        assert ledger.escrow_count == 3

        deal = await deal_service.release_milestone(deal.id, 0)
        assert deal.milestones[0].status == "Released"


class TestDisputeDeal:
    @pytest.mark.asyncio
    async def test_dispute_freezes_pending_milestones(self, deal_service, parties, deal_request, ledger) -> None:  # noqa: ANN001
        deal = await deal_service.create_deal(deal_request(parties))
        await deal_service.fund_deal(deal.id)
        await deal_service.release_milestone(deal.id, 0)

        deal = await deal_service.dispute_deal(deal.id, "Second shipment short by 40 bags")

        assert deal.status == DealStatus.DISPUTED
        assert deal.dispute
        assert deal.dispute_reason == "Second shipment short by 40 bags"
        assert [m.status for m in deal.milestones] == ["Released", "Disputed", "Disputed"]
        assert deal.supplier_balance == Decimal("150")
        assert deal.escrow_balance == Decimal("350")
        assert ledger.escrow_count == 2

    @pytest.mark.asyncio
    async def test_disputed_deal_blocks_release(self, deal_service, parties, deal_request) -> None:  # noqa: ANN001
        deal = await deal_service.create_deal(deal_request(parties))
        await deal_service.fund_deal(deal.id)
        await deal_service.dispute_deal(deal.id, "Quality claim")

        with pytest.raises(DealDisputedError):
            await deal_service.release_milestone(deal.id, 0)
        with pytest.raises(InvalidStateTransitionError):
            await deal_service.dispute_deal(deal.id, "Again")

    @pytest.mark.asyncio
    async def test_reason_required(self, deal_service, parties, deal_request) -> None:  # noqa: ANN001
        deal = await deal_service.create_deal(deal_request(parties))
        with pytest.raises(ValidationError):
            await deal_service.dispute_deal(deal.id, "   ")
        assert (await deal_service.get_deal(deal.id)).status == DealStatus.DRAFT

    @pytest.mark.asyncio
    async def test_completed_deal_cannot_be_disputed(self, deal_service, parties, deal_request) -> None:  # noqa: ANN001
        deal = await deal_service.create_deal(deal_request(parties, percentages=[100]))
        await deal_service.fund_deal(deal.id)
        await deal_service.release_milestone(deal.id, 0)

        with pytest.raises(InvalidStateTransitionError):
            await deal_service.dispute_deal(deal.id, "Too late")


class TestCancelDeal:
    @pytest.mark.asyncio
    async def test_cancel_draft(self, deal_service, parties, deal_request, ledger) -> None:  # noqa: ANN001
        deal = await deal_service.create_deal(deal_request(parties))
        submitted = len(ledger.submitted)

        deal = await deal_service.cancel_deal(deal.id, reason="Buyer withdrew")

        assert deal.status == DealStatus.CANCELLED
        assert all(m.escrow.status == "cancelled" for m in deal.milestones)
        assert len(ledger.submitted) == submitted

    @pytest.mark.asyncio
    async def test_cancel_before_expiry_is_rejected(self, deal_service, parties, deal_request, ledger) -> None:  # noqa: ANN001
        deal = await deal_service.create_deal(deal_request(parties))
        await deal_service.fund_deal(deal.id)
        submitted = len(ledger.submitted)

        with pytest.raises(PreconditionError) as exc_info:
            await deal_service.cancel_deal(deal.id)

        assert exc_info.value.code == "ESCROW_NOT_EXPIRED"
        assert len(ledger.submitted) == submitted
        assert (await deal_service.get_deal(deal.id)).status == DealStatus.FUNDED

    @pytest.mark.asyncio
    async def test_cancel_after_expiry_refunds_buyer(self, deal_service, parties, deal_request, ledger, clock) -> None:  # noqa: ANN001
        deal = await deal_service.create_deal(deal_request(parties))
        await deal_service.fund_deal(deal.id)
        clock.advance(days=31)

        deal = await deal_service.cancel_deal(deal.id, reason="Shipment never left port")

        assert deal.status == DealStatus.CANCELLED
        assert deal.escrow_balance == 0
        assert deal.supplier_balance == 0
        assert all(m.escrow.status == "cancelled" for m in deal.milestones)
        assert ledger.escrow_count == 0
        assert ledger.balance_xrp(parties["buyer"]) == Decimal("100")

        history = await deal_service.get_deal_history(deal.id)
        types = _log_types(history)
        assert types[TransactionLogType.ESCROW_CANCELLED.value] == 3
        assert types[TransactionLogType.DEAL_CANCELLED.value] == 1

    @pytest.mark.asyncio
    async def test_active_deal_cannot_be_cancelled(self, deal_service, parties, deal_request) -> None:  # noqa: ANN001
        deal = await deal_service.create_deal(deal_request(parties))
        await deal_service.fund_deal(deal.id)
        await deal_service.release_milestone(deal.id, 0)

        with pytest.raises(InvalidStateTransitionError):
            await deal_service.cancel_deal(deal.id)


class TestQueries:
    @pytest.mark.asyncio
    async def test_unknown_deal(self, deal_service) -> None:  # noqa: ANN001
        with pytest.raises(DealNotFoundError) as exc_info:
            await deal_service.get_deal(uuid.uuid4())
        assert exc_info.value.code == "DEAL_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_list_by_status_and_wallet(self, deal_service, parties, deal_request) -> None:  # noqa: ANN001
        funded = await deal_service.create_deal(deal_request(parties))
        await deal_service.fund_deal(funded.id)
        draft = await deal_service.create_deal(deal_request(parties, with_facilitator=True))

        assert [d.id for d in await deal_service.list_deals(DealStatus.FUNDED)] == [funded.id]
        assert {d.id for d in await deal_service.list_deals()} == {funded.id, draft.id}
        assert {d.id for d in await deal_service.list_deals_by_wallet(parties["supplier"])} == {
            funded.id,
            draft.id,
        }
        assert [d.id for d in await deal_service.list_deals_by_wallet(parties["facilitator"])] == [
            draft.id
        ]

    @pytest.mark.asyncio
    async def test_wallet_history(self, deal_service, parties, session) -> None:  # noqa: ANN001
        history = await deal_service.get_wallet_history(parties["buyer"])
        assert _log_types(history) == Counter({TransactionLogType.WALLET_CREATED.value: 1})

        participant = await ParticipantRepository(session).get_by_address(parties["buyer"])
        assert history[0].participant_id == participant.id

        with pytest.raises(ParticipantNotFoundError):
            await deal_service.get_wallet_history("rUnregisteredAddress00000000000")
