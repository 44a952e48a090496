"""Pydantic schemas for the settlement core's callers.

Request models validate shape only; business rules (percentages summing to
100, distinct parties) are enforced by the services so they surface as
domain ValidationErrors. View models are built from ORM rows and never carry
fulfillments or seeds.
"""

from __future__ import annotations

import uuid  # noqa: TC003 - needed at runtime by pydantic
from datetime import datetime  # noqa: TC003 - needed at runtime by pydantic
from decimal import Decimal  # noqa: TC003 - needed at runtime by pydantic
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field

from trade_settlement.domain.enums import DiscrepancyKind  # noqa: TC001

if TYPE_CHECKING:
    from trade_settlement.infrastructure.database.orm_models import Deal, Milestone

# ---------------------------------------------------------------------------
# Request Schemas
# ---------------------------------------------------------------------------


class MilestoneSpec(BaseModel):
    """One tranche of a new deal."""

    name: str = Field(..., min_length=1, max_length=200)
    percentage: int = Field(
        ...,
        description="Share of the deal amount; all milestones must total 100",
        examples=[30],
    )
    description: str | None = Field(default=None, max_length=2000)


class CreateDealRequest(BaseModel):
    """Request for a new deal in draft status."""

    name: str = Field(..., min_length=1, max_length=200, examples=["Coffee shipment Q3"])
    description: str | None = Field(default=None, max_length=5000)
    amount: Decimal = Field(..., gt=0, decimal_places=6, examples=[500])
    currency: str | None = Field(
        default=None,
        max_length=8,
        description="Deal currency; defaults to DEFAULT_CURRENCY",
    )
    settlement_asset: str | None = Field(
        default=None,
        max_length=40,
        description="XRP or an issued token code; defaults to SETTLEMENT_ASSET",
    )
    buyer_address: str = Field(..., min_length=25, max_length=64)
    supplier_address: str = Field(..., min_length=25, max_length=64)
    facilitator_address: str | None = Field(default=None, min_length=25, max_length=64)
    milestones: list[MilestoneSpec] = Field(..., min_length=1)


# ---------------------------------------------------------------------------
# Response Schemas
# ---------------------------------------------------------------------------


class ParticipantView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    role: str
    name: str
    ledger_address: str
    decentralized_id: str | None = None
    issuer: str | None = None
    verified: bool


class MilestoneVerificationView(BaseModel):
    verifier: str | None
    credential_label: str | None
    status: str
    verified_at: datetime | None = None


class EscrowRecordView(BaseModel):
    """Public view of an escrow record. The fulfillment is deliberately absent."""

    model_config = ConfigDict(from_attributes=True)

    sequence: int | None
    owner: str
    destination: str
    amount: Decimal
    ledger_amount: str | None
    condition: str
    cancel_after: int | None
    finish_after: int | None
    status: str
    transaction_hash: str | None
    create_transaction_hash: str | None


class MilestoneView(BaseModel):
    id: uuid.UUID
    index: int
    name: str
    description: str | None
    percentage: int
    amount: Decimal
    status: str
    released_at: datetime | None
    verification: MilestoneVerificationView | None
    escrow: EscrowRecordView | None

    @classmethod
    def from_milestone(cls, milestone: Milestone) -> MilestoneView:
        verification = None
        if milestone.verification_status is not None:
            verification = MilestoneVerificationView(
                verifier=milestone.verifier_address,
                credential_label=milestone.credential_label,
                status=milestone.verification_status,
                verified_at=milestone.verified_at,
            )
        escrow = (
            EscrowRecordView.model_validate(milestone.escrow)
            if milestone.escrow is not None
            else None
        )
        return cls(
            id=milestone.id,
            index=milestone.index,
            name=milestone.name,
            description=milestone.description,
            percentage=milestone.percentage,
            amount=milestone.amount,
            status=milestone.status,
            released_at=milestone.released_at,
            verification=verification,
            escrow=escrow,
        )


class DealView(BaseModel):
    """Full read model of a deal."""

    id: uuid.UUID
    deal_reference: str
    name: str
    description: str | None
    amount: Decimal
    currency: str
    settlement_asset: str
    status: str
    dispute: bool
    dispute_reason: str | None
    escrow_balance: Decimal
    supplier_balance: Decimal
    compliance_status: str
    credential_provider: str
    buyer: ParticipantView
    supplier: ParticipantView
    facilitator: ParticipantView | None
    milestones: list[MilestoneView]
    transaction_hashes: list[str]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_deal(cls, deal: Deal) -> DealView:
        return cls(
            id=deal.id,
            deal_reference=deal.deal_reference,
            name=deal.name,
            description=deal.description,
            amount=deal.amount,
            currency=deal.currency,
            settlement_asset=deal.settlement_asset,
            status=deal.status,
            dispute=deal.dispute,
            dispute_reason=deal.dispute_reason,
            escrow_balance=deal.escrow_balance,
            supplier_balance=deal.supplier_balance,
            compliance_status=deal.compliance_status,
            credential_provider=deal.credential_provider,
            buyer=ParticipantView.model_validate(deal.buyer),
            supplier=ParticipantView.model_validate(deal.supplier),
            facilitator=(
                ParticipantView.model_validate(deal.facilitator)
                if deal.facilitator is not None
                else None
            ),
            milestones=[MilestoneView.from_milestone(m) for m in deal.milestones],
            transaction_hashes=list(deal.transaction_hashes or []),
            created_at=deal.created_at,
            updated_at=deal.updated_at,
        )


class TransactionLogView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    deal_id: uuid.UUID | None
    participant_id: uuid.UUID | None
    type: str
    hash: str | None
    amount: Decimal | None
    from_address: str | None
    to_address: str | None
    status: str
    metadata: dict[str, Any] | None = Field(default=None, validation_alias="metadata_json")
    created_at: datetime


class EscrowDiscrepancy(BaseModel):
    """One disagreement between a local escrow record and the ledger."""

    milestone_index: int
    owner: str
    sequence: int | None
    kind: DiscrepancyKind
    detail: str


class ProvisionedParticipant(BaseModel):
    """Result of wallet provisioning: the participant and its identity document."""

    participant: ParticipantView
    balance: Decimal
    did_document: dict[str, Any]
