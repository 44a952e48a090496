"""Pydantic request and view schemas."""

from trade_settlement.schemas.deal import (
    CreateDealRequest,
    DealView,
    EscrowDiscrepancy,
    EscrowRecordView,
    MilestoneSpec,
    MilestoneVerificationView,
    MilestoneView,
    ParticipantView,
    ProvisionedParticipant,
    TransactionLogView,
)

__all__ = [
    "CreateDealRequest",
    "DealView",
    "EscrowDiscrepancy",
    "EscrowRecordView",
    "MilestoneSpec",
    "MilestoneVerificationView",
    "MilestoneView",
    "ParticipantView",
    "ProvisionedParticipant",
    "TransactionLogView",
]
