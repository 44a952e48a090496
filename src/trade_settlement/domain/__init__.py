"""Domain layer: pure business logic with no database or network dependencies."""

from trade_settlement.domain.conditions import ConditionPair, generate_condition
from trade_settlement.domain.enums import (
    DealStatus,
    EscrowRecordStatus,
    MilestoneStatus,
    ParticipantRole,
    TransactionLogType,
)
from trade_settlement.domain.exceptions import (
    LedgerRejectedError,
    LedgerUnavailableError,
    NotFoundError,
    PreconditionError,
    SettlementError,
    ValidationError,
)
from trade_settlement.domain.state_machine import (
    DealStateMachine,
    EscrowRecordStateMachine,
    MilestoneStateMachine,
    fire_transition,
)

__all__ = [
    "ConditionPair",
    "generate_condition",
    "DealStatus",
    "EscrowRecordStatus",
    "MilestoneStatus",
    "ParticipantRole",
    "TransactionLogType",
    "LedgerRejectedError",
    "LedgerUnavailableError",
    "NotFoundError",
    "PreconditionError",
    "SettlementError",
    "ValidationError",
    "DealStateMachine",
    "EscrowRecordStateMachine",
    "MilestoneStateMachine",
    "fire_transition",
]
