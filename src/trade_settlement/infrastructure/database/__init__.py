"""Database infrastructure: engine, ORM models and repositories."""

from trade_settlement.infrastructure.database.engine import (
    close_db,
    get_session_factory,
    init_db,
    make_session_factory,
    session_scope,
)
from trade_settlement.infrastructure.database.orm_models import (
    Base,
    Credential,
    Deal,
    DealCounter,
    EscrowRecord,
    Milestone,
    Participant,
    TransactionLogEntry,
    WalletKeyRecord,
)
from trade_settlement.infrastructure.database.repositories import (
    CredentialRepository,
    DealCounterRepository,
    DealRepository,
    ParticipantRepository,
    TransactionLogRepository,
)

__all__ = [
    "Base",
    "Credential",
    "Deal",
    "DealCounter",
    "EscrowRecord",
    "Milestone",
    "Participant",
    "TransactionLogEntry",
    "WalletKeyRecord",
    "CredentialRepository",
    "DealCounterRepository",
    "DealRepository",
    "ParticipantRepository",
    "TransactionLogRepository",
    "close_db",
    "get_session_factory",
    "init_db",
    "make_session_factory",
    "session_scope",
]
