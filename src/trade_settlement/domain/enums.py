"""Domain enumerations for the settlement core.

These enums define the canonical states and types used throughout the system.
They are framework-agnostic (no SQLAlchemy, no xrpl-py imports).
"""

import enum


class DealStatus(enum.StrEnum):
    """Lifecycle states of a deal.

    State transitions are enforced by the DealStateMachine guard.
    See domain/state_machine.py for the transition table.
    """

    DRAFT = "draft"
    FUNDED = "funded"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"


class MilestoneStatus(enum.StrEnum):
    PENDING = "Pending"
    RELEASED = "Released"
    DISPUTED = "Disputed"


class VerificationStatus(enum.StrEnum):
    PENDING = "Pending"
    VERIFIED = "Verified"
    DISPUTED = "Disputed"


class EscrowRecordStatus(enum.StrEnum):
    """Local mirror status of a ledger escrow object. Moves forward only."""

    CREATED = "created"
    FINISHED = "finished"
    CANCELLED = "cancelled"


class ParticipantRole(enum.StrEnum):
    BUYER = "buyer"
    SUPPLIER = "supplier"
    FACILITATOR = "facilitator"


class ComplianceStatus(enum.StrEnum):
    PENDING = "Pending"
    KYC_COMPLETE = "KYC Complete"


class TransactionLogType(enum.StrEnum):
    """Types of audit entries recorded in the transaction_log table.

    Every externally observable state change MUST produce exactly one entry.
    This is the append-only audit trail of a deal and of each wallet.
    """

    WALLET_CREATED = "wallet_created"
    CREDENTIAL_ISSUED = "credential_issued"
    DEAL_CREATED = "deal_created"
    ESCROW_CREATED = "escrow_created"
    MILESTONE_VERIFIED = "milestone_verified"
    ESCROW_RELEASED = "escrow_released"
    ESCROW_CANCELLED = "escrow_cancelled"
    DEAL_DISPUTED = "deal_disputed"
    DEAL_CANCELLED = "deal_cancelled"


class LedgerTransactionType(enum.StrEnum):
    """XRPL transaction types submitted by the core."""

    ESCROW_CREATE = "EscrowCreate"
    ESCROW_FINISH = "EscrowFinish"
    ESCROW_CANCEL = "EscrowCancel"
    CREDENTIAL_CREATE = "CredentialCreate"
    CREDENTIAL_ACCEPT = "CredentialAccept"
    CREDENTIAL_DELETE = "CredentialDelete"
    DID_SET = "DIDSet"
    TRUST_SET = "TrustSet"


class DiscrepancyKind(enum.StrEnum):
    """Ways a local escrow record can disagree with the ledger."""

    MISSING_ON_LEDGER = "missing_on_ledger"
    STILL_LOCKED_ON_LEDGER = "still_locked_on_ledger"
    AMOUNT_MISMATCH = "amount_mismatch"
    CONDITION_MISMATCH = "condition_mismatch"
