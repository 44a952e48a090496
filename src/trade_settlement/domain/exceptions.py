"""Domain exceptions for the settlement core.

Every error carries a stable machine-readable ``code`` plus a human-readable
``message``. Validation, not-found and precondition errors are raised before
any side effect; ledger errors are raised without mutating local state for
the failed step.
"""

from __future__ import annotations


class SettlementError(Exception):
    """Base exception for all domain errors."""

    def __init__(self, message: str, code: str = "SETTLEMENT_ERROR") -> None:
        self.message = message
        self.code = code
        super().__init__(self.message)


# --- Request validation ---


class ValidationError(SettlementError):
    """Raised for malformed requests, e.g. milestone percentages not summing to 100."""

    def __init__(self, message: str) -> None:
        super().__init__(message=message, code="VALIDATION_ERROR")


# --- Lookups ---


class NotFoundError(SettlementError):
    def __init__(self, message: str, code: str = "NOT_FOUND") -> None:
        super().__init__(message=message, code=code)


class DealNotFoundError(NotFoundError):
    def __init__(self, deal_id: str) -> None:
        super().__init__(message=f"Deal not found: {deal_id}", code="DEAL_NOT_FOUND")
        self.deal_id = deal_id


class MilestoneNotFoundError(NotFoundError):
    def __init__(self, deal_id: str, index: int) -> None:
        super().__init__(
            message=f"Milestone {index} not found on deal {deal_id}",
            code="MILESTONE_NOT_FOUND",
        )
        self.index = index


class ParticipantNotFoundError(NotFoundError):
    """Raised when no participant is registered for a ledger address."""

    def __init__(self, address: str, role: str | None = None) -> None:
        label = f"{role.capitalize()} participant" if role else "Participant"
        super().__init__(
            message=f"{label} not found for address {address}. Create wallet first.",
            code="PARTICIPANT_NOT_FOUND",
        )
        self.address = address


# --- Preconditions ---


class PreconditionError(SettlementError):
    """Raised when an operation is not allowed in the current state."""

    def __init__(self, message: str, code: str = "PRECONDITION_FAILED") -> None:
        super().__init__(message=message, code=code)


class InvalidStateTransitionError(PreconditionError):
    """Raised when an attempted state transition is not allowed.

    Example: draft -> completed (must be funded first).
    """

    def __init__(self, current_state: str, attempted_event: str) -> None:
        super().__init__(
            message=f"Invalid state transition: {attempted_event} from {current_state}",
            code="INVALID_STATE_TRANSITION",
        )
        self.current_state = current_state
        self.attempted_event = attempted_event


class OrderViolationError(PreconditionError):
    def __init__(self, index: int) -> None:
        super().__init__(
            message=f"Milestone {index - 1} must be released before milestone {index}",
            code="ORDER_VIOLATION",
        )
        self.index = index


class AlreadyReleasedError(PreconditionError):
    def __init__(self, index: int) -> None:
        super().__init__(
            message=f"Milestone {index} already released",
            code="ALREADY_RELEASED",
        )
        self.index = index


class DealDisputedError(PreconditionError):
    def __init__(self, deal_id: str) -> None:
        super().__init__(
            message=f"Cannot release milestone on disputed deal {deal_id}",
            code="DEAL_DISPUTED",
        )


class MilestoneNotPendingError(PreconditionError):
    def __init__(self, index: int, status: str) -> None:
        super().__init__(
            message=f"Milestone {index} already {status}",
            code="MILESTONE_NOT_PENDING",
        )


class UnauthorizedVerifierError(PreconditionError):
    def __init__(self, verifier_address: str) -> None:
        super().__init__(
            message=f"Only the deal facilitator can verify milestones, got {verifier_address}",
            code="UNAUTHORIZED_VERIFIER",
        )


class MilestoneNotVerifiedError(PreconditionError):
    def __init__(self, index: int) -> None:
        super().__init__(
            message=f"Milestone {index} must be verified by the facilitator before release",
            code="MILESTONE_NOT_VERIFIED",
        )


class EscrowNotOnLedgerError(PreconditionError):
    """The local record says created but the ledger has no such object.

    Run reconciliation before retrying; the escrow may already have been
    finished or cancelled by an earlier attempt whose outcome was unknown.
    """

    def __init__(self, owner: str, sequence: int) -> None:
        super().__init__(
            message=f"Escrow {owner}:{sequence} not found on ledger",
            code="ESCROW_NOT_ON_LEDGER",
        )


# --- Ledger ---


class LedgerError(SettlementError):
    """Base exception for ledger gateway failures."""


class LedgerRejectedError(LedgerError):
    """The ledger validated the transaction with a non-success result code."""

    def __init__(self, operation: str, result_code: str, tx_hash: str | None = None) -> None:
        super().__init__(
            message=f"{operation} failed: {result_code}",
            code="LEDGER_REJECTED",
        )
        self.result_code = result_code
        self.tx_hash = tx_hash


class LedgerUnavailableError(LedgerError):
    """Network failure or timeout. The outcome of a submission is unknown.

    Retryable, but mutating operations must re-query the ledger first.
    """

    retryable = True

    def __init__(self, message: str) -> None:
        super().__init__(message=message, code="LEDGER_UNAVAILABLE")


# --- Key material / consistency ---


class KeyMaterialMissingError(SettlementError):
    def __init__(self, address: str) -> None:
        super().__init__(
            message=f"Signing material not found for wallet {address}",
            code="KEY_MATERIAL_MISSING",
        )
        self.address = address


class BalanceInconsistencyError(SettlementError):
    """Stored balance counters diverge from the balances derived from milestones."""

    def __init__(self, deal_id: str, stored: tuple, derived: tuple) -> None:
        super().__init__(
            message=(
                f"Balance divergence on deal {deal_id}: "
                f"stored escrow/supplier={stored[0]}/{stored[1]}, "
                f"derived={derived[0]}/{derived[1]}"
            ),
            code="BALANCE_INCONSISTENCY",
        )
        self.stored = stored
        self.derived = derived
