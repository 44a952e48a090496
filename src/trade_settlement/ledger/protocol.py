"""Ledger Gateway contract.

Defines the interface the settlement core consumes from the external ledger
network. This is a Protocol (structural subtyping) so concrete gateways don't
need to inherit from a base class; they only need to match the shape.

Concrete implementations:
    - ledger/xrpl_gateway.py  (xrpl-py over a websocket LedgerSession)
    - ledger/simulated.py     (in-memory ledger for dry runs and tests)

Contract notes:
    - ``submit_and_confirm`` returns a SubmitResult for any validated outcome,
      success or not. It raises LedgerUnavailableError when the outcome is
      unknown (network failure, timeout); callers must re-query before
      retrying a mutating step. Submissions are never retried by the gateway.
    - Read-only queries return ``None`` for objects that do not exist.
    - ``get_transaction`` resolves an unknown outcome: a caller that pinned the
      sequence of a submission looks it up there before resubmitting.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Protocol, runtime_checkable

from trade_settlement.domain.enums import LedgerTransactionType

SUCCESS_CODE = "tesSUCCESS"
LSF_ACCEPTED = 0x00010000


@dataclass(frozen=True)
class WalletKey:
    """Signing material for one account. Read-only to the core."""

    address: str
    public_key: str
    seed: str = field(repr=False)


@dataclass(frozen=True)
class TransactionIntent:
    """An unsigned transaction in XRPL JSON form, minus TransactionType/Account.

    Attributes:
        transaction_type: The XRPL transaction type.
        account: The sending account; must match the signer.
        fields: Remaining XRPL fields, PascalCase (e.g. ``Destination``).
        sequence: Pinned account sequence, or None to let the gateway autofill.
        idempotency_key: Published as a memo; ``<dealReference>:<index>`` for escrows.
    """

    transaction_type: LedgerTransactionType
    account: str
    fields: dict[str, Any] = field(default_factory=dict, repr=False)
    sequence: int | None = None
    idempotency_key: str | None = None

    def to_xrpl(self) -> dict[str, Any]:
        """Serialize to the XRPL JSON transaction format."""
        tx: dict[str, Any] = {
            "TransactionType": self.transaction_type.value,
            "Account": self.account,
            **self.fields,
        }
        if self.sequence is not None:
            tx["Sequence"] = self.sequence
        return tx


@dataclass(frozen=True)
class SubmitResult:
    success: bool
    hash: str
    result_code: str
    assigned_sequence: int | None = None


@dataclass(frozen=True)
class LedgerTransaction:
    """A validated transaction, as found in an account's history."""

    hash: str
    transaction_type: str
    result_code: str
    sequence: int
    fields: dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def success(self) -> bool:
        return self.result_code == SUCCESS_CODE


@dataclass(frozen=True)
class AccountState:
    balance: str
    sequence: int


@dataclass(frozen=True)
class LedgerCredential:
    issuer: str
    subject: str
    credential_type: str
    accepted: bool
    expiration: int | None = None
    transaction_hash: str = ""


@dataclass(frozen=True)
class ProvisionedWallet:
    """A freshly created, faucet-funded account."""

    key: WalletKey
    balance: Decimal


@runtime_checkable
class LedgerGateway(Protocol):
    """Protocol that every ledger gateway must satisfy."""

    async def submit_and_confirm(
        self, intent: TransactionIntent, signer: WalletKey
    ) -> SubmitResult:
        """Sign, submit and wait for validation of one transaction."""
        ...

    async def get_settlement_object(
        self, owner: str, sequence: int
    ) -> dict[str, Any] | None:
        """Return the escrow ledger object created by ``owner`` at ``sequence``."""
        ...

    async def get_credential_object(
        self, issuer: str, subject: str, credential_type: str
    ) -> LedgerCredential | None:
        """Return the credential ``issuer`` issued to ``subject``, if any."""
        ...

    async def get_transaction(
        self, account: str, sequence: int
    ) -> LedgerTransaction | None:
        """Return the validated transaction ``account`` sent with ``sequence``, if any."""
        ...

    async def get_account_state(self, address: str) -> AccountState:
        """Return the validated balance and next sequence of ``address``."""
        ...

    async def provision_wallet(self) -> ProvisionedWallet:
        """Create and fund a new account (faucet networks only)."""
        ...
