"""In-memory ledger gateway for dry runs and tests.

Models the parts of the XRP Ledger the settlement core relies on: account
sequences and balances, escrow objects with crypto-conditions and deadlines,
credentials with the accepted flag, DIDs and trust lines. Result codes follow
the real engine (tesSUCCESS, tec*, tef*) so services see realistic failures.

Fault injection:
    ledger.fail_next("tecUNFUNDED")   # next submission validates with this code
    ledger.timeout_next(apply=True)   # next submission applies, caller sees a timeout
    ledger.fail_next("tecNO_DST", after=1)  # the one after next is rejected
    ledger.advance(days=31)           # move the ledger clock forward
"""

from __future__ import annotations

import hashlib
import time
from collections import deque
from dataclasses import dataclass, field
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from xrpl.utils import drops_to_xrp, hex_to_str, xrp_to_drops
from xrpl.wallet import Wallet

from trade_settlement.domain.conditions import fulfillment_matches
from trade_settlement.domain.enums import LedgerTransactionType
from trade_settlement.domain.exceptions import LedgerRejectedError, LedgerUnavailableError
from trade_settlement.domain.ledger_time import RIPPLE_EPOCH_OFFSET, SECONDS_PER_DAY
from trade_settlement.ledger.protocol import (
    LSF_ACCEPTED,
    SUCCESS_CODE,
    AccountState,
    LedgerCredential,
    LedgerTransaction,
    ProvisionedWallet,
    SubmitResult,
    TransactionIntent,
    WalletKey,
)
from trade_settlement.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import Callable

logger = get_logger(__name__)

DEFAULT_FAUCET_XRP = Decimal("100")


@dataclass
class _Account:
    seed: str
    public_key: str
    balance: int
    sequence: int = 1
    did_uri: str | None = None
    trust_lines: dict[tuple[str, str], str] = field(default_factory=dict)
    tokens: dict[tuple[str, str], Decimal] = field(default_factory=dict)


@dataclass
class _Fault:
    code: str | None = None
    timeout: bool = False
    apply: bool = False


class _Rejected(Exception):
    def __init__(self, code: str) -> None:
        super().__init__(code)
        self.code = code


class SimulatedLedgerGateway:
    """A LedgerGateway whose ledger lives in process memory."""

    def __init__(
        self,
        now: Callable[[], float] = time.time,
        epoch_offset: int = RIPPLE_EPOCH_OFFSET,
        faucet_amount: Decimal = DEFAULT_FAUCET_XRP,
    ) -> None:
        self._now = now
        self._skew = 0.0
        self._epoch_offset = epoch_offset
        self._faucet_amount = faucet_amount
        self._accounts: dict[str, _Account] = {}
        self._escrows: dict[tuple[str, int], dict[str, Any]] = {}
        self._credentials: dict[tuple[str, str, str], dict[str, Any]] = {}
        self._history: dict[tuple[str, int], LedgerTransaction] = {}
        self._faults: deque[_Fault | None] = deque()
        self._tx_counter = 0
        self.submitted: list[TransactionIntent] = []

    # ------------------------------------------------------------------
    # Test controls
    # ------------------------------------------------------------------

    def fail_next(self, result_code: str, after: int = 0) -> None:
        """Make a submission validate with ``result_code``.

        ``after`` submissions go through untouched first.
        """
        self._faults.extend([None] * after)
        self._faults.append(_Fault(code=result_code))

    def timeout_next(self, apply: bool = False, after: int = 0) -> None:
        """Make a submission time out, optionally after applying it."""
        self._faults.extend([None] * after)
        self._faults.append(_Fault(timeout=True, apply=apply))

    def advance(self, seconds: float = 0, days: float = 0) -> None:
        self._skew += seconds + days * SECONDS_PER_DAY

    def ledger_time(self) -> int:
        return int(self._now() + self._skew) - self._epoch_offset

    def register_account(self, key: WalletKey, xrp: Decimal = DEFAULT_FAUCET_XRP) -> None:
        """Open an account for an existing key pair."""
        self._accounts[key.address] = _Account(
            seed=key.seed,
            public_key=key.public_key,
            balance=int(xrp_to_drops(xrp)),
        )

    def credit_token(self, address: str, currency: str, issuer: str, value: Decimal) -> None:
        account = self._accounts[address]
        line = (currency, issuer)
        account.tokens[line] = account.tokens.get(line, Decimal(0)) + value

    def token_balance(self, address: str, currency: str, issuer: str) -> Decimal:
        return self._accounts[address].tokens.get((currency, issuer), Decimal(0))

    def balance_xrp(self, address: str) -> Decimal:
        return Decimal(drops_to_xrp(str(self._accounts[address].balance)))

    def did_uri(self, address: str) -> str | None:
        return self._accounts[address].did_uri

    def has_trust_line(self, address: str, currency: str, issuer: str) -> bool:
        return (currency, issuer) in self._accounts[address].trust_lines

    @property
    def escrow_count(self) -> int:
        return len(self._escrows)

    # ------------------------------------------------------------------
    # LedgerGateway
    # ------------------------------------------------------------------

    async def submit_and_confirm(
        self, intent: TransactionIntent, signer: WalletKey
    ) -> SubmitResult:
        self.submitted.append(intent)
        fault = self._faults.popleft() if self._faults else None

        if fault is not None and fault.timeout:
            if fault.apply:
                result = self._execute(intent, signer)
                logger.debug("ledger.sim.applied_before_timeout", hash=result.hash)
            raise LedgerUnavailableError(
                f"{intent.transaction_type.value} timed out waiting for validation"
            )
        if fault is not None and fault.code:
            return self._reject(intent, fault.code, consume_sequence=fault.code.startswith("tec"))

        return self._execute(intent, signer)

    async def get_settlement_object(
        self, owner: str, sequence: int
    ) -> dict[str, Any] | None:
        node = self._escrows.get((owner, sequence))
        return dict(node) if node is not None else None

    async def get_credential_object(
        self, issuer: str, subject: str, credential_type: str
    ) -> LedgerCredential | None:
        node = self._credentials.get((issuer, subject, credential_type))
        if node is None:
            return None
        return LedgerCredential(
            issuer=issuer,
            subject=subject,
            credential_type=credential_type,
            accepted=bool(node["Flags"] & LSF_ACCEPTED),
            expiration=node.get("Expiration"),
            transaction_hash=node["PreviousTxnID"],
        )

    async def get_transaction(
        self, account: str, sequence: int
    ) -> LedgerTransaction | None:
        return self._history.get((account, sequence))

    async def get_account_state(self, address: str) -> AccountState:
        account = self._accounts.get(address)
        if account is None:
            raise LedgerRejectedError("AccountInfo", "actNotFound")
        return AccountState(balance=str(account.balance), sequence=account.sequence)

    async def provision_wallet(self) -> ProvisionedWallet:
        wallet = Wallet.create()
        key = WalletKey(address=wallet.address, public_key=wallet.public_key, seed=wallet.seed)
        self.register_account(key, self._faucet_amount)
        logger.info("ledger.sim.wallet_provisioned", address=key.address)
        return ProvisionedWallet(key=key, balance=self._faucet_amount)

    # ------------------------------------------------------------------
    # Transaction engine
    # ------------------------------------------------------------------

    def _next_hash(self, intent: TransactionIntent) -> str:
        self._tx_counter += 1
        digest = hashlib.sha256(f"{self._tx_counter}:{intent.account}".encode())
        return digest.hexdigest().upper()

    def _remember(
        self, intent: TransactionIntent, sequence: int, tx_hash: str, code: str
    ) -> None:
        self._history[(intent.account, sequence)] = LedgerTransaction(
            hash=tx_hash,
            transaction_type=intent.transaction_type.value,
            result_code=code,
            sequence=sequence,
            fields=dict(intent.fields),
        )

    def _reject(
        self, intent: TransactionIntent, code: str, consume_sequence: bool
    ) -> SubmitResult:
        account = self._accounts.get(intent.account)
        tx_hash = ""
        if consume_sequence and account is not None:
            tx_hash = self._next_hash(intent)
            self._remember(intent, account.sequence, tx_hash, code)
            account.sequence += 1
        logger.debug("ledger.sim.rejected", tx_type=intent.transaction_type.value, result=code)
        return SubmitResult(success=False, hash=tx_hash, result_code=code)

    def _execute(self, intent: TransactionIntent, signer: WalletKey) -> SubmitResult:
        account = self._accounts.get(intent.account)
        if account is None or signer.address != intent.account or signer.seed != account.seed:
            return self._reject(intent, "tefBAD_AUTH", consume_sequence=False)

        if intent.sequence is not None and intent.sequence != account.sequence:
            code = "tefPAST_SEQ" if intent.sequence < account.sequence else "terPRE_SEQ"
            return self._reject(intent, code, consume_sequence=False)

        handlers = {
            LedgerTransactionType.ESCROW_CREATE: self._escrow_create,
            LedgerTransactionType.ESCROW_FINISH: self._escrow_finish,
            LedgerTransactionType.ESCROW_CANCEL: self._escrow_cancel,
            LedgerTransactionType.CREDENTIAL_CREATE: self._credential_create,
            LedgerTransactionType.CREDENTIAL_ACCEPT: self._credential_accept,
            LedgerTransactionType.CREDENTIAL_DELETE: self._credential_delete,
            LedgerTransactionType.DID_SET: self._did_set,
            LedgerTransactionType.TRUST_SET: self._trust_set,
        }
        sequence = account.sequence
        tx_hash = self._next_hash(intent)
        try:
            handlers[intent.transaction_type](account, intent, sequence, tx_hash)
        except _Rejected as rejected:
            self._remember(intent, sequence, tx_hash, rejected.code)
            account.sequence += 1
            logger.debug(
                "ledger.sim.rejected",
                tx_type=intent.transaction_type.value,
                result=rejected.code,
            )
            return SubmitResult(
                success=False,
                hash=tx_hash,
                result_code=rejected.code,
                assigned_sequence=sequence,
            )

        self._remember(intent, sequence, tx_hash, SUCCESS_CODE)
        account.sequence += 1
        return SubmitResult(
            success=True,
            hash=tx_hash,
            result_code=SUCCESS_CODE,
            assigned_sequence=sequence,
        )

    # --- Amount movement ---

    def _debit(self, account: _Account, amount: str | dict[str, str]) -> None:
        if isinstance(amount, str):
            if account.balance < int(amount):
                raise _Rejected("tecUNFUNDED")
            account.balance -= int(amount)
            return
        line = (amount["currency"], amount["issuer"])
        value = Decimal(amount["value"])
        if account.tokens.get(line, Decimal(0)) < value:
            raise _Rejected("tecUNFUNDED")
        account.tokens[line] -= value

    def _credit(self, address: str, amount: str | dict[str, str]) -> None:
        account = self._accounts[address]
        if isinstance(amount, str):
            account.balance += int(amount)
            return
        line = (amount["currency"], amount["issuer"])
        account.tokens[line] = account.tokens.get(line, Decimal(0)) + Decimal(amount["value"])

    # --- Escrow ---

    def _escrow_create(
        self, account: _Account, intent: TransactionIntent, sequence: int, tx_hash: str
    ) -> None:
        fields = intent.fields
        destination = fields["Destination"]
        if destination not in self._accounts:
            raise _Rejected("tecNO_DST")
        cancel_after = fields.get("CancelAfter")
        finish_after = fields.get("FinishAfter")
        now = self.ledger_time()
        if cancel_after is not None and cancel_after <= now:
            raise _Rejected("tecNO_PERMISSION")
        if finish_after is not None and cancel_after is not None and finish_after >= cancel_after:
            raise _Rejected("temBAD_EXPIRATION")

        amount = fields["Amount"]
        if not isinstance(amount, str):
            line = (amount["currency"], amount["issuer"])
            if line not in self._accounts[destination].trust_lines:
                raise _Rejected("tecNO_LINE")
        self._debit(account, amount)

        node = {
            "LedgerEntryType": "Escrow",
            "Account": intent.account,
            "Destination": destination,
            "Amount": amount,
            "Condition": fields.get("Condition"),
            "CancelAfter": cancel_after,
            "PreviousTxnID": tx_hash,
        }
        if finish_after is not None:
            node["FinishAfter"] = finish_after
        if "Memos" in fields:
            node["Memos"] = fields["Memos"]
        self._escrows[(intent.account, sequence)] = node

    def _escrow_finish(
        self, account: _Account, intent: TransactionIntent, sequence: int, tx_hash: str
    ) -> None:
        key = (intent.fields["Owner"], intent.fields["OfferSequence"])
        node = self._escrows.get(key)
        if node is None:
            raise _Rejected("tecNO_TARGET")
        now = self.ledger_time()
        if node.get("FinishAfter") is not None and now <= node["FinishAfter"]:
            raise _Rejected("tecNO_PERMISSION")
        if node.get("CancelAfter") is not None and now > node["CancelAfter"]:
            raise _Rejected("tecNO_PERMISSION")
        if node.get("Condition"):
            condition = intent.fields.get("Condition", "")
            fulfillment = intent.fields.get("Fulfillment", "")
            if condition.upper() != node["Condition"].upper() or not fulfillment_matches(
                node["Condition"], fulfillment
            ):
                raise _Rejected("tecCRYPTOCONDITION_ERROR")

        del self._escrows[key]
        self._credit(node["Destination"], node["Amount"])

    def _escrow_cancel(
        self, account: _Account, intent: TransactionIntent, sequence: int, tx_hash: str
    ) -> None:
        key = (intent.fields["Owner"], intent.fields["OfferSequence"])
        node = self._escrows.get(key)
        if node is None:
            raise _Rejected("tecNO_TARGET")
        if node.get("CancelAfter") is None or self.ledger_time() <= node["CancelAfter"]:
            raise _Rejected("tecNO_PERMISSION")

        del self._escrows[key]
        self._credit(node["Account"], node["Amount"])

    # --- Identity ---

    def _credential_create(
        self, account: _Account, intent: TransactionIntent, sequence: int, tx_hash: str
    ) -> None:
        subject = intent.fields["Subject"]
        if subject not in self._accounts:
            raise _Rejected("tecNO_TARGET")
        credential_type = hex_to_str(intent.fields["CredentialType"])
        key = (intent.account, subject, credential_type)
        if key in self._credentials:
            raise _Rejected("tecDUPLICATE")
        node: dict[str, Any] = {"Flags": 0, "PreviousTxnID": tx_hash}
        if "Expiration" in intent.fields:
            node["Expiration"] = intent.fields["Expiration"]
        self._credentials[key] = node

    def _credential_accept(
        self, account: _Account, intent: TransactionIntent, sequence: int, tx_hash: str
    ) -> None:
        credential_type = hex_to_str(intent.fields["CredentialType"])
        key = (intent.fields["Issuer"], intent.account, credential_type)
        node = self._credentials.get(key)
        if node is None:
            raise _Rejected("tecNO_ENTRY")
        if node["Flags"] & LSF_ACCEPTED:
            raise _Rejected("tecDUPLICATE")
        expiration = node.get("Expiration")
        if expiration is not None and expiration <= self.ledger_time():
            raise _Rejected("tecEXPIRED")
        node["Flags"] |= LSF_ACCEPTED
        node["PreviousTxnID"] = tx_hash

    def _credential_delete(
        self, account: _Account, intent: TransactionIntent, sequence: int, tx_hash: str
    ) -> None:
        issuer = intent.fields.get("Issuer", intent.account)
        subject = intent.fields.get("Subject", intent.account)
        key = (issuer, subject, hex_to_str(intent.fields["CredentialType"]))
        node = self._credentials.get(key)
        if node is None:
            raise _Rejected("tecNO_ENTRY")
        expiration = node.get("Expiration")
        expired = expiration is not None and expiration <= self.ledger_time()
        if intent.account not in (issuer, subject) and not expired:
            raise _Rejected("tecNO_PERMISSION")
        del self._credentials[key]

    def _did_set(
        self, account: _Account, intent: TransactionIntent, sequence: int, tx_hash: str
    ) -> None:
        account.did_uri = hex_to_str(intent.fields["URI"])

    def _trust_set(
        self, account: _Account, intent: TransactionIntent, sequence: int, tx_hash: str
    ) -> None:
        limit = intent.fields["LimitAmount"]
        if not limit["issuer"]:
            raise _Rejected("temDST_NEEDED")
        account.trust_lines[(limit["currency"], limit["issuer"])] = limit["value"]
