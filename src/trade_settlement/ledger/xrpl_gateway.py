"""Ledger Gateway backed by xrpl-py.

Submissions go through ``submit_and_wait`` (autofill, sign, submit, wait for
validation) bounded by a timeout; a timeout or a dropped socket is surfaced
as LedgerUnavailableError because the transaction may still validate.
Read-only queries are retried with tenacity exponential backoff.
"""

from __future__ import annotations

import asyncio
import re
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from xrpl.asyncio.clients import XRPLRequestFailureException
from xrpl.asyncio.clients.exceptions import XRPLWebsocketException
from xrpl.asyncio.transaction import XRPLReliableSubmissionException, submit_and_wait
from xrpl.asyncio.wallet import generate_faucet_wallet
from xrpl.models.requests import AccountInfo, AccountTx, LedgerEntry
from xrpl.models.requests.ledger_entry import Credential as CredentialLocator
from xrpl.models.requests.ledger_entry import Escrow as EscrowLocator
from xrpl.models.transactions.transaction import Transaction
from xrpl.utils import drops_to_xrp, hex_to_str, str_to_hex
from xrpl.wallet import Wallet

from trade_settlement.config import get_settings
from trade_settlement.domain.exceptions import LedgerRejectedError, LedgerUnavailableError
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
    from trade_settlement.ledger.session import LedgerSession

logger = get_logger(__name__)

_RESULT_CODE = re.compile(r"\b(te[cfmlr][A-Z_]+|ter[A-Z_]+|tel[A-Z_]+)\b")
_TRANSPORT_ERRORS = (OSError, TimeoutError, XRPLWebsocketException)
_HISTORY_PAGE_SIZE = 200
_HISTORY_MAX_PAGES = 5


def extract_result_code(message: str) -> str:
    """Pull the engine result code out of an xrpl-py error message."""
    match = _RESULT_CODE.search(message)
    return match.group(1) if match else "rejected"


def parse_submit_response(result: dict[str, Any]) -> SubmitResult:
    """Map a validated transaction response onto the gateway result type."""
    meta = result.get("meta")
    code = meta.get("TransactionResult", "unknown") if isinstance(meta, dict) else "unknown"
    tx_json = result.get("tx_json", result)
    return SubmitResult(
        success=code == SUCCESS_CODE,
        hash=result.get("hash", ""),
        result_code=code,
        assigned_sequence=tx_json.get("Sequence"),
    )


def parse_credential_node(node: dict[str, Any]) -> LedgerCredential:
    return LedgerCredential(
        issuer=node.get("Issuer", ""),
        subject=node.get("Subject", ""),
        credential_type=hex_to_str(node.get("CredentialType", "")),
        accepted=bool(int(node.get("Flags", 0)) & LSF_ACCEPTED),
        expiration=node.get("Expiration"),
        transaction_hash=node.get("PreviousTxnID", ""),
    )


def parse_account_tx_entry(entry: dict[str, Any]) -> LedgerTransaction | None:
    """Map one ``account_tx`` entry (API v1 or v2 shape); None if not validated."""
    tx_json = entry.get("tx_json") or entry.get("tx")
    if not isinstance(tx_json, dict) or not entry.get("validated", False):
        return None
    meta = entry.get("meta")
    code = meta.get("TransactionResult", "unknown") if isinstance(meta, dict) else "unknown"
    return LedgerTransaction(
        hash=entry.get("hash") or tx_json.get("hash", ""),
        transaction_type=tx_json.get("TransactionType", ""),
        result_code=code,
        sequence=int(tx_json.get("Sequence", 0)),
        fields={
            k: v for k, v in tx_json.items()
            if k not in ("TransactionType", "Account", "Sequence")
        },
    )


class XrplLedgerGateway:
    """LedgerGateway implementation over an injected LedgerSession."""

    def __init__(
        self,
        session: LedgerSession,
        submit_timeout_seconds: float | None = None,
        query_attempts: int | None = None,
    ) -> None:
        settings = get_settings()
        self._session = session
        self._submit_timeout = submit_timeout_seconds or settings.ledger_submit_timeout_seconds
        self._query_attempts = query_attempts or settings.ledger_query_max_attempts

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def submit_and_confirm(
        self, intent: TransactionIntent, signer: WalletKey
    ) -> SubmitResult:
        if signer.address != intent.account:
            raise ValueError("Signer does not match the transaction account")

        transaction = Transaction.from_xrpl(intent.to_xrpl())
        wallet = Wallet.from_seed(signer.seed)

        try:
            async with self._session.acquire() as client:
                response = await asyncio.wait_for(
                    submit_and_wait(transaction, client, wallet),
                    timeout=self._submit_timeout,
                )
        except XRPLReliableSubmissionException as exc:
            code = extract_result_code(str(exc))
            logger.warning(
                "ledger.submit_rejected",
                tx_type=intent.transaction_type.value,
                account=intent.account,
                result=code,
            )
            return SubmitResult(success=False, hash="", result_code=code)
        except XRPLRequestFailureException as exc:
            code = getattr(exc, "error", None) or extract_result_code(str(exc))
            logger.warning(
                "ledger.submit_request_failed",
                tx_type=intent.transaction_type.value,
                account=intent.account,
                result=code,
            )
            return SubmitResult(success=False, hash="", result_code=str(code))
        except _TRANSPORT_ERRORS as exc:
            logger.error(
                "ledger.submit_outcome_unknown",
                tx_type=intent.transaction_type.value,
                account=intent.account,
                error=str(exc) or type(exc).__name__,
            )
            raise LedgerUnavailableError(
                f"{intent.transaction_type.value} outcome unknown: {exc or type(exc).__name__}"
            ) from exc

        result = parse_submit_response(response.result)
        logger.info(
            "ledger.submitted",
            tx_type=intent.transaction_type.value,
            account=intent.account,
            hash=result.hash,
            result=result.result_code,
            sequence=result.assigned_sequence,
        )
        return result

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def _request(self, request: Any) -> Any:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._query_attempts),
            wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
            retry=retry_if_exception_type(LedgerUnavailableError),
            reraise=True,
        ):
            with attempt:
                try:
                    async with self._session.acquire() as client:
                        return await client.request(request)
                except _TRANSPORT_ERRORS as exc:
                    logger.warning("ledger.query_failed", error=str(exc) or type(exc).__name__)
                    raise LedgerUnavailableError(f"Ledger query failed: {exc}") from exc
        raise LedgerUnavailableError("Ledger query retries exhausted")  # pragma: no cover

    async def get_settlement_object(
        self, owner: str, sequence: int
    ) -> dict[str, Any] | None:
        response = await self._request(
            LedgerEntry(
                escrow=EscrowLocator(owner=owner, seq=sequence),
                ledger_index="validated",
            )
        )
        if not response.is_successful():
            return None
        return response.result.get("node")

    async def get_credential_object(
        self, issuer: str, subject: str, credential_type: str
    ) -> LedgerCredential | None:
        response = await self._request(
            LedgerEntry(
                credential=CredentialLocator(
                    issuer=issuer,
                    subject=subject,
                    credential_type=str_to_hex(credential_type).upper(),
                ),
                ledger_index="validated",
            )
        )
        if not response.is_successful():
            return None
        return parse_credential_node(response.result.get("node", {}))

    async def get_transaction(
        self, account: str, sequence: int
    ) -> LedgerTransaction | None:
        # Newest first; an account's sequences only grow, so stop once past it.
        marker = None
        for _ in range(_HISTORY_MAX_PAGES):
            response = await self._request(
                AccountTx(
                    account=account,
                    forward=False,
                    limit=_HISTORY_PAGE_SIZE,
                    marker=marker,
                )
            )
            if not response.is_successful():
                return None
            for entry in response.result.get("transactions", []):
                found = parse_account_tx_entry(entry)
                if found is None or found.sequence == 0:
                    continue
                if found.sequence == sequence:
                    return found
                if found.sequence < sequence:
                    return None
            marker = response.result.get("marker")
            if marker is None:
                return None
        logger.warning("ledger.history_search_exhausted", account=account, sequence=sequence)
        return None

    async def get_account_state(self, address: str) -> AccountState:
        response = await self._request(
            AccountInfo(account=address, ledger_index="validated")
        )
        if not response.is_successful():
            raise LedgerRejectedError("AccountInfo", response.result.get("error", "unknown"))
        data = response.result["account_data"]
        return AccountState(balance=data["Balance"], sequence=int(data["Sequence"]))

    async def provision_wallet(self) -> ProvisionedWallet:
        try:
            async with self._session.acquire() as client:
                wallet = await generate_faucet_wallet(client)
        except _TRANSPORT_ERRORS as exc:
            raise LedgerUnavailableError(f"Faucet request failed: {exc}") from exc

        state = await self.get_account_state(wallet.address)
        logger.info("ledger.wallet_provisioned", address=wallet.address)
        return ProvisionedWallet(
            key=WalletKey(address=wallet.address, public_key=wallet.public_key, seed=wallet.seed),
            balance=Decimal(drops_to_xrp(state.balance)),
        )
