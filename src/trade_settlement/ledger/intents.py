"""Builders for the transactions the settlement core submits.

Each builder returns a TransactionIntent in XRPL JSON form. Amount and hex
encodings use xrpl-py's helpers so both gateways see exactly what the network
would.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from xrpl.utils import str_to_hex, xrp_to_drops

from trade_settlement.domain.balances import quantize_amount
from trade_settlement.domain.enums import LedgerTransactionType
from trade_settlement.ledger.protocol import TransactionIntent

if TYPE_CHECKING:
    from trade_settlement.config import Settings
    from trade_settlement.domain.ledger_time import EscrowDeadlines

MEMO_TYPE = "x-trade-settlement"


@dataclass(frozen=True)
class SettlementAsset:
    """The single asset a deal settles in: native XRP or one issued token."""

    code: str
    currency: str | None = None
    issuer: str | None = None

    @property
    def is_native(self) -> bool:
        return self.code.upper() == "XRP"

    @classmethod
    def from_settings(cls, settings: Settings, code: str | None = None) -> SettlementAsset:
        code = code or settings.settlement_asset
        if code.upper() == "XRP":
            return cls(code="XRP")
        return cls(
            code=code,
            currency=settings.settlement_token_currency,
            issuer=settings.settlement_token_issuer,
        )


def encode_currency(code: str) -> str:
    """Standard 3-letter codes pass through; longer codes use the 160-bit hex form."""
    if len(code) == 3:
        return code
    return str_to_hex(code).upper().ljust(40, "0")


def settlement_amount(amount: Decimal, asset: SettlementAsset) -> str | dict[str, str]:
    """Encode a settlement-unit amount as an XRPL Amount field."""
    if asset.is_native:
        return xrp_to_drops(quantize_amount(amount))
    return {
        "currency": encode_currency(asset.currency or asset.code),
        "issuer": asset.issuer or "",
        "value": format(quantize_amount(amount).normalize(), "f"),
    }


def _memos(idempotency_key: str) -> list[dict[str, Any]]:
    return [
        {
            "Memo": {
                "MemoType": str_to_hex(MEMO_TYPE).upper(),
                "MemoData": str_to_hex(idempotency_key).upper(),
            }
        }
    ]


def escrow_create_intent(
    owner: str,
    destination: str,
    amount: Decimal,
    condition: str,
    deadlines: EscrowDeadlines,
    asset: SettlementAsset,
    idempotency_key: str | None = None,
    sequence: int | None = None,
) -> TransactionIntent:
    fields: dict[str, Any] = {
        "Destination": destination,
        "Amount": settlement_amount(amount, asset),
        "Condition": condition,
        "CancelAfter": deadlines.cancel_after,
    }
    if deadlines.finish_after is not None:
        fields["FinishAfter"] = deadlines.finish_after
    if idempotency_key:
        fields["Memos"] = _memos(idempotency_key)
    return TransactionIntent(
        transaction_type=LedgerTransactionType.ESCROW_CREATE,
        account=owner,
        fields=fields,
        sequence=sequence,
        idempotency_key=idempotency_key,
    )


def escrow_finish_intent(
    finisher: str,
    owner: str,
    offer_sequence: int,
    condition: str,
    fulfillment: str,
    sequence: int | None = None,
) -> TransactionIntent:
    return TransactionIntent(
        transaction_type=LedgerTransactionType.ESCROW_FINISH,
        account=finisher,
        fields={
            "Owner": owner,
            "OfferSequence": offer_sequence,
            "Condition": condition,
            "Fulfillment": fulfillment,
        },
        sequence=sequence,
    )


def escrow_cancel_intent(account: str, owner: str, offer_sequence: int) -> TransactionIntent:
    return TransactionIntent(
        transaction_type=LedgerTransactionType.ESCROW_CANCEL,
        account=account,
        fields={"Owner": owner, "OfferSequence": offer_sequence},
    )


def credential_create_intent(
    issuer: str,
    subject: str,
    credential_type: str,
    expiration: int | None = None,
    uri: str | None = None,
) -> TransactionIntent:
    fields: dict[str, Any] = {
        "Subject": subject,
        "CredentialType": str_to_hex(credential_type).upper(),
    }
    if expiration is not None:
        fields["Expiration"] = expiration
    if uri:
        fields["URI"] = str_to_hex(uri).upper()
    return TransactionIntent(
        transaction_type=LedgerTransactionType.CREDENTIAL_CREATE,
        account=issuer,
        fields=fields,
    )


def credential_accept_intent(subject: str, issuer: str, credential_type: str) -> TransactionIntent:
    return TransactionIntent(
        transaction_type=LedgerTransactionType.CREDENTIAL_ACCEPT,
        account=subject,
        fields={"Issuer": issuer, "CredentialType": str_to_hex(credential_type).upper()},
    )


def credential_delete_intent(
    account: str, issuer: str, subject: str, credential_type: str
) -> TransactionIntent:
    """Remove a credential; anyone may delete one that has expired."""
    return TransactionIntent(
        transaction_type=LedgerTransactionType.CREDENTIAL_DELETE,
        account=account,
        fields={
            "Issuer": issuer,
            "Subject": subject,
            "CredentialType": str_to_hex(credential_type).upper(),
        },
    )


def did_set_intent(account: str, uri: str) -> TransactionIntent:
    return TransactionIntent(
        transaction_type=LedgerTransactionType.DID_SET,
        account=account,
        fields={"URI": str_to_hex(uri).upper()},
    )


def trust_set_intent(account: str, asset: SettlementAsset, limit: str) -> TransactionIntent:
    return TransactionIntent(
        transaction_type=LedgerTransactionType.TRUST_SET,
        account=account,
        fields={
            "LimitAmount": {
                "currency": encode_currency(asset.currency or asset.code),
                "issuer": asset.issuer or "",
                "value": limit,
            }
        },
    )
