"""Tests for the transaction builders."""

from __future__ import annotations

from decimal import Decimal

from xrpl.utils import str_to_hex

from trade_settlement.domain.enums import LedgerTransactionType
from trade_settlement.domain.ledger_time import EscrowDeadlines
from trade_settlement.ledger.intents import (
    MEMO_TYPE,
    SettlementAsset,
    credential_create_intent,
    encode_currency,
    escrow_create_intent,
    settlement_amount,
)

OWNER = "rPT1Sjq2YGrBMTttX4GZHjKu9dyfzbpAYe"
DESTINATION = "rHb9CJAWyB4rj91VRWn96DkukG4bwdtyTh"
CONDITION = "A0258020" + "AB" * 32 + "810120"
TOKEN = SettlementAsset(code="USD", currency="USD", issuer="rIssuerAddress")


class TestSettlementAmount:
    def test_native_amount_in_drops(self) -> None:
        assert settlement_amount(Decimal("1.5"), SettlementAsset(code="XRP")) == "1500000"

    def test_token_amount_object(self) -> None:
        amount = settlement_amount(Decimal("1.500000"), TOKEN)
        assert amount == {"currency": "USD", "issuer": "rIssuerAddress", "value": "1.5"}

    def test_whole_token_amount_is_not_exponential(self) -> None:
        assert settlement_amount(Decimal("100"), TOKEN)["value"] == "100"


class TestEncodeCurrency:
    def test_standard_code_passes_through(self) -> None:
        assert encode_currency("USD") == "USD"

    def test_long_code_uses_hex_form(self) -> None:
        encoded = encode_currency("RLUSD")
        assert len(encoded) == 40
        assert encoded.startswith("524C555344")
        assert encoded.endswith("0" * 30)


class TestEscrowCreateIntent:
    def test_fields_and_memo(self) -> None:
        intent = escrow_create_intent(
            owner=OWNER,
            destination=DESTINATION,
            amount=Decimal("1.5"),
            condition=CONDITION,
            deadlines=EscrowDeadlines(cancel_after=800_000_000),
            asset=SettlementAsset(code="XRP"),
            idempotency_key="DEAL-2026-0001:0",
            sequence=7,
        )
        tx = intent.to_xrpl()
        assert tx["TransactionType"] == "EscrowCreate"
        assert tx["Account"] == OWNER
        assert tx["Amount"] == "1500000"
        assert tx["CancelAfter"] == 800_000_000
        assert tx["Sequence"] == 7
        assert "FinishAfter" not in tx

        memo = tx["Memos"][0]["Memo"]
        assert memo["MemoType"] == str_to_hex(MEMO_TYPE).upper()
        assert memo["MemoData"] == str_to_hex("DEAL-2026-0001:0").upper()

    def test_finish_after_and_autofilled_sequence(self) -> None:
        intent = escrow_create_intent(
            owner=OWNER,
            destination=DESTINATION,
            amount=Decimal("2"),
            condition=CONDITION,
            deadlines=EscrowDeadlines(cancel_after=900, finish_after=100),
            asset=SettlementAsset(code="XRP"),
        )
        tx = intent.to_xrpl()
        assert tx["FinishAfter"] == 100
        assert "Sequence" not in tx
        assert "Memos" not in tx


class TestCredentialCreateIntent:
    def test_hex_encoded_type_and_uri(self) -> None:
        intent = credential_create_intent(
            OWNER, DESTINATION, "BusinessVerification", expiration=1234, uri="https://kyc.test"
        )
        assert intent.transaction_type == LedgerTransactionType.CREDENTIAL_CREATE
        assert intent.fields["CredentialType"] == str_to_hex("BusinessVerification").upper()
        assert intent.fields["URI"] == str_to_hex("https://kyc.test").upper()
        assert intent.fields["Expiration"] == 1234
