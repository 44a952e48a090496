"""Tests for the xrpl-py backed gateway, with the network mocked out."""

from __future__ import annotations

from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from xrpl.asyncio.transaction import XRPLReliableSubmissionException
from xrpl.utils import str_to_hex
from xrpl.wallet import Wallet

from trade_settlement.domain.exceptions import LedgerRejectedError, LedgerUnavailableError
from trade_settlement.ledger.intents import escrow_cancel_intent
from trade_settlement.ledger.protocol import LSF_ACCEPTED, WalletKey
from trade_settlement.ledger.xrpl_gateway import (
    XrplLedgerGateway,
    extract_result_code,
    parse_account_tx_entry,
    parse_credential_node,
    parse_submit_response,
)

SUBMIT_AND_WAIT = "trade_settlement.ledger.xrpl_gateway.submit_and_wait"


class _FakeSession:
    def __init__(self, client: MagicMock) -> None:
        self.client = client

    @asynccontextmanager
    async def acquire(self):  # noqa: ANN202
        yield self.client


def _response(result: dict, successful: bool = True) -> MagicMock:
    response = MagicMock()
    response.result = result
    response.is_successful = MagicMock(return_value=successful)
    return response


@pytest.fixture
def wallet() -> Wallet:
    return Wallet.create()


@pytest.fixture
def signer(wallet: Wallet) -> WalletKey:
    return WalletKey(address=wallet.address, public_key=wallet.public_key, seed=wallet.seed)


@pytest.fixture
def client() -> MagicMock:
    client = MagicMock()
    client.request = AsyncMock()
    return client


@pytest.fixture
def gateway(client: MagicMock) -> XrplLedgerGateway:
    return XrplLedgerGateway(_FakeSession(client), submit_timeout_seconds=5, query_attempts=2)


class TestParsing:
    def test_extract_result_code(self) -> None:
        assert extract_result_code("Transaction failed: tecNO_PERMISSION") == "tecNO_PERMISSION"
        assert extract_result_code("tefPAST_SEQ: sequence too old") == "tefPAST_SEQ"
        assert extract_result_code("something odd") == "rejected"

    def test_parse_submit_response(self) -> None:
        result = parse_submit_response(
            {
                "hash": "ABC",
                "meta": {"TransactionResult": "tesSUCCESS"},
                "tx_json": {"Sequence": 42},
            }
        )
        assert result.success
        assert result.hash == "ABC"
        assert result.assigned_sequence == 42

    def test_parse_failed_response(self) -> None:
        result = parse_submit_response({"hash": "ABC", "meta": {"TransactionResult": "tecUNFUNDED"}})
        assert not result.success
        assert result.result_code == "tecUNFUNDED"

    def test_parse_credential_node(self) -> None:
        credential = parse_credential_node(
            {
                "Issuer": "rIssuer",
                "Subject": "rSubject",
                "CredentialType": str_to_hex("BusinessVerification"),
                "Flags": LSF_ACCEPTED,
                "Expiration": 1000,
                "PreviousTxnID": "HASH",
            }
        )
        assert credential.accepted
        assert credential.credential_type == "BusinessVerification"
        assert credential.expiration == 1000

    def test_parse_account_tx_entry(self) -> None:
        entry = {
            "hash": "F1N",
            "validated": True,
            "meta": {"TransactionResult": "tesSUCCESS"},
            "tx_json": {
                "TransactionType": "EscrowFinish",
                "Account": "rSupplier",
                "Sequence": 7,
                "Owner": "rBuyer",
                "OfferSequence": 3,
            },
        }
        tx = parse_account_tx_entry(entry)
        assert tx.hash == "F1N"
        assert tx.success
        assert tx.sequence == 7
        assert tx.fields == {"Owner": "rBuyer", "OfferSequence": 3}

        legacy = parse_account_tx_entry(
            {"validated": True, "meta": {"TransactionResult": "tecNO_TARGET"},
             "tx": {"hash": "OLD", "TransactionType": "EscrowFinish", "Sequence": 8}}
        )
        assert legacy.hash == "OLD"
        assert not legacy.success
        assert parse_account_tx_entry({**entry, "validated": False}) is None


class TestSubmitAndConfirm:
    @pytest.mark.asyncio
    async def test_validated_success(self, gateway, signer) -> None:  # noqa: ANN001
        response = _response(
            {"hash": "F00D", "meta": {"TransactionResult": "tesSUCCESS"}, "tx_json": {"Sequence": 5}}
        )
        intent = escrow_cancel_intent(signer.address, signer.address, 3)
        with patch(SUBMIT_AND_WAIT, new=AsyncMock(return_value=response)) as submit:
            result = await gateway.submit_and_confirm(intent, signer)

        assert result.success
        assert result.hash == "F00D"
        assert result.assigned_sequence == 5
        transaction = submit.await_args.args[0]
        assert transaction.offer_sequence == 3

    @pytest.mark.asyncio
    async def test_engine_rejection_is_a_result(self, gateway, signer) -> None:  # noqa: ANN001
        intent = escrow_cancel_intent(signer.address, signer.address, 3)
        error = XRPLReliableSubmissionException("Transaction failed: tecNO_PERMISSION")
        with patch(SUBMIT_AND_WAIT, new=AsyncMock(side_effect=error)):
            result = await gateway.submit_and_confirm(intent, signer)

        assert not result.success
        assert result.result_code == "tecNO_PERMISSION"

    @pytest.mark.asyncio
    async def test_timeout_is_outcome_unknown(self, gateway, signer) -> None:  # noqa: ANN001
        intent = escrow_cancel_intent(signer.address, signer.address, 3)
        with patch(SUBMIT_AND_WAIT, new=AsyncMock(side_effect=TimeoutError())):
            with pytest.raises(LedgerUnavailableError, match="outcome unknown"):
                await gateway.submit_and_confirm(intent, signer)

    @pytest.mark.asyncio
    async def test_signer_must_match_account(self, gateway, signer) -> None:  # noqa: ANN001
        intent = escrow_cancel_intent(Wallet.create().address, signer.address, 3)
        with pytest.raises(ValueError, match="Signer"):
            await gateway.submit_and_confirm(intent, signer)


class TestQueries:
    @pytest.mark.asyncio
    async def test_escrow_found(self, gateway, client) -> None:  # noqa: ANN001
        client.request.return_value = _response({"node": {"Amount": "1000000"}})
        node = await gateway.get_settlement_object("rOwner", 4)
        assert node == {"Amount": "1000000"}

    @pytest.mark.asyncio
    async def test_escrow_missing(self, gateway, client) -> None:  # noqa: ANN001
        client.request.return_value = _response({"error": "entryNotFound"}, successful=False)
        assert await gateway.get_settlement_object("rOwner", 4) is None
        assert await gateway.get_credential_object("rIssuer", "rSubject", "KYC") is None

    @pytest.mark.asyncio
    async def test_account_state(self, gateway, client) -> None:  # noqa: ANN001
        client.request.return_value = _response(
            {"account_data": {"Balance": "25000000", "Sequence": 9}}
        )
        state = await gateway.get_account_state("rOwner")
        assert state.balance == "25000000"
        assert state.sequence == 9

    @pytest.mark.asyncio
    async def test_unknown_account(self, gateway, client) -> None:  # noqa: ANN001
        client.request.return_value = _response({"error": "actNotFound"}, successful=False)
        with pytest.raises(LedgerRejectedError) as exc_info:
            await gateway.get_account_state("rOwner")
        assert exc_info.value.result_code == "actNotFound"

    @pytest.mark.asyncio
    async def test_transport_errors_retried_then_raised(self, gateway, client) -> None:  # noqa: ANN001
        client.request.side_effect = OSError("socket closed")
        with pytest.raises(LedgerUnavailableError):
            await gateway.get_settlement_object("rOwner", 4)
        assert client.request.await_count == 2

    @pytest.mark.asyncio
    async def test_transient_error_recovers(self, gateway, client) -> None:  # noqa: ANN001
        client.request.side_effect = [OSError("blip"), _response({"node": {"Amount": "1"}})]
        assert await gateway.get_settlement_object("rOwner", 4) == {"Amount": "1"}


def _history_entry(sequence: int, result: str = "tesSUCCESS") -> dict:
    return {
        "hash": f"H{sequence}",
        "validated": True,
        "meta": {"TransactionResult": result},
        "tx_json": {"TransactionType": "EscrowFinish", "Account": "rSupplier", "Sequence": sequence},
    }


class TestTransactionLookup:
    @pytest.mark.asyncio
    async def test_found_on_second_page(self, gateway, client) -> None:  # noqa: ANN001
        client.request.side_effect = [
            _response({"transactions": [_history_entry(12), _history_entry(11)], "marker": "m1"}),
            _response({"transactions": [_history_entry(10, "tecNO_PERMISSION"), _history_entry(9)]}),
        ]
        tx = await gateway.get_transaction("rSupplier", 10)
        assert tx.hash == "H10"
        assert tx.result_code == "tecNO_PERMISSION"
        assert client.request.await_count == 2
        assert client.request.await_args_list[1].args[0].marker == "m1"

    @pytest.mark.asyncio
    async def test_stops_once_past_sequence(self, gateway, client) -> None:  # noqa: ANN001
        client.request.return_value = _response(
            {"transactions": [_history_entry(12), _history_entry(9)], "marker": "m1"}
        )
        assert await gateway.get_transaction("rSupplier", 10) is None
        assert client.request.await_count == 1

    @pytest.mark.asyncio
    async def test_unknown_account(self, gateway, client) -> None:  # noqa: ANN001
        client.request.return_value = _response({"error": "actNotFound"}, successful=False)
        assert await gateway.get_transaction("rNobody", 1) is None
