"""Tests for milestone allocation and balance derivation."""

from __future__ import annotations

from decimal import Decimal
from types import SimpleNamespace

import pytest

from trade_settlement.domain.balances import (
    check_balances,
    derive_balances,
    split_amount,
    validate_percentages,
)
from trade_settlement.domain.exceptions import BalanceInconsistencyError, ValidationError


def _milestone(amount: str, status: str = "Pending", escrow_status: str | None = "created"):  # noqa: ANN202
    escrow = None
    if escrow_status is not None:
        escrow = SimpleNamespace(status=escrow_status, transaction_hash="AB" * 32)
    return SimpleNamespace(amount=Decimal(amount), status=status, escrow=escrow)


class TestValidatePercentages:
    def test_accepts_hundred(self) -> None:
        validate_percentages([30, 40, 30])
        validate_percentages([100])

    @pytest.mark.parametrize("percentages", [[30, 40], [50, 60], [], [0, 100], [-10, 110]])
    def test_rejects_invalid(self, percentages: list[int]) -> None:
        with pytest.raises(ValidationError) as exc_info:
            validate_percentages(percentages)
        assert exc_info.value.code == "VALIDATION_ERROR"


class TestSplitAmount:
    def test_scenario_a(self) -> None:
        assert split_amount(Decimal("500"), [30, 40, 30]) == [
            Decimal("150"),
            Decimal("200"),
            Decimal("150"),
        ]

    def test_remainder_goes_to_last_milestone(self) -> None:
        shares = split_amount(Decimal("0.000010"), [33, 33, 34])
        assert shares == [Decimal("0.000003"), Decimal("0.000003"), Decimal("0.000004")]
        assert sum(shares) == Decimal("0.000010")

    def test_shares_always_sum_to_amount(self) -> None:
        amount = Decimal("1000.01")
        assert sum(split_amount(amount, [33, 33, 34])) == amount


class TestDeriveBalances:
    def test_draft_has_no_balances(self) -> None:
        derived = derive_balances("draft", [_milestone("100")])
        assert derived.escrow == 0
        assert derived.supplier == 0

    def test_partially_released(self) -> None:
        milestones = [
            _milestone("150", status="Released", escrow_status="finished"),
            _milestone("200"),
            _milestone("150"),
        ]
        derived = derive_balances("active", milestones)
        assert derived.escrow == Decimal("350")
        assert derived.supplier == Decimal("150")

    def test_escrow_without_ledger_hash_is_not_locked(self) -> None:
        milestone = _milestone("100")
        milestone.escrow.transaction_hash = None
        assert derive_balances("funded", [milestone]).escrow == 0


class TestCheckBalances:
    def test_consistent_cache(self) -> None:
        deal = SimpleNamespace(
            id="d-1",
            status="funded",
            milestones=[_milestone("100")],
            escrow_balance=Decimal("100"),
            supplier_balance=Decimal("0"),
        )
        assert check_balances(deal).escrow == Decimal("100")

    def test_divergent_cache_raises(self) -> None:
        deal = SimpleNamespace(
            id="d-1",
            status="funded",
            milestones=[_milestone("100")],
            escrow_balance=Decimal("40"),
            supplier_balance=Decimal("60"),
        )
        with pytest.raises(BalanceInconsistencyError) as exc_info:
            check_balances(deal)
        assert exc_info.value.code == "BALANCE_INCONSISTENCY"
