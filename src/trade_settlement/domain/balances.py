"""Milestone amount allocation and balance derivation.

The deal's ``escrow_balance`` and ``supplier_balance`` columns are a cache.
The source of truth is the milestone list: released milestones belong to the
supplier, milestones whose escrow is still locked on-ledger belong to the
escrow. Services compare the cache with the derived values before every
release and refuse to proceed on divergence.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from decimal import ROUND_HALF_EVEN, Decimal
from typing import Any

from trade_settlement.domain.enums import DealStatus, EscrowRecordStatus, MilestoneStatus
from trade_settlement.domain.exceptions import BalanceInconsistencyError, ValidationError

AMOUNT_QUANTUM = Decimal("0.000001")
FULL_PERCENTAGE = 100


@dataclass(frozen=True)
class DerivedBalances:
    escrow: Decimal
    supplier: Decimal


def quantize_amount(value: Decimal) -> Decimal:
    return value.quantize(AMOUNT_QUANTUM, rounding=ROUND_HALF_EVEN)


def validate_percentages(percentages: Sequence[int]) -> None:
    """Raise ValidationError unless the percentages are positive and total 100."""
    if not percentages:
        raise ValidationError("A deal needs at least one milestone")
    if any(p <= 0 for p in percentages):
        raise ValidationError("Milestone percentages must be positive")
    total = sum(percentages)
    if total != FULL_PERCENTAGE:
        raise ValidationError(f"Milestone percentages must total 100%, got {total}%")


def split_amount(amount: Decimal, percentages: Sequence[int]) -> list[Decimal]:
    """Allocate ``amount`` across milestones by percentage.

    Each share is rounded to six decimal places; the rounding remainder goes
    to the last milestone so the shares always sum exactly to ``amount``.
    """
    validate_percentages(percentages)
    shares = [quantize_amount(amount * p / FULL_PERCENTAGE) for p in percentages]
    shares[-1] += quantize_amount(amount) - sum(shares)
    return shares


def _is_locked(milestone: Any) -> bool:
    escrow = getattr(milestone, "escrow", None)
    return (
        escrow is not None
        and escrow.status == EscrowRecordStatus.CREATED
        and bool(escrow.transaction_hash)
    )


def derive_balances(status: str, milestones: Iterable[Any]) -> DerivedBalances:
    """Derive escrow/supplier balances from milestone and escrow states.

    A draft deal has not been funded, so both balances are zero even if some
    escrows were created by an interrupted funding run.
    """
    if status == DealStatus.DRAFT:
        return DerivedBalances(escrow=Decimal(0), supplier=Decimal(0))

    escrow = Decimal(0)
    supplier = Decimal(0)
    for milestone in milestones:
        if milestone.status == MilestoneStatus.RELEASED:
            supplier += milestone.amount
        elif _is_locked(milestone):
            escrow += milestone.amount
    return DerivedBalances(escrow=quantize_amount(escrow), supplier=quantize_amount(supplier))


def check_balances(deal: Any) -> DerivedBalances:
    """Compare a deal's cached balances with the derived ones.

    Returns the derived balances.

    Raises:
        BalanceInconsistencyError: If the cache diverges from the milestones.
    """
    derived = derive_balances(deal.status, deal.milestones)
    stored = (quantize_amount(Decimal(deal.escrow_balance)), quantize_amount(Decimal(deal.supplier_balance)))
    if stored != (derived.escrow, derived.supplier):
        raise BalanceInconsistencyError(
            str(deal.id), stored=stored, derived=(derived.escrow, derived.supplier)
        )
    return derived
