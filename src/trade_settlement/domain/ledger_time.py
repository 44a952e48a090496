"""Conversions between Unix time and the ledger's native epoch.

The XRP Ledger counts seconds from 2000-01-01T00:00:00Z, which is
946684800 seconds after the Unix epoch. Escrow deadlines (CancelAfter,
FinishAfter) and credential expirations are expressed in ledger time.
"""

from __future__ import annotations

import time
from dataclasses import dataclass

RIPPLE_EPOCH_OFFSET = 946684800
SECONDS_PER_DAY = 86400


@dataclass(frozen=True)
class EscrowDeadlines:
    cancel_after: int
    finish_after: int | None = None


def to_ledger_epoch(unix_seconds: float, offset: int = RIPPLE_EPOCH_OFFSET) -> int:
    return int(unix_seconds) - offset


def from_ledger_epoch(ledger_seconds: int, offset: int = RIPPLE_EPOCH_OFFSET) -> int:
    return ledger_seconds + offset


def ledger_now(offset: int = RIPPLE_EPOCH_OFFSET, now: float | None = None) -> int:
    return to_ledger_epoch(time.time() if now is None else now, offset)


def compute_deadlines(
    now_unix: float,
    cancel_after_days: int,
    finish_after_days: int = 0,
    offset: int = RIPPLE_EPOCH_OFFSET,
) -> EscrowDeadlines:
    """Compute escrow deadlines in ledger time.

    ``finish_after`` is omitted when ``finish_after_days`` is zero.

    Raises:
        ValueError: If the cancel deadline would not follow the finish deadline.
    """
    if cancel_after_days <= 0:
        raise ValueError("cancel_after_days must be positive")
    if finish_after_days < 0:
        raise ValueError("finish_after_days must not be negative")

    base = to_ledger_epoch(now_unix, offset)
    cancel_after = base + cancel_after_days * SECONDS_PER_DAY
    finish_after = base + finish_after_days * SECONDS_PER_DAY if finish_after_days > 0 else None

    if finish_after is not None and cancel_after <= finish_after:
        raise ValueError(
            f"cancel_after ({cancel_after}) must exceed finish_after ({finish_after})"
        )
    return EscrowDeadlines(cancel_after=cancel_after, finish_after=finish_after)


def expiration_after_days(
    now_unix: float, days: int, offset: int = RIPPLE_EPOCH_OFFSET
) -> int:
    """Ledger-time expiration ``days`` from ``now_unix``."""
    return to_ledger_epoch(now_unix + days * SECONDS_PER_DAY, offset)
