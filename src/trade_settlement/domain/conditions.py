"""Hashlock condition generator (PREIMAGE-SHA-256 crypto-conditions).

Each milestone escrow is locked by a crypto-condition. The condition (the
commitment) is published on-ledger in EscrowCreate; the fulfillment (the
opening) stays in encrypted storage until the EscrowFinish that releases the
milestone.

Binary layout, as accepted by the XRP Ledger for a 32-byte preimage:

    condition   = A0 25  80 20 <sha256(preimage)>  81 01 20
    fulfillment = A0 22  80 20 <preimage>

``81 01 20`` is the cost field: the preimage length (32).
"""

from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass

PREIMAGE_LENGTH = 32

_CONDITION_PREFIX = bytes([0xA0, 0x25, 0x80, 0x20])
_CONDITION_SUFFIX = bytes([0x81, 0x01, PREIMAGE_LENGTH])
_FULFILLMENT_PREFIX = bytes([0xA0, 0x22, 0x80, 0x20])


@dataclass(frozen=True)
class ConditionPair:
    """A commitment/opening pair. ``repr`` never shows the secret halves."""

    condition: str
    fulfillment: str
    preimage: str

    def __repr__(self) -> str:
        return f"ConditionPair(condition={self.condition[:16]}...)"


def _encode_condition(preimage: bytes) -> str:
    digest = hashlib.sha256(preimage).digest()
    return (_CONDITION_PREFIX + digest + _CONDITION_SUFFIX).hex().upper()


def _encode_fulfillment(preimage: bytes) -> str:
    return (_FULFILLMENT_PREFIX + preimage).hex().upper()


def generate_condition() -> ConditionPair:
    """Draw a fresh 32-byte secret and return its condition and fulfillment.

    Every call draws new randomness; secrets are never reused across milestones.
    """
    preimage = secrets.token_bytes(PREIMAGE_LENGTH)
    return ConditionPair(
        condition=_encode_condition(preimage),
        fulfillment=_encode_fulfillment(preimage),
        preimage=preimage.hex(),
    )


def decode_fulfillment(fulfillment: str) -> bytes:
    """Return the preimage carried by a PREIMAGE-SHA-256 fulfillment.

    Raises:
        ValueError: If the hex string is not a 32-byte preimage fulfillment.
    """
    raw = bytes.fromhex(fulfillment)
    if len(raw) != len(_FULFILLMENT_PREFIX) + PREIMAGE_LENGTH or not raw.startswith(
        _FULFILLMENT_PREFIX
    ):
        raise ValueError("Not a PREIMAGE-SHA-256 fulfillment with a 32-byte preimage")
    return raw[len(_FULFILLMENT_PREFIX):]


def condition_from_fulfillment(fulfillment: str) -> str:
    """Derive the condition a fulfillment opens."""
    return _encode_condition(decode_fulfillment(fulfillment))


def fulfillment_matches(condition: str, fulfillment: str) -> bool:
    """Return True if ``fulfillment`` opens ``condition``."""
    try:
        derived = condition_from_fulfillment(fulfillment)
    except ValueError:
        return False
    return secrets.compare_digest(derived, condition.upper())
