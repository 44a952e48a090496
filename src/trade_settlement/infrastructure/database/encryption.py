"""Encryption at rest for secret columns.

Escrow fulfillments and wallet seeds are capability tokens: anyone holding
one can release funds or sign for an account. They are stored as Fernet
tokens keyed by ``Settings.encryption_key`` and decrypted only when read
through the ORM attribute.
"""

from __future__ import annotations

import base64
import hashlib
from functools import lru_cache

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy import Text
from sqlalchemy.types import TypeDecorator

from trade_settlement.config import get_settings


@lru_cache(maxsize=4)
def _fernet(secret: str) -> Fernet:
    """Derive a Fernet key from an arbitrary-length secret."""
    digest = hashlib.sha256(secret.encode("utf-8")).digest()
    return Fernet(base64.urlsafe_b64encode(digest))


def encrypt_secret(plaintext: str, key: str | None = None) -> str:
    fernet = _fernet(key or get_settings().encryption_key)
    return fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")


def decrypt_secret(token: str, key: str | None = None) -> str:
    """Decrypt a stored secret.

    Raises:
        ValueError: If the token was not produced with the configured key.
    """
    fernet = _fernet(key or get_settings().encryption_key)
    try:
        return fernet.decrypt(token.encode("ascii")).decode("utf-8")
    except InvalidToken as err:
        raise ValueError("Stored secret cannot be decrypted with the configured key") from err


class EncryptedText(TypeDecorator):
    """Text column transparently encrypted with Fernet."""

    impl = Text
    cache_ok = True

    def process_bind_param(self, value, dialect):  # noqa: ANN001, ANN201
        if value is None:
            return None
        return encrypt_secret(value)

    def process_result_value(self, value, dialect):  # noqa: ANN001, ANN201
        if value is None:
            return None
        return decrypt_secret(value)
