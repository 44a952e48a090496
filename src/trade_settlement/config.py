"""Application configuration via pydantic-settings.

Reads from .env file or environment variables. All settings are validated
at startup. An inconsistent escrow deadline configuration or a development
encryption key in production fails fast with a clear error message.

Usage:
    from trade_settlement.config import get_settings
    settings = get_settings()
    print(settings.ledger_ws_url)
"""

from __future__ import annotations

from decimal import Decimal
from functools import lru_cache
from typing import Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEV_ENCRYPTION_KEY = "development-key-do-not-use-in-production"


class Settings(BaseSettings):
    """Central configuration for the settlement core."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Application ---
    app_env: Literal["development", "staging", "production"] = "development"
    app_log_level: str = "DEBUG"

    # --- Database (PostgreSQL) ---
    database_url: str = (
        "postgresql+asyncpg://settlement:settlement_dev"
        "@localhost:5432/trade_settlement"
    )
    db_pool_size: int = 10
    db_max_overflow: int = 20
    db_pool_timeout: int = 30
    db_echo_sql: bool = False

    # --- Ledger (XRPL) ---
    ledger_network: str = "testnet"
    ledger_ws_url: str = "wss://s.altnet.rippletest.net:51233"
    ledger_submit_timeout_seconds: float = 60.0
    ledger_query_max_attempts: int = 3
    ledger_epoch_offset: int = 946684800

    # --- Settlement asset ---
    # "XRP" settles natively in drops; any other value is an issued token.
    settlement_asset: str = "XRP"
    settlement_token_currency: str = "USD"
    settlement_token_issuer: str = "rQhWct2fv4Vc4KRjRgMrxa8xPN9Zx9iLKV"
    settlement_trust_limit: str = "1000000"
    # Deal-currency units per one unit of the settlement asset.
    settlement_unit_rate: Decimal = Decimal("100")

    # --- Escrow deadlines ---
    escrow_default_cancel_after_days: int = 30
    escrow_default_finish_after_days: int = 0

    # --- Credentials ---
    credential_type: str = "BusinessVerification"
    credential_expiration_days: int = 365
    milestone_credential_label: str = "Certified Inspector"
    credential_provider: str = "Trade Settlement Platform"
    # Base of the DID URI and the DID document's profile service endpoint.
    identity_base_url: str = "https://settlement.example.org"

    # --- Deal policy ---
    default_currency: str = "USD"
    require_facilitator_verification: bool = False

    # --- Secrets ---
    encryption_key: str = DEV_ENCRYPTION_KEY

    @model_validator(mode="after")
    def _check_consistency(self) -> Settings:
        if self.escrow_default_cancel_after_days <= 0:
            raise ValueError("escrow_default_cancel_after_days must be positive")
        if self.escrow_default_finish_after_days < 0:
            raise ValueError("escrow_default_finish_after_days must not be negative")
        if (
            self.escrow_default_finish_after_days > 0
            and self.escrow_default_cancel_after_days <= self.escrow_default_finish_after_days
        ):
            raise ValueError(
                "escrow_default_cancel_after_days must exceed "
                "escrow_default_finish_after_days"
            )
        if self.settlement_unit_rate <= 0:
            raise ValueError("settlement_unit_rate must be positive")
        if self.app_env == "production" and self.encryption_key == DEV_ENCRYPTION_KEY:
            raise ValueError("ENCRYPTION_KEY must be set in production")
        return self

    @property
    def is_development(self) -> bool:
        return self.app_env == "development"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached singleton of the application settings."""
    return Settings()
