from __future__ import annotations

from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models.base import AmountBounds
from .models.fraud import FraudGateConfig


class Settings(BaseSettings):
    """
    Process-wide configuration, read from ``LOYALTY_*`` environment variables
    or a local ``.env`` file.
    """

    model_config = SettingsConfigDict(
        env_prefix="LOYALTY_", env_file=".env", extra="ignore"
    )

    environment: Literal["development", "production", "test"] = "development"
    log_level: str = "INFO"

    mongo_uri: Optional[str] = None
    mongo_db: str = "loyalty_ledger"
    mongo_transactions: bool = Field(
        default=True,
        description=(
            "Wrap atomic units in a MongoDB session transaction. Requires a replica "
            "set or sharded cluster; the MongoDB backend refuses to start without it."
        ),
    )

    audit_log_path: Path = Path("logs/loyalty_audit.log")

    fraud_velocity_window_minutes: int = 60
    fraud_max_mints_per_window: int = 10
    fraud_large_amount_threshold: Decimal = Decimal("10000")

    max_metadata_bytes: int = 8192
    amount_max_digits: int = 20
    amount_max_scale: int = 8
    strict_balance_invariant: bool = False
    ledger_page_max: int = 200

    identity_mode: Literal["static", "trusted_header"] = "trusted_header"
    dev_user_id: str = "dev-user-id"
    identity_header: str = "X-User-Id"
    api_key_header: str = "X-API-Key"

    lock_timeout_seconds: float = 5.0
    lock_lease_seconds: float = 30.0

    def amount_bounds(self) -> AmountBounds:
        return AmountBounds(
            max_digits=self.amount_max_digits, max_scale=self.amount_max_scale
        )

    def fraud_config(self) -> FraudGateConfig:
        return FraudGateConfig(
            window_minutes=self.fraud_velocity_window_minutes,
            max_mints_per_window=self.fraud_max_mints_per_window,
            large_amount_threshold=self.fraud_large_amount_threshold,
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
