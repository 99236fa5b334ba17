"""
runtime configuration, loaded from LOTTO_* environment variables (or .env).
"""

from decimal import Decimal
from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="LOTTO_",
        env_file=".env",
        extra="ignore",
    )

    # Database
    database_dsn: str = "dbname=lotto user=lotto password=secret host=localhost port=5432"

    # money math
    money_precision: Decimal = Decimal("0.01")
    min_cascade_remaining: Decimal = Decimal("0.01")

    # hierarchy
    max_hierarchy_depth: int = Field(100, gt=0)
    include_inactive_uplines: bool = True

    # betting (empty list: any provider code is accepted)
    known_providers: list[str] = []

    # settlement
    commission_on_losses: bool = True
    straight_payout_multiplier: Decimal = Decimal("90")

    # weekly reset
    reset_max_attempts: int = Field(3, ge=1)
    reset_base_delay_seconds: float = Field(1.0, ge=0)

    # logging
    log_level: str = "INFO"
    log_file: str | None = None

    @field_validator("money_precision", "min_cascade_remaining")
    @classmethod
    def _positive(cls, v: Decimal) -> Decimal:
        if v <= 0:
            raise ValueError("must be positive")
        return v


@lru_cache
def get_settings() -> Settings:
    return Settings()
