from __future__ import annotations

from functools import lru_cache
from typing import Dict, Literal, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Runtime configuration for the metering core.

    Every field can be overridden through a ``METERING_``-prefixed environment
    variable (e.g. ``METERING_REDIS_URL``) or a local ``.env`` file.
    """

    model_config = SettingsConfigDict(
        env_prefix="METERING_",
        env_file=".env",
        extra="ignore",
    )

    # Durable store
    database_backend: Literal["memory", "postgres", "mongo"] = "memory"
    postgres_dsn: Optional[str] = None
    postgres_pool_min_size: int = 1
    postgres_pool_max_size: int = 10
    mongo_uri: Optional[str] = None
    mongo_db: str = "usage_metering"
    # Multi-document transactions need a replica set
    mongo_use_transactions: bool = True

    # Advisory cache
    redis_url: Optional[str] = None
    cache_timeout_seconds: float = Field(default=0.5, gt=0, lt=5)
    cache_recover_after_seconds: Optional[float] = 30.0
    cache_key_prefix: str = "metering"

    # Daily allowance
    reference_timezone: str = "UTC"
    plan_allowances: Dict[str, int] = Field(
        default_factory=lambda: {"free": 40_000, "pro": 80_000}
    )
    default_plan_tier: str = "free"

    # Monthly usage meter; plans absent from the caps map are uncapped
    plan_monthly_caps: Dict[str, int] = Field(default_factory=dict)

    # Ledger
    ledger_log_path: Optional[str] = "logs/metering_ledger.log"
    default_transactions_limit: int = 50
    max_transactions_limit: int = 200

    # HTTP surface
    user_id_header: str = "X-User-Id"
    estimated_tokens_header: str = "X-Estimated-Tokens"
    plan_tier_header: str = "X-Plan-Tier"
    default_estimated_tokens: int = 100
    quota_path_prefix: str = "/api"

    @field_validator("plan_allowances", "plan_monthly_caps")
    @classmethod
    def _non_negative_per_tier(cls, value: Dict[str, int]) -> Dict[str, int]:
        for tier, tokens in value.items():
            if tokens < 0:
                raise ValueError(f"token limit for plan tier {tier!r} must be >= 0")
        return value

    @field_validator("reference_timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"unknown timezone: {value!r}") from e
        return value


@lru_cache()
def get_settings() -> Settings:
    return Settings()
