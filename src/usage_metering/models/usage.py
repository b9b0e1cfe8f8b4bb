from __future__ import annotations

from datetime import date, datetime
from typing import ClassVar, Tuple

from pydantic import Field

from .base import DBSerializableModel, utcnow


class UsageMeter(DBSerializableModel):
    """
    Cumulative metered tokens for one user over one calendar month of the
    reference timezone.

    Counters only grow. ``tokens_used`` is the sum of every permitted
    amount, split by the quota source that paid for it.
    """

    collection_name: ClassVar[str] = "metering_usage_meters"
    primary_key: ClassVar[Tuple[str, ...]] = ("user_id", "period_start")

    user_id: str
    period_start: date = Field(description="First day of the metered month.")
    tokens_used: int = Field(default=0, ge=0)
    daily_tokens: int = Field(default=0, ge=0)
    credit_tokens: int = Field(default=0, ge=0)
    requests: int = Field(default=0, ge=0)
    updated_at: datetime = Field(default_factory=utcnow)
