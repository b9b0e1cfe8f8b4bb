from __future__ import annotations

from datetime import date, datetime
from typing import ClassVar, Tuple

from pydantic import Field, model_validator

from .base import DBSerializableModel, utcnow


class DailyAllowance(DBSerializableModel):
    """
    Free-tier token budget for one user on one reference-timezone day.

    At most one row exists per (user_id, day); ``remaining`` only decreases
    after creation.
    """

    collection_name: ClassVar[str] = "metering_daily_allowances"
    primary_key: ClassVar[Tuple[str, ...]] = ("user_id", "day")

    user_id: str
    day: date
    granted: int = Field(ge=0, description="Tokens granted for the day by plan tier.")
    remaining: int = Field(ge=0)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _remaining_within_grant(self) -> "DailyAllowance":
        if self.remaining > self.granted:
            raise ValueError("remaining must not exceed granted")
        return self

    @property
    def key(self) -> str:
        return f"{self.user_id}:{self.day.isoformat()}"
