from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel


class QuotaSource(str, Enum):
    DAILY = "daily"
    CREDIT = "credit"
    NONE = "none"


class ConsumeResult(BaseModel):
    """Outcome of a fail-closed debit; ``remaining`` is the post-call value."""

    granted: bool
    remaining: int


class PurchaseResult(BaseModel):
    transaction_id: str
    new_balance: int


class QuotaDecision(BaseModel):
    """
    PERMIT (``permit=True``) or DENY for one metered action. There is no
    intermediate state.
    """

    permit: bool
    source: QuotaSource
    daily_remaining: int
    credit_balance: int
    reason: Optional[str] = None
