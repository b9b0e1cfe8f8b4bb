from __future__ import annotations

from datetime import date
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator

from ..models.credits import PaymentEvidence
from ..models.quota import QuotaSource


class ChatMessage(BaseModel):
    role: str
    content: str


class AuthorizeRequest(BaseModel):
    """
    Either ``estimated_tokens`` or ``messages`` (plus ``model_id``) must be
    given; messages are estimated server-side.
    """

    user_id: str
    plan_tier: str | None = None
    estimated_tokens: Optional[int] = Field(default=None, ge=0)
    messages: Optional[List[ChatMessage]] = None
    model_id: str | None = None
    web_search: bool = False

    @model_validator(mode="after")
    def _has_amount(self) -> "AuthorizeRequest":
        if self.estimated_tokens is None and not self.messages:
            raise ValueError("either estimated_tokens or messages is required")
        if self.estimated_tokens is None and not self.model_id:
            raise ValueError("model_id is required to estimate messages")
        return self


class AuthorizeResponse(BaseModel):
    user_id: str
    amount: int
    permit: bool
    source: QuotaSource
    daily_remaining: int
    credit_balance: int
    reason: str | None = None


class UsageResponse(BaseModel):
    user_id: str
    plan_tier: str
    day: date
    granted: int
    remaining: int
    credit_balance: int
    resets_in_seconds: int
    # Calendar-month meter
    period_start: date
    month_tokens_used: int
    month_requests: int
    monthly_cap: Optional[int] = None


class CreditBalanceResponse(BaseModel):
    user_id: str
    balance: int


class CreditAccountResponse(BaseModel):
    user_id: str
    balance: int
    total_purchased: int
    total_used: int


class CreditPackageResponse(BaseModel):
    id: str
    name: str
    price: float
    credits: int
    bonus_credits: int
    total_credits: int
    price_per_credit: Optional[float] = None
    is_active: bool
    description: str | None = None


class PackageValueResponse(BaseModel):
    package_id: str
    total_credits: int
    price_per_credit: Optional[float] = None
    savings: float


class PurchaseRequest(BaseModel):
    user_id: str
    package_id: str
    payment: Optional[PaymentEvidence] = None


class PurchaseResponse(BaseModel):
    user_id: str
    transaction_id: str
    new_balance: int
