from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, Optional
import time
from uuid import uuid4

from pydantic import BaseModel, Field

from .base import DBSerializableModel, utcnow


_last_id_ns = 0


def new_transaction_id() -> str:
    """Time-ordered id; sorting ids descending lists newest transactions first."""
    global _last_id_ns
    # Strictly increasing within the process, even on coarse clocks
    _last_id_ns = max(time.time_ns(), _last_id_ns + 1)
    return f"{_last_id_ns:016x}{uuid4().hex[:16]}"


class TransactionKind(str, Enum):
    PURCHASE = "purchase"
    CONSUMPTION = "consumption"
    BONUS = "bonus"
    ADJUSTMENT = "adjustment"


class CreditAccount(DBSerializableModel):
    """
    Derived credit balance for a user.

    ``balance`` always equals the sum of the user's transaction amounts;
    the ledger service repairs it from the log if the two ever drift apart.
    ``total_purchased`` and ``total_used`` are lifetime counters of paid
    credits and metered consumption. Bonuses and operator adjustments move
    only the balance.
    """

    collection_name: ClassVar[str] = "metering_credit_accounts"
    primary_key: ClassVar[tuple[str, ...]] = ("user_id",)

    user_id: str
    balance: int = Field(default=0, ge=0)
    total_purchased: int = Field(default=0, ge=0)
    total_used: int = Field(default=0, ge=0)
    updated_at: datetime = Field(default_factory=utcnow)


class CreditTransaction(DBSerializableModel):
    """
    Immutable, append-only ledger row. Positive amounts add credit
    (purchase, bonus), negative amounts consume it.
    """

    collection_name: ClassVar[str] = "metering_credit_transactions"

    id: str = Field(default_factory=new_transaction_id)
    user_id: str
    amount: int
    kind: TransactionKind
    related_package_id: Optional[str] = None
    balance_after: int = Field(
        default=0, description="Account balance right after this transaction applied."
    )
    description: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class CreditPackage(DBSerializableModel):
    """
    Catalog entry consulted at purchase time. The price is always re-read
    server-side.
    """

    collection_name: ClassVar[str] = "metering_credit_packages"

    id: str
    name: str
    price: float = Field(ge=0)
    credits: int = Field(ge=0)
    bonus_credits: int = Field(default=0, ge=0)
    is_active: bool = True
    description: Optional[str] = None

    @property
    def total_credits(self) -> int:
        return self.credits + self.bonus_credits

    @property
    def price_per_credit(self) -> Optional[float]:
        if self.total_credits == 0:
            return None
        return self.price / self.total_credits


class PackageValue(BaseModel):
    """What a package is worth next to the catalog's most expensive credit."""

    package_id: str
    total_credits: int
    price_per_credit: Optional[float]
    savings: float = Field(
        description="Price difference against buying the same credits at the list rate."
    )


class PaymentEvidence(BaseModel):
    """
    Opaque assertion that a payment succeeded. Provider signatures are
    verified by the caller before a purchase is recorded.
    """

    provider: str = "unknown"
    reference: Optional[str] = None
    amount_paid: Optional[float] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
