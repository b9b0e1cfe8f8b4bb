from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Optional
from uuid import uuid4

from pydantic import Field

from .base import DBSerializableModel, utcnow


class LedgerEventType(str, Enum):
    TRANSACTION = "transaction"
    ERROR = "error"
    SYSTEM = "system"


class LedgerEntry(DBSerializableModel):
    """
    Structured audit entry persisted to the store and mirrored to a file log.
    """

    collection_name: ClassVar[str] = "metering_ledger_entries"

    id: str = Field(default_factory=lambda: uuid4().hex)
    event_type: LedgerEventType
    user_id: Optional[str] = None
    correlation_id: Optional[str] = Field(
        default=None,
        description="Correlation id for tracing a logical operation across components.",
    )
    message: str
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
