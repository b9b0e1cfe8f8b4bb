from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Optional

from ..db.base import BaseDBManager
from ..models.allowance import DailyAllowance
from ..models.credits import CreditTransaction
from ..models.ledger import LedgerEntry, LedgerEventType

logger = logging.getLogger(__name__)


class LedgerLogger:
    """
    Audit trail of metering events.

    Each event becomes a ``LedgerEntry`` in the store and, when ``file_path``
    is set, one JSON line appended to that file for log aggregators. The
    typed helpers below fix the message and detail keys per event so the
    trail can be queried by ``details`` without guessing at its shape.
    """

    def __init__(self, db: BaseDBManager, file_path: Optional[Path] = None) -> None:
        self._db = db
        self._file_path = Path(file_path) if file_path is not None else None
        if self._file_path is not None:
            self._file_path.parent.mkdir(parents=True, exist_ok=True)

    async def credit_transaction(
        self, tx: CreditTransaction, correlation_id: Optional[str] = None
    ) -> LedgerEntry:
        direction = "added" if tx.amount >= 0 else "deducted"
        return await self.record(
            LedgerEventType.TRANSACTION,
            f"Credits {direction} ({tx.kind.value})",
            {
                "transaction_id": tx.id,
                "kind": tx.kind.value,
                "amount": tx.amount,
                "new_balance": tx.balance_after,
                "package_id": tx.related_package_id,
                "description": tx.description or "",
            },
            user_id=tx.user_id,
            correlation_id=correlation_id,
        )

    async def allowance_reset(self, allowance: DailyAllowance, plan_tier: str) -> LedgerEntry:
        return await self.record(
            LedgerEventType.SYSTEM,
            "Daily allowance reset",
            {
                "day": allowance.day.isoformat(),
                "plan_tier": plan_tier,
                "granted": allowance.granted,
            },
            user_id=allowance.user_id,
        )

    async def balance_repaired(
        self, user_id: str, stored_balance: int, transaction_sum: int, applied: bool
    ) -> LedgerEntry:
        return await self.record(
            LedgerEventType.SYSTEM,
            "Credit balance repaired from transaction log",
            {
                "stored_balance": stored_balance,
                "transaction_sum": transaction_sum,
                "applied": applied,
            },
            user_id=user_id,
        )

    async def write_failed(
        self,
        operation: str,
        user_id: str,
        error: BaseException,
        correlation_id: Optional[str] = None,
    ) -> LedgerEntry:
        return await self.record(
            LedgerEventType.ERROR,
            f"Credit {operation} failed after retry",
            {"operation": operation, "error": str(error), "error_type": type(error).__name__},
            user_id=user_id,
            correlation_id=correlation_id,
        )

    async def record(
        self,
        event_type: LedgerEventType,
        message: str,
        details: dict[str, Any],
        user_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> LedgerEntry:
        entry = LedgerEntry(
            event_type=event_type,
            user_id=user_id,
            message=message,
            details=details,
            correlation_id=correlation_id,
        )
        await self._db.add_ledger_entry(entry)
        self._append_to_file(entry)
        return entry

    def _append_to_file(self, entry: LedgerEntry) -> None:
        if self._file_path is None:
            return
        # The file is a mirror; the store already holds the entry
        try:
            with self._file_path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(entry.serialize_for_db(), default=str) + "\n")
        except OSError as e:
            logger.warning("Could not append to ledger log %s: %s", self._file_path, e)
