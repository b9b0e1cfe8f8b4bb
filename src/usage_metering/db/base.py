from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import date
from typing import AsyncIterator, List, Optional, Tuple

from ..models.allowance import DailyAllowance
from ..models.credits import CreditAccount, CreditPackage, CreditTransaction
from ..models.ledger import LedgerEntry
from ..models.usage import UsageMeter


class BaseDBManager(ABC):
    """
    Storage-agnostic async manager interface.

    Services rely on exactly two concurrency primitives from storage:

    - an idempotent insert-or-ignore keyed by (user, day) for allowances
    - atomic conditional decrements (``... WHERE remaining/balance >= amount``)
      that return the updated value, or ``None`` when the precondition failed

    Everything else is plain row CRUD. Multi-row writes are grouped with the
    ``transaction()`` context manager. Driver errors are translated into
    ``PersistenceConflictError`` (raced writers) or ``StorageUnavailableError``
    (store unreachable).
    """

    async def connect(self) -> None:
        """Open pools / create indexes. No-op for backends without IO."""
        return None

    async def close(self) -> None:
        return None

    @abstractmethod
    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """
        Provide an atomic unit of work if the backend supports it.
        Rolls back on exception and commits on success. Nested calls join
        the outer unit.
        """
        yield

    # Daily allowances
    @abstractmethod
    async def get_daily_allowance(self, user_id: str, day: date) -> Optional[DailyAllowance]: ...

    @abstractmethod
    async def insert_daily_allowance_if_absent(self, allowance: DailyAllowance) -> bool:
        """Insert-or-ignore on (user_id, day). Returns True if this call created the row."""
        ...

    @abstractmethod
    async def decrement_daily_allowance(
        self, user_id: str, day: date, amount: int
    ) -> Optional[DailyAllowance]:
        """
        Atomically subtract ``amount`` if ``remaining >= amount``.
        Returns the updated row, or None if no row matched.
        """
        ...

    @abstractmethod
    async def reset_daily_allowance(
        self, user_id: str, day: date, granted: int
    ) -> Optional[DailyAllowance]:
        """Set both granted and remaining to ``granted``. Operator override."""
        ...

    # Credit accounts
    @abstractmethod
    async def get_credit_account(self, user_id: str) -> Optional[CreditAccount]: ...

    @abstractmethod
    async def increment_balance(self, user_id: str, amount: int, purchased: bool = False) -> int:
        """
        Add ``amount`` (creating the account if needed) and return the new
        balance. ``purchased`` also adds it to ``total_purchased``.
        """
        ...

    @abstractmethod
    async def decrement_balance(
        self, user_id: str, amount: int, used: bool = False
    ) -> Optional[int]:
        """
        Atomically subtract ``amount`` if ``balance >= amount``.
        Returns the new balance, or None if the precondition failed.
        ``used`` also adds it to ``total_used``.
        """
        ...

    @abstractmethod
    async def get_balance_snapshot(self, user_id: str) -> Tuple[int, int]:
        """
        Return ``(stored_balance, sum_of_transaction_amounts)`` from one
        consistent read. A missing account reads as balance 0.
        """
        ...

    @abstractmethod
    async def repair_balance(self, user_id: str, expected: int, corrected: int) -> bool:
        """
        Overwrite the stored balance with ``corrected`` only if it still
        equals ``expected``. Returns True if the write applied.
        """
        ...

    # Credit transactions
    @abstractmethod
    async def add_credit_transaction(self, tx: CreditTransaction) -> CreditTransaction: ...

    @abstractmethod
    async def list_credit_transactions(self, user_id: str, limit: int) -> List[CreditTransaction]:
        """Newest first, at most ``limit`` rows."""
        ...

    # Credit packages
    @abstractmethod
    async def get_credit_package(self, package_id: str) -> Optional[CreditPackage]: ...

    @abstractmethod
    async def list_credit_packages(self, active_only: bool = True) -> List[CreditPackage]: ...

    @abstractmethod
    async def upsert_credit_package(self, package: CreditPackage) -> CreditPackage: ...

    # Ledger
    @abstractmethod
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry: ...

    # Usage meters
    @abstractmethod
    async def get_usage_meter(self, user_id: str, period_start: date) -> Optional[UsageMeter]: ...

    @abstractmethod
    async def add_usage(
        self, user_id: str, period_start: date, daily_tokens: int, credit_tokens: int
    ) -> UsageMeter:
        """
        Atomically add one metered request to the month's meter, creating it
        on first use, and return the updated row.
        """
        ...
