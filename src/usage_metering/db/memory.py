from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import date
from typing import AsyncIterator, Dict, List, Optional, Tuple

from ..errors import PersistenceConflictError
from ..models.allowance import DailyAllowance
from ..models.base import utcnow
from ..models.credits import CreditAccount, CreditPackage, CreditTransaction
from ..models.ledger import LedgerEntry
from ..models.usage import UsageMeter
from .base import BaseDBManager


class InMemoryDBManager(BaseDBManager):
    """
    Simple in-memory implementation used for tests and local development.
    NOT suitable for production, but exercises the abstraction and services.

    The conditional primitives contain no ``await`` between the check and
    the write, so they are atomic with respect to other coroutines on the
    same event loop.
    """

    def __init__(self) -> None:
        self._allowances: Dict[Tuple[str, date], DailyAllowance] = {}
        self._accounts: Dict[str, CreditAccount] = {}
        self._transactions: List[CreditTransaction] = []
        self._packages: Dict[str, CreditPackage] = {}
        self._ledger: List[LedgerEntry] = []
        self._usage: Dict[Tuple[str, date], UsageMeter] = {}

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        # In-memory backend cannot provide real rollback; this is a no-op.
        yield

    # Daily allowances
    async def get_daily_allowance(self, user_id: str, day: date) -> Optional[DailyAllowance]:
        row = self._allowances.get((user_id, day))
        return row.model_copy() if row is not None else None

    async def insert_daily_allowance_if_absent(self, allowance: DailyAllowance) -> bool:
        key = (allowance.user_id, allowance.day)
        if key in self._allowances:
            return False
        self._allowances[key] = allowance.model_copy()
        return True

    async def decrement_daily_allowance(
        self, user_id: str, day: date, amount: int
    ) -> Optional[DailyAllowance]:
        row = self._allowances.get((user_id, day))
        if row is None or row.remaining < amount:
            return None
        row.remaining -= amount
        row.updated_at = utcnow()
        return row.model_copy()

    async def reset_daily_allowance(
        self, user_id: str, day: date, granted: int
    ) -> Optional[DailyAllowance]:
        row = self._allowances.get((user_id, day))
        if row is None:
            return None
        updated = row.model_copy(
            update={"granted": granted, "remaining": granted, "updated_at": utcnow()}
        )
        self._allowances[(user_id, day)] = updated
        return updated.model_copy()

    # Credit accounts
    async def get_credit_account(self, user_id: str) -> Optional[CreditAccount]:
        account = self._accounts.get(user_id)
        return account.model_copy() if account is not None else None

    async def increment_balance(self, user_id: str, amount: int, purchased: bool = False) -> int:
        account = self._accounts.get(user_id)
        if account is None:
            account = CreditAccount(user_id=user_id, balance=0)
            self._accounts[user_id] = account
        account.balance += amount
        if purchased:
            account.total_purchased += amount
        account.updated_at = utcnow()
        return account.balance

    async def decrement_balance(
        self, user_id: str, amount: int, used: bool = False
    ) -> Optional[int]:
        account = self._accounts.get(user_id)
        current = account.balance if account is not None else 0
        if current < amount:
            return None
        if account is None:
            # amount == 0 on a missing account
            return 0
        account.balance -= amount
        if used:
            account.total_used += amount
        account.updated_at = utcnow()
        return account.balance

    async def get_balance_snapshot(self, user_id: str) -> Tuple[int, int]:
        account = self._accounts.get(user_id)
        balance = account.balance if account is not None else 0
        ledger_sum = sum(t.amount for t in self._transactions if t.user_id == user_id)
        return balance, ledger_sum

    async def repair_balance(self, user_id: str, expected: int, corrected: int) -> bool:
        account = self._accounts.get(user_id)
        current = account.balance if account is not None else 0
        if current != expected:
            return False
        if account is None:
            account = CreditAccount(user_id=user_id)
            self._accounts[user_id] = account
        account.balance = corrected
        account.updated_at = utcnow()
        return True

    # Credit transactions
    async def add_credit_transaction(self, tx: CreditTransaction) -> CreditTransaction:
        if any(t.id == tx.id for t in self._transactions):
            raise PersistenceConflictError(f"duplicate transaction id {tx.id}")
        self._transactions.append(tx.model_copy())
        return tx

    async def list_credit_transactions(self, user_id: str, limit: int) -> List[CreditTransaction]:
        newest_first = [t for t in reversed(self._transactions) if t.user_id == user_id]
        return [t.model_copy() for t in newest_first[:limit]]

    # Credit packages
    async def get_credit_package(self, package_id: str) -> Optional[CreditPackage]:
        package = self._packages.get(package_id)
        return package.model_copy() if package is not None else None

    async def list_credit_packages(self, active_only: bool = True) -> List[CreditPackage]:
        return [
            p.model_copy()
            for p in self._packages.values()
            if p.is_active or not active_only
        ]

    async def upsert_credit_package(self, package: CreditPackage) -> CreditPackage:
        self._packages[package.id] = package.model_copy()
        return package

    # Ledger
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        self._ledger.append(entry)
        return entry

    @property
    def ledger_entries(self) -> List[LedgerEntry]:
        return list(self._ledger)

    # Usage meters
    async def get_usage_meter(self, user_id: str, period_start: date) -> Optional[UsageMeter]:
        meter = self._usage.get((user_id, period_start))
        return meter.model_copy() if meter is not None else None

    async def add_usage(
        self, user_id: str, period_start: date, daily_tokens: int, credit_tokens: int
    ) -> UsageMeter:
        meter = self._usage.setdefault(
            (user_id, period_start), UsageMeter(user_id=user_id, period_start=period_start)
        )
        meter.daily_tokens += daily_tokens
        meter.credit_tokens += credit_tokens
        meter.tokens_used += daily_tokens + credit_tokens
        meter.requests += 1
        meter.updated_at = utcnow()
        return meter.model_copy()
