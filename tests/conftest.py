from __future__ import annotations

import asyncio

import pytest

from usage_metering.cache.memory import InMemoryAsyncCache
from usage_metering.db.memory import InMemoryDBManager
from usage_metering.logging.ledger_logger import LedgerLogger
from usage_metering.services.allowance_service import DailyAllowanceService
from usage_metering.services.ledger_service import CreditLedgerService
from usage_metering.services.quota_service import QuotaEnforcementService
from usage_metering.services.usage_service import UsageMeterService


class InterleavingDB(InMemoryDBManager):
    """
    Yields to the loop before every read and conditional write, so concurrent
    callers really interleave between the steps of a service operation.
    """

    def __init__(self) -> None:
        super().__init__()
        self.created = 0

    async def get_daily_allowance(self, user_id, day):
        await asyncio.sleep(0)
        return await super().get_daily_allowance(user_id, day)

    async def insert_daily_allowance_if_absent(self, allowance):
        await asyncio.sleep(0)
        created = await super().insert_daily_allowance_if_absent(allowance)
        self.created += int(created)
        return created

    async def decrement_daily_allowance(self, user_id, day, amount):
        await asyncio.sleep(0)
        return await super().decrement_daily_allowance(user_id, day, amount)

    async def increment_balance(self, user_id, amount, purchased=False):
        await asyncio.sleep(0)
        return await super().increment_balance(user_id, amount, purchased=purchased)

    async def decrement_balance(self, user_id, amount, used=False):
        await asyncio.sleep(0)
        return await super().decrement_balance(user_id, amount, used=used)

    async def add_credit_transaction(self, tx):
        await asyncio.sleep(0)
        return await super().add_credit_transaction(tx)

    async def get_balance_snapshot(self, user_id):
        await asyncio.sleep(0)
        return await super().get_balance_snapshot(user_id)

    async def get_usage_meter(self, user_id, period_start):
        await asyncio.sleep(0)
        return await super().get_usage_meter(user_id, period_start)

    async def add_usage(self, user_id, period_start, daily_tokens, credit_tokens):
        await asyncio.sleep(0)
        return await super().add_usage(user_id, period_start, daily_tokens, credit_tokens)


class FakeClock:
    """Monotonic clock stand-in that only moves when told to."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def db() -> InMemoryDBManager:
    return InMemoryDBManager()


@pytest.fixture
def cache(clock: FakeClock) -> InMemoryAsyncCache:
    return InMemoryAsyncCache(clock=clock)


@pytest.fixture
def ledger_logger(db: InMemoryDBManager, tmp_path) -> LedgerLogger:
    return LedgerLogger(db=db, file_path=tmp_path / "ledger.log")


@pytest.fixture
def allowances(db, ledger_logger, cache) -> DailyAllowanceService:
    return DailyAllowanceService(db=db, ledger=ledger_logger, cache=cache)


@pytest.fixture
def credits(db, ledger_logger) -> CreditLedgerService:
    return CreditLedgerService(db=db, ledger=ledger_logger)


@pytest.fixture
def quota(allowances, credits) -> QuotaEnforcementService:
    return QuotaEnforcementService(allowances=allowances, ledger=credits)


@pytest.fixture
def interleaving_db() -> InterleavingDB:
    return InterleavingDB()


@pytest.fixture
def usage(db) -> UsageMeterService:
    return UsageMeterService(db=db, plan_caps={"free": 100_000})
