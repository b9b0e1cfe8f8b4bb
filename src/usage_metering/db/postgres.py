"""PostgreSQL implementation of the metering store (asyncpg)."""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import date
from typing import Any, AsyncIterator, List, Optional, Tuple

import asyncpg

from ..errors import PersistenceConflictError, StorageUnavailableError
from ..models.allowance import DailyAllowance
from ..models.base import utcnow
from ..models.credits import CreditAccount, CreditPackage, CreditTransaction
from ..models.ledger import LedgerEntry
from ..models.usage import UsageMeter
from . import sql
from .base import BaseDBManager

logger = logging.getLogger(__name__)

_CONFLICT_ERRORS = (
    asyncpg.exceptions.SerializationError,
    asyncpg.exceptions.DeadlockDetectedError,
    asyncpg.exceptions.UniqueViolationError,
)

_UNAVAILABLE_ERRORS = (
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.ConnectionDoesNotExistError,
    asyncpg.exceptions.CannotConnectNowError,
    asyncpg.exceptions.TooManyConnectionsError,
    OSError,
    asyncio.TimeoutError,
)


async def _init_connection(conn: asyncpg.Connection) -> None:
    await conn.set_type_codec(
        "jsonb",
        encoder=lambda value: json.dumps(value, default=str),
        decoder=json.loads,
        schema="pg_catalog",
    )


def _affected_rows(status: str) -> int:
    # asyncpg returns the command tag, e.g. "INSERT 0 1" or "UPDATE 3"
    try:
        return int(status.split()[-1])
    except (IndexError, ValueError):
        return 0


class PostgresDBManager(BaseDBManager):
    """
    PostgreSQL store. Conditional decrements are single ``UPDATE ... WHERE
    remaining >= $n RETURNING`` statements and allowance creation is an
    ``INSERT ... ON CONFLICT DO NOTHING``, so correctness under concurrent
    requests never depends on a read-modify-write pair.

    ``transaction()`` pins one pooled connection to the current task through
    a context variable; every method called inside the block runs on it.
    """

    def __init__(
        self,
        dsn: Optional[str] = None,
        pool: Optional[asyncpg.Pool] = None,
        *,
        min_size: int = 1,
        max_size: int = 10,
        create_schema: bool = True,
    ) -> None:
        if dsn is None and pool is None:
            raise ValueError("either dsn or pool is required")
        self._dsn = dsn
        self._pool: Optional[asyncpg.Pool] = pool
        self._owns_pool = pool is None
        self._min_size = min_size
        self._max_size = max_size
        self._create_schema = create_schema
        self._tx_conn: ContextVar[Optional[asyncpg.Connection]] = ContextVar(
            f"metering_pg_tx_{id(self)}", default=None
        )

    async def connect(self) -> None:
        if self._pool is None:
            logger.info("Connecting to PostgreSQL storage")
            async with self._translate_errors():
                self._pool = await asyncpg.create_pool(
                    dsn=self._dsn,
                    min_size=self._min_size,
                    max_size=self._max_size,
                    init=_init_connection,
                )
            self._owns_pool = True
        if self._create_schema:
            await self.init_schema()

    async def close(self) -> None:
        if self._owns_pool and self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def init_schema(self) -> None:
        """Create metering tables and indexes if they do not exist."""
        logger.info("Initializing tables for metering storage")
        async with self._connection() as conn:
            for statement in sql.SCHEMA_STATEMENTS:
                await conn.execute(statement)

    @asynccontextmanager
    async def _translate_errors(self) -> AsyncIterator[None]:
        try:
            yield
        except _CONFLICT_ERRORS as e:
            raise PersistenceConflictError(f"concurrent write conflict: {e}", cause=e) from e
        except _UNAVAILABLE_ERRORS as e:
            logger.error("PostgreSQL storage unavailable: %s", e)
            raise StorageUnavailableError(f"PostgreSQL unavailable: {e}", cause=e) from e

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[Any]:
        async with self._translate_errors():
            conn = self._tx_conn.get()
            if conn is not None:
                yield conn
            else:
                if self._pool is None:
                    raise StorageUnavailableError("PostgreSQL pool not initialized")
                async with self._pool.acquire() as acquired:
                    yield acquired

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        if self._tx_conn.get() is not None:
            # Join the enclosing transaction
            yield
            return
        if self._pool is None:
            raise StorageUnavailableError("PostgreSQL pool not initialized")
        async with self._translate_errors():
            async with self._pool.acquire() as conn:
                async with conn.transaction():
                    token = self._tx_conn.set(conn)
                    try:
                        yield
                    finally:
                        self._tx_conn.reset(token)

    # Daily allowances
    async def get_daily_allowance(self, user_id: str, day: date) -> Optional[DailyAllowance]:
        async with self._connection() as conn:
            row = await conn.fetchrow(sql.SELECT_DAILY_ALLOWANCE, user_id, day)
        return DailyAllowance(**dict(row)) if row else None

    async def insert_daily_allowance_if_absent(self, allowance: DailyAllowance) -> bool:
        async with self._connection() as conn:
            status = await conn.execute(
                sql.INSERT_DAILY_ALLOWANCE_IF_ABSENT,
                allowance.user_id,
                allowance.day,
                allowance.granted,
                allowance.remaining,
                allowance.created_at,
                allowance.updated_at,
            )
        return _affected_rows(status) == 1

    async def decrement_daily_allowance(
        self, user_id: str, day: date, amount: int
    ) -> Optional[DailyAllowance]:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                sql.DECREMENT_DAILY_ALLOWANCE, user_id, day, amount, utcnow()
            )
        return DailyAllowance(**dict(row)) if row else None

    async def reset_daily_allowance(
        self, user_id: str, day: date, granted: int
    ) -> Optional[DailyAllowance]:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                sql.RESET_DAILY_ALLOWANCE, user_id, day, granted, utcnow()
            )
        return DailyAllowance(**dict(row)) if row else None

    # Credit accounts
    async def get_credit_account(self, user_id: str) -> Optional[CreditAccount]:
        async with self._connection() as conn:
            row = await conn.fetchrow(sql.SELECT_CREDIT_ACCOUNT, user_id)
        return CreditAccount(**dict(row)) if row else None

    async def increment_balance(self, user_id: str, amount: int, purchased: bool = False) -> int:
        async with self._connection() as conn:
            balance = await conn.fetchval(
                sql.INCREMENT_BALANCE, user_id, amount, utcnow(), purchased
            )
        return int(balance)

    async def decrement_balance(
        self, user_id: str, amount: int, used: bool = False
    ) -> Optional[int]:
        async with self._connection() as conn:
            balance = await conn.fetchval(sql.DECREMENT_BALANCE, user_id, amount, utcnow(), used)
            if balance is None and amount == 0:
                # Zero debit on a missing account still succeeds
                existing = await conn.fetchrow(sql.SELECT_CREDIT_ACCOUNT, user_id)
                if existing is None:
                    return 0
        return int(balance) if balance is not None else None

    async def get_balance_snapshot(self, user_id: str) -> Tuple[int, int]:
        async with self._connection() as conn:
            row = await conn.fetchrow(sql.SELECT_BALANCE_SNAPSHOT, user_id)
        return int(row["balance"]), int(row["ledger_sum"])

    async def repair_balance(self, user_id: str, expected: int, corrected: int) -> bool:
        now = utcnow()
        async with self._connection() as conn:
            balance = await conn.fetchval(sql.REPAIR_BALANCE, user_id, expected, corrected, now)
            if balance is not None:
                return True
            if expected != 0:
                return False
            # A missing account reads as 0
            inserted = await conn.fetchval(
                sql.INSERT_CREDIT_ACCOUNT_IF_ABSENT, user_id, corrected, now
            )
        return inserted is not None

    # Credit transactions
    async def add_credit_transaction(self, tx: CreditTransaction) -> CreditTransaction:
        async with self._connection() as conn:
            await conn.execute(
                sql.INSERT_CREDIT_TRANSACTION,
                tx.id,
                tx.user_id,
                tx.amount,
                tx.kind.value,
                tx.related_package_id,
                tx.balance_after,
                tx.description,
                tx.metadata,
                tx.created_at,
            )
        return tx

    async def list_credit_transactions(self, user_id: str, limit: int) -> List[CreditTransaction]:
        async with self._connection() as conn:
            rows = await conn.fetch(sql.SELECT_CREDIT_TRANSACTIONS, user_id, limit)
        return [CreditTransaction(**dict(r)) for r in rows]

    # Credit packages
    async def get_credit_package(self, package_id: str) -> Optional[CreditPackage]:
        async with self._connection() as conn:
            row = await conn.fetchrow(sql.SELECT_CREDIT_PACKAGE, package_id)
        return CreditPackage(**dict(row)) if row else None

    async def list_credit_packages(self, active_only: bool = True) -> List[CreditPackage]:
        async with self._connection() as conn:
            rows = await conn.fetch(sql.SELECT_CREDIT_PACKAGES, active_only)
        return [CreditPackage(**dict(r)) for r in rows]

    async def upsert_credit_package(self, package: CreditPackage) -> CreditPackage:
        async with self._connection() as conn:
            await conn.execute(
                sql.UPSERT_CREDIT_PACKAGE,
                package.id,
                package.name,
                package.price,
                package.credits,
                package.bonus_credits,
                package.is_active,
                package.description,
            )
        return package

    # Ledger
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        async with self._connection() as conn:
            await conn.execute(
                sql.INSERT_LEDGER_ENTRY,
                entry.id,
                entry.event_type.value,
                entry.user_id,
                entry.correlation_id,
                entry.message,
                entry.details,
                entry.created_at,
            )
        return entry

    # Usage meters
    async def get_usage_meter(self, user_id: str, period_start: date) -> Optional[UsageMeter]:
        async with self._connection() as conn:
            row = await conn.fetchrow(sql.SELECT_USAGE_METER, user_id, period_start)
        return UsageMeter(**dict(row)) if row else None

    async def add_usage(
        self, user_id: str, period_start: date, daily_tokens: int, credit_tokens: int
    ) -> UsageMeter:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                sql.ADD_USAGE, user_id, period_start, daily_tokens, credit_tokens, utcnow()
            )
        return UsageMeter(**dict(row))
