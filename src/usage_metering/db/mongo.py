from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import date
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Tuple, Type, TypeVar

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import ConnectionFailure, DuplicateKeyError, PyMongoError

from ..errors import PersistenceConflictError, StorageUnavailableError
from ..models.allowance import DailyAllowance
from ..models.base import DBSerializableModel, utcnow
from ..models.credits import CreditAccount, CreditPackage, CreditTransaction
from ..models.ledger import LedgerEntry
from ..models.usage import UsageMeter
from .base import BaseDBManager

logger = logging.getLogger(__name__)

TModel = TypeVar("TModel", bound=DBSerializableModel)

_WRITE_CONFLICT_CODE = 112


def _allowance_id(user_id: str, day: date) -> str:
    return f"{user_id}:{day.isoformat()}"


def _usage_id(user_id: str, period_start: date) -> str:
    return f"{user_id}:{period_start.isoformat()}"


class MongoDBManager(BaseDBManager):
    """
    MongoDB implementation of BaseDBManager using motor (async driver).

    Documents use string ``_id`` values: the transaction / package / entry id,
    the user id for credit accounts, and ``"<user_id>:<YYYY-MM-DD>"`` for
    daily allowances and monthly usage meters. Allowance days and meter
    periods are stored as ISO strings since BSON has no date-only type.

    Conditional decrements are single ``find_one_and_update`` calls guarded
    by ``$gte`` filters. ``transaction()`` opens a session transaction when
    ``use_transactions`` is set, which requires a replica set; otherwise it
    is a no-op and only single-document writes are atomic.
    """

    def __init__(self, database: AsyncIOMotorDatabase, use_transactions: bool = True) -> None:
        self._db = database
        self._use_transactions = use_transactions
        self._session: ContextVar[Optional[Any]] = ContextVar(
            f"metering_mongo_session_{id(self)}", default=None
        )

    @classmethod
    def from_client_uri(
        cls, uri: str, db_name: str, use_transactions: bool = True
    ) -> "MongoDBManager":
        client = AsyncIOMotorClient(uri, tz_aware=True)
        return cls(client[db_name], use_transactions=use_transactions)

    async def connect(self) -> None:
        logger.info("Creating indexes for metering storage")
        async with self._guard():
            await self._db[CreditTransaction.collection_name].create_index(
                [("user_id", ASCENDING), ("created_at", DESCENDING), ("_id", DESCENDING)]
            )
            await self._db[LedgerEntry.collection_name].create_index(
                [("user_id", ASCENDING), ("created_at", DESCENDING)]
            )

    async def close(self) -> None:
        self._db.client.close()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        if not self._use_transactions or self._session.get() is not None:
            yield
            return
        async with self._guard():
            async with await self._db.client.start_session() as session:
                async with session.start_transaction():
                    token = self._session.set(session)
                    try:
                        yield
                    finally:
                        self._session.reset(token)

    @asynccontextmanager
    async def _guard(self) -> AsyncIterator[None]:
        try:
            yield
        except DuplicateKeyError as e:
            raise PersistenceConflictError(f"duplicate key: {e}", cause=e) from e
        except PyMongoError as e:
            if e.has_error_label("TransientTransactionError") or getattr(e, "code", None) == _WRITE_CONFLICT_CODE:
                raise PersistenceConflictError(f"concurrent write conflict: {e}", cause=e) from e
            if isinstance(e, ConnectionFailure):
                logger.error("MongoDB storage unavailable: %s", e)
                raise StorageUnavailableError(f"MongoDB unavailable: {e}", cause=e) from e
            raise

    # Helper utilities
    def _col(self, model_cls: Type[DBSerializableModel]):
        return self._db[model_cls.collection_name]

    @staticmethod
    def _prepare_insert(model: DBSerializableModel, doc_id: str) -> Dict[str, Any]:
        data = model.serialize_for_db()
        data["_id"] = doc_id
        return data

    @staticmethod
    def _decode(model_cls: Type[TModel], doc: Optional[Mapping[str, Any]]) -> Optional[TModel]:
        if doc is None:
            return None
        data = dict(doc)
        data.pop("_id", None)
        return model_cls.model_validate(data)

    # Daily allowances
    async def get_daily_allowance(self, user_id: str, day: date) -> Optional[DailyAllowance]:
        async with self._guard():
            doc = await self._col(DailyAllowance).find_one(
                {"_id": _allowance_id(user_id, day)}, session=self._session.get()
            )
        return self._decode(DailyAllowance, doc)

    async def insert_daily_allowance_if_absent(self, allowance: DailyAllowance) -> bool:
        doc_id = _allowance_id(allowance.user_id, allowance.day)
        data = allowance.serialize_for_db()
        data["day"] = allowance.day.isoformat()
        try:
            async with self._guard():
                result = await self._col(DailyAllowance).update_one(
                    {"_id": doc_id},
                    {"$setOnInsert": data},
                    upsert=True,
                    session=self._session.get(),
                )
        except PersistenceConflictError as e:
            if isinstance(e.cause, DuplicateKeyError):
                # Lost the upsert race; the other writer created the row
                return False
            raise
        return result.upserted_id is not None

    async def decrement_daily_allowance(
        self, user_id: str, day: date, amount: int
    ) -> Optional[DailyAllowance]:
        async with self._guard():
            doc = await self._col(DailyAllowance).find_one_and_update(
                {"_id": _allowance_id(user_id, day), "remaining": {"$gte": amount}},
                {"$inc": {"remaining": -amount}, "$set": {"updated_at": utcnow()}},
                return_document=ReturnDocument.AFTER,
                session=self._session.get(),
            )
        return self._decode(DailyAllowance, doc)

    async def reset_daily_allowance(
        self, user_id: str, day: date, granted: int
    ) -> Optional[DailyAllowance]:
        async with self._guard():
            doc = await self._col(DailyAllowance).find_one_and_update(
                {"_id": _allowance_id(user_id, day)},
                {"$set": {"granted": granted, "remaining": granted, "updated_at": utcnow()}},
                return_document=ReturnDocument.AFTER,
                session=self._session.get(),
            )
        return self._decode(DailyAllowance, doc)

    # Credit accounts
    async def get_credit_account(self, user_id: str) -> Optional[CreditAccount]:
        async with self._guard():
            doc = await self._col(CreditAccount).find_one(
                {"_id": user_id}, session=self._session.get()
            )
        return self._decode(CreditAccount, doc)

    async def increment_balance(self, user_id: str, amount: int, purchased: bool = False) -> int:
        async with self._guard():
            doc = await self._col(CreditAccount).find_one_and_update(
                {"_id": user_id},
                {
                    "$inc": {"balance": amount, "total_purchased": amount if purchased else 0},
                    "$set": {"updated_at": utcnow()},
                    "$setOnInsert": {"user_id": user_id, "total_used": 0},
                },
                upsert=True,
                return_document=ReturnDocument.AFTER,
                session=self._session.get(),
            )
        return int(doc["balance"])

    async def decrement_balance(
        self, user_id: str, amount: int, used: bool = False
    ) -> Optional[int]:
        async with self._guard():
            doc = await self._col(CreditAccount).find_one_and_update(
                {"_id": user_id, "balance": {"$gte": amount}},
                {
                    "$inc": {"balance": -amount, "total_used": amount if used else 0},
                    "$set": {"updated_at": utcnow()},
                },
                return_document=ReturnDocument.AFTER,
                session=self._session.get(),
            )
            if doc is None and amount == 0:
                existing = await self._col(CreditAccount).find_one(
                    {"_id": user_id}, session=self._session.get()
                )
                if existing is None:
                    return 0
        return int(doc["balance"]) if doc is not None else None

    async def get_balance_snapshot(self, user_id: str) -> Tuple[int, int]:
        # Both reads share one transaction snapshot when transactions are enabled
        async with self.transaction():
            async with self._guard():
                session = self._session.get()
                account = await self._col(CreditAccount).find_one({"_id": user_id}, session=session)
                cursor = self._col(CreditTransaction).aggregate(
                    [
                        {"$match": {"user_id": user_id}},
                        {"$group": {"_id": None, "total": {"$sum": "$amount"}}},
                    ],
                    session=session,
                )
                totals = await cursor.to_list(length=1)
        balance = int(account["balance"]) if account else 0
        ledger_sum = int(totals[0]["total"]) if totals else 0
        return balance, ledger_sum

    async def repair_balance(self, user_id: str, expected: int, corrected: int) -> bool:
        now = utcnow()
        async with self._guard():
            result = await self._col(CreditAccount).update_one(
                {"_id": user_id, "balance": expected},
                {"$set": {"balance": corrected, "updated_at": now}},
                session=self._session.get(),
            )
        if result.matched_count == 1:
            return True
        if expected != 0:
            return False
        # A missing account reads as 0
        account = CreditAccount(user_id=user_id, balance=corrected, updated_at=now)
        try:
            async with self._guard():
                await self._col(CreditAccount).insert_one(
                    self._prepare_insert(account, user_id), session=self._session.get()
                )
        except PersistenceConflictError:
            return False
        return True

    # Credit transactions
    async def add_credit_transaction(self, tx: CreditTransaction) -> CreditTransaction:
        async with self._guard():
            await self._col(CreditTransaction).insert_one(
                self._prepare_insert(tx, tx.id), session=self._session.get()
            )
        return tx

    async def list_credit_transactions(self, user_id: str, limit: int) -> List[CreditTransaction]:
        async with self._guard():
            cursor = (
                self._col(CreditTransaction)
                .find({"user_id": user_id}, session=self._session.get())
                .sort([("created_at", DESCENDING), ("_id", DESCENDING)])
                .limit(limit)
            )
            docs = await cursor.to_list(length=limit)
        return [self._decode(CreditTransaction, d) for d in docs]  # type: ignore[misc]

    # Credit packages
    async def get_credit_package(self, package_id: str) -> Optional[CreditPackage]:
        async with self._guard():
            doc = await self._col(CreditPackage).find_one(
                {"_id": package_id}, session=self._session.get()
            )
        return self._decode(CreditPackage, doc)

    async def list_credit_packages(self, active_only: bool = True) -> List[CreditPackage]:
        query: Dict[str, Any] = {"is_active": True} if active_only else {}
        async with self._guard():
            cursor = (
                self._col(CreditPackage)
                .find(query, session=self._session.get())
                .sort([("price", ASCENDING), ("_id", ASCENDING)])
            )
            docs = await cursor.to_list(length=None)
        return [self._decode(CreditPackage, d) for d in docs]  # type: ignore[misc]

    async def upsert_credit_package(self, package: CreditPackage) -> CreditPackage:
        data = self._prepare_insert(package, package.id)
        async with self._guard():
            await self._col(CreditPackage).replace_one(
                {"_id": package.id}, data, upsert=True, session=self._session.get()
            )
        return package

    # Ledger
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        async with self._guard():
            await self._col(LedgerEntry).insert_one(
                self._prepare_insert(entry, entry.id), session=self._session.get()
            )
        return entry

    # Usage meters
    async def get_usage_meter(self, user_id: str, period_start: date) -> Optional[UsageMeter]:
        async with self._guard():
            doc = await self._col(UsageMeter).find_one(
                {"_id": _usage_id(user_id, period_start)}, session=self._session.get()
            )
        return self._decode(UsageMeter, doc)

    async def add_usage(
        self, user_id: str, period_start: date, daily_tokens: int, credit_tokens: int
    ) -> UsageMeter:
        update = {
            "$inc": {
                "tokens_used": daily_tokens + credit_tokens,
                "daily_tokens": daily_tokens,
                "credit_tokens": credit_tokens,
                "requests": 1,
            },
            "$set": {"updated_at": utcnow()},
            "$setOnInsert": {"user_id": user_id, "period_start": period_start.isoformat()},
        }
        for attempt in range(2):
            try:
                async with self._guard():
                    doc = await self._col(UsageMeter).find_one_and_update(
                        {"_id": _usage_id(user_id, period_start)},
                        update,
                        upsert=True,
                        return_document=ReturnDocument.AFTER,
                        session=self._session.get(),
                    )
            except PersistenceConflictError as e:
                # Two upserts raced to create the month's meter; the loser
                # retries once as a plain update
                if attempt == 0 and isinstance(e.cause, DuplicateKeyError):
                    continue
                raise
            return self._decode(UsageMeter, doc)  # type: ignore[return-value]
        raise PersistenceConflictError(f"usage meter for {user_id} kept racing")
