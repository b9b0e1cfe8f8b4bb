from __future__ import annotations

import logging
import math
from datetime import date, datetime, time, timedelta, timezone
from typing import Dict, Mapping, Optional
from zoneinfo import ZoneInfo

from pydantic import ValidationError

from ..cache.base import AsyncCacheBackend
from ..db.base import BaseDBManager
from ..errors import (
    CacheError,
    InvalidAmountError,
    PersistenceConflictError,
    UnknownPlanTierError,
)
from ..logging.ledger_logger import LedgerLogger
from ..models.allowance import DailyAllowance
from ..models.base import utcnow
from ..models.quota import ConsumeResult

logger = logging.getLogger(__name__)

DEFAULT_PLAN_ALLOWANCES: Dict[str, int] = {"free": 40_000, "pro": 80_000}


def _validate_amount(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount < 0:
        raise InvalidAmountError(amount)


class DailyAllowanceService:
    """
    Per-user, per-day free token allowance.

    The durable store is authoritative. The cache mirrors today's row until
    the next midnight of the reference timezone. A cache hit is only a hint
    that the row exists; the reported value is always re-read from the
    store. Concurrent write-throughs can land out of order, and a cache that
    was unreachable during a debit keeps its older, higher value. Every
    grant or denial is decided by a conditional update or a fresh durable
    read.
    """

    def __init__(
        self,
        db: BaseDBManager,
        ledger: LedgerLogger,
        cache: Optional[AsyncCacheBackend] = None,
        plan_allowances: Optional[Mapping[str, int]] = None,
        reference_timezone: str = "UTC",
        key_prefix: str = "metering",
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._cache = cache
        self._plan_allowances = dict(plan_allowances or DEFAULT_PLAN_ALLOWANCES)
        self._tz = ZoneInfo(reference_timezone)
        self._key_prefix = key_prefix

    def granted_for(self, plan_tier: str) -> int:
        try:
            return self._plan_allowances[plan_tier]
        except KeyError:
            raise UnknownPlanTierError(plan_tier) from None

    @staticmethod
    def _resolve_now(now: Optional[datetime]) -> datetime:
        if now is None:
            return utcnow()
        if now.tzinfo is None:
            return now.replace(tzinfo=timezone.utc)
        return now

    def day_for(self, now: Optional[datetime] = None) -> date:
        """Calendar date of ``now`` in the reference timezone."""
        return self._resolve_now(now).astimezone(self._tz).date()

    def seconds_until_rollover(self, now: Optional[datetime] = None) -> int:
        now = self._resolve_now(now)
        local = now.astimezone(self._tz)
        next_midnight = datetime.combine(local.date() + timedelta(days=1), time(0), tzinfo=self._tz)
        # Compare in UTC so DST transitions count real elapsed seconds
        delta = next_midnight.astimezone(timezone.utc) - now.astimezone(timezone.utc)
        return max(1, math.ceil(delta.total_seconds()))

    def _cache_key(self, user_id: str, day: date) -> str:
        return f"{self._key_prefix}:allowance:{user_id}:{day.isoformat()}"

    async def _cache_get(self, user_id: str, day: date) -> Optional[DailyAllowance]:
        if self._cache is None:
            return None
        try:
            raw = await self._cache.get(self._cache_key(user_id, day))
        except CacheError as e:
            logger.warning("Allowance cache read failed, treating as miss: %s", e)
            return None
        if raw is None:
            return None
        try:
            return DailyAllowance.model_validate_json(raw)
        except ValidationError:
            logger.warning("Discarding malformed cached allowance for %s on %s", user_id, day)
            return None

    async def _cache_put(self, allowance: DailyAllowance, now: datetime) -> None:
        if self._cache is None:
            return
        try:
            await self._cache.set(
                self._cache_key(allowance.user_id, allowance.day),
                allowance.model_dump_json(),
                ttl_seconds=self.seconds_until_rollover(now),
            )
        except CacheError as e:
            logger.warning("Allowance cache write skipped: %s", e)

    async def _load_or_create(self, user_id: str, day: date, granted: int) -> DailyAllowance:
        row = await self._db.get_daily_allowance(user_id, day)
        if row is not None:
            return row
        created = await self._db.insert_daily_allowance_if_absent(
            DailyAllowance(user_id=user_id, day=day, granted=granted, remaining=granted)
        )
        # Re-read so concurrent creators all settle on the winning row
        row = await self._db.get_daily_allowance(user_id, day)
        if row is None:
            raise PersistenceConflictError(
                f"daily allowance for {user_id} on {day} vanished after insert"
            )
        if created:
            logger.info("Created daily allowance for %s on %s (%d tokens)", user_id, day, granted)
        return row

    async def get_or_create_allowance(
        self,
        user_id: str,
        plan_tier: str,
        now: Optional[datetime] = None,
    ) -> DailyAllowance:
        granted = self.granted_for(plan_tier)
        now = self._resolve_now(now)
        day = self.day_for(now)

        cached = await self._cache_get(user_id, day)
        if cached is not None:
            row = await self._db.get_daily_allowance(user_id, day)
            if row is not None:
                if row.remaining != cached.remaining or row.granted != cached.granted:
                    logger.debug(
                        "Cached allowance for %s on %s is stale (%d cached, %d stored)",
                        user_id,
                        day,
                        cached.remaining,
                        row.remaining,
                    )
                    await self._cache_put(row, now)
                return row
            # The hint outlived its row; fall through and create it

        row = await self._load_or_create(user_id, day, granted)
        await self._cache_put(row, now)
        return row

    async def get_remaining(
        self,
        user_id: str,
        plan_tier: str,
        now: Optional[datetime] = None,
    ) -> int:
        allowance = await self.get_or_create_allowance(user_id, plan_tier, now=now)
        return allowance.remaining

    async def try_consume(
        self,
        user_id: str,
        plan_tier: str,
        amount: int,
        now: Optional[datetime] = None,
    ) -> ConsumeResult:
        """
        Debit ``amount`` tokens from today's allowance, all or nothing.

        A missed conditional update is followed by a fresh durable read: a
        real shortfall is a denial, anything else is a lost race and the
        update is retried once before ``PersistenceConflictError``.
        """
        _validate_amount(amount)
        granted = self.granted_for(plan_tier)
        now = self._resolve_now(now)
        day = self.day_for(now)

        if amount == 0:
            remaining = await self.get_remaining(user_id, plan_tier, now=now)
            return ConsumeResult(granted=True, remaining=remaining)

        retried = False
        created = False
        while True:
            updated = await self._db.decrement_daily_allowance(user_id, day, amount)
            if updated is not None:
                await self._cache_put(updated, now)
                return ConsumeResult(granted=True, remaining=updated.remaining)

            fresh = await self._db.get_daily_allowance(user_id, day)
            if fresh is None and not created:
                # First metered action of the day
                fresh = await self._load_or_create(user_id, day, granted)
                created = True
            elif fresh is None:
                raise PersistenceConflictError(
                    f"daily allowance for {user_id} on {day} is missing"
                )
            elif fresh.remaining >= amount:
                if retried:
                    raise PersistenceConflictError(
                        f"daily allowance update for {user_id} on {day} kept racing"
                    )
                retried = True

            if fresh.remaining < amount:
                await self._cache_put(fresh, now)
                logger.debug(
                    "Daily allowance short for %s: requested %d, remaining %d",
                    user_id,
                    amount,
                    fresh.remaining,
                )
                return ConsumeResult(granted=False, remaining=fresh.remaining)

    async def reset_allowance(
        self,
        user_id: str,
        plan_tier: str,
        now: Optional[datetime] = None,
    ) -> DailyAllowance:
        """Restore today's allowance to the full plan grant."""
        granted = self.granted_for(plan_tier)
        now = self._resolve_now(now)
        day = self.day_for(now)

        await self._load_or_create(user_id, day, granted)
        row = await self._db.reset_daily_allowance(user_id, day, granted)
        if row is None:
            raise PersistenceConflictError(f"daily allowance for {user_id} on {day} is missing")
        await self._cache_put(row, now)

        await self._ledger.allowance_reset(row, plan_tier)
        return row
