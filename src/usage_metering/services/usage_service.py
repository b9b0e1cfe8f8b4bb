from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import Dict, Mapping, Optional
from zoneinfo import ZoneInfo

from ..db.base import BaseDBManager
from ..errors import InvalidAmountError
from ..models.base import utcnow
from ..models.quota import QuotaSource
from ..models.usage import UsageMeter

logger = logging.getLogger(__name__)


class UsageMeterService:
    """
    Cumulative token consumption per user and calendar month.

    Every permitted amount is added to the month's meter, whichever source
    paid for it. Plans listed in ``plan_caps`` also get a monthly ceiling:
    a request that would push ``tokens_used`` past it is refused before any
    debit. The cap is soft under concurrency, since usage is recorded after
    the debit rather than reserved ahead of it.
    """

    def __init__(
        self,
        db: BaseDBManager,
        plan_caps: Optional[Mapping[str, int]] = None,
        reference_timezone: str = "UTC",
    ) -> None:
        self._db = db
        self._plan_caps: Dict[str, int] = dict(plan_caps or {})
        self._tz = ZoneInfo(reference_timezone)

    def period_for(self, now: Optional[datetime] = None) -> date:
        """First day of the reference-timezone month containing ``now``."""
        if now is None:
            now = utcnow()
        elif now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return now.astimezone(self._tz).date().replace(day=1)

    def cap_for(self, plan_tier: str) -> Optional[int]:
        return self._plan_caps.get(plan_tier)

    async def get_usage(self, user_id: str, now: Optional[datetime] = None) -> UsageMeter:
        period = self.period_for(now)
        meter = await self._db.get_usage_meter(user_id, period)
        return meter or UsageMeter(user_id=user_id, period_start=period)

    async def cap_exceeded(
        self,
        user_id: str,
        plan_tier: str,
        amount: int,
        now: Optional[datetime] = None,
    ) -> Optional[str]:
        """Reason the request would break the plan's monthly cap, else None."""
        cap = self.cap_for(plan_tier)
        if cap is None:
            return None
        used = (await self.get_usage(user_id, now)).tokens_used
        if used + amount <= cap:
            return None
        return (
            f"monthly cap reached: used {used} + requested {amount} "
            f"would exceed the {cap} token limit of plan {plan_tier!r}"
        )

    async def record(
        self,
        user_id: str,
        source: QuotaSource,
        amount: int,
        now: Optional[datetime] = None,
    ) -> UsageMeter:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount < 0:
            raise InvalidAmountError(amount)
        if source == QuotaSource.NONE:
            raise ValueError("denied requests are not metered")
        daily = amount if source == QuotaSource.DAILY else 0
        meter = await self._db.add_usage(
            user_id, self.period_for(now), daily_tokens=daily, credit_tokens=amount - daily
        )
        logger.debug(
            "Metered %d tokens for %s from %s (month total %d)",
            amount,
            user_id,
            source.value,
            meter.tokens_used,
        )
        return meter
