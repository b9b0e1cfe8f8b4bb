from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ..cache.base import AsyncCacheBackend
from ..cache.factory import create_cache
from ..config import Settings, get_settings
from ..db.base import BaseDBManager
from ..db.factory import create_db_manager
from ..logging.ledger_logger import LedgerLogger
from .allowance_service import DailyAllowanceService
from .ledger_service import CreditLedgerService
from .quota_service import QuotaEnforcementService
from .usage_service import UsageMeterService

logger = logging.getLogger(__name__)


@dataclass
class MeteringServices:
    """Everything a process needs to meter requests, sharing one store and cache."""

    settings: Settings
    db: BaseDBManager
    cache: AsyncCacheBackend
    ledger_logger: LedgerLogger
    allowances: DailyAllowanceService
    credits: CreditLedgerService
    usage: UsageMeterService
    quota: QuotaEnforcementService

    async def start(self) -> None:
        await self.db.connect()

    async def stop(self) -> None:
        await self.cache.close()
        await self.db.close()


def build_services(
    settings: Optional[Settings] = None,
    *,
    db: Optional[BaseDBManager] = None,
    cache: Optional[AsyncCacheBackend] = None,
    ledger_log_path: Optional[Path] = None,
) -> MeteringServices:
    """
    Wire the metering stack from settings. ``db`` and ``cache`` override the
    configured backends (tests pass in-memory ones).
    """
    settings = settings or get_settings()
    db = db or create_db_manager(settings)
    cache = cache or create_cache(settings)
    log_path = ledger_log_path or (Path(settings.ledger_log_path) if settings.ledger_log_path else None)
    ledger_logger = LedgerLogger(db=db, file_path=log_path)

    allowances = DailyAllowanceService(
        db=db,
        ledger=ledger_logger,
        cache=cache,
        plan_allowances=settings.plan_allowances,
        reference_timezone=settings.reference_timezone,
        key_prefix=settings.cache_key_prefix,
    )
    credits = CreditLedgerService(
        db=db,
        ledger=ledger_logger,
        default_transactions_limit=settings.default_transactions_limit,
        max_transactions_limit=settings.max_transactions_limit,
    )
    usage = UsageMeterService(
        db=db,
        plan_caps=settings.plan_monthly_caps,
        reference_timezone=settings.reference_timezone,
    )
    quota = QuotaEnforcementService(allowances=allowances, ledger=credits, usage=usage)
    logger.info(
        "Metering services ready (backend=%s, cache=%r)", settings.database_backend, cache
    )
    return MeteringServices(
        settings=settings,
        db=db,
        cache=cache,
        ledger_logger=ledger_logger,
        allowances=allowances,
        credits=credits,
        usage=usage,
        quota=quota,
    )
