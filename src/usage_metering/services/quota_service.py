from __future__ import annotations

import logging
from typing import List, Optional

from ..errors import (
    InvalidAmountError,
    PersistenceConflictError,
    QuotaExhaustedError,
    StorageUnavailableError,
)
from ..models.credits import CreditTransaction, PaymentEvidence
from ..models.quota import PurchaseResult, QuotaDecision, QuotaSource
from .allowance_service import DailyAllowanceService
from .ledger_service import CreditLedgerService
from .usage_service import UsageMeterService

logger = logging.getLogger(__name__)


class QuotaEnforcementService:
    """
    Single entry point request handlers call before a metered action.

    The daily allowance is spent first, purchased credits second. Estimated
    amounts are debited as-is; there is no later reconciliation against the
    actual token count. With a usage meter attached, every permitted amount
    is added to the user's monthly total and plan caps are checked first.
    """

    def __init__(
        self,
        allowances: DailyAllowanceService,
        ledger: CreditLedgerService,
        usage: Optional[UsageMeterService] = None,
    ) -> None:
        self._allowances = allowances
        self._ledger = ledger
        self._usage = usage

    @property
    def allowances(self) -> DailyAllowanceService:
        return self._allowances

    @property
    def ledger(self) -> CreditLedgerService:
        return self._ledger

    @property
    def usage(self) -> Optional[UsageMeterService]:
        return self._usage

    async def authorize_and_consume(
        self,
        user_id: str,
        plan_tier: str,
        estimated_amount: int,
        correlation_id: str | None = None,
    ) -> QuotaDecision:
        if (
            isinstance(estimated_amount, bool)
            or not isinstance(estimated_amount, int)
            or estimated_amount < 0
        ):
            raise InvalidAmountError(estimated_amount)
        # Unknown tiers are rejected before anything is read or written
        self._allowances.granted_for(plan_tier)

        if self._usage is not None:
            reason = await self._usage.cap_exceeded(user_id, plan_tier, estimated_amount)
            if reason is not None:
                return await self._deny_over_cap(user_id, plan_tier, reason)

        daily = await self._allowances.try_consume(user_id, plan_tier, estimated_amount)
        if daily.granted:
            await self._record_usage(user_id, QuotaSource.DAILY, estimated_amount)
            return QuotaDecision(
                permit=True,
                source=QuotaSource.DAILY,
                daily_remaining=daily.remaining,
                credit_balance=await self._ledger.get_balance(user_id),
            )

        credit = await self._ledger.consume(
            user_id,
            estimated_amount,
            description="Metered usage beyond daily allowance",
            correlation_id=correlation_id,
        )
        if credit.granted:
            await self._record_usage(user_id, QuotaSource.CREDIT, estimated_amount)
            return QuotaDecision(
                permit=True,
                source=QuotaSource.CREDIT,
                daily_remaining=daily.remaining,
                credit_balance=credit.remaining,
            )

        logger.info(
            "Quota denied for %s: requested %d, daily remaining %d, credit balance %d",
            user_id,
            estimated_amount,
            daily.remaining,
            credit.remaining,
        )
        return QuotaDecision(
            permit=False,
            source=QuotaSource.NONE,
            daily_remaining=daily.remaining,
            credit_balance=credit.remaining,
        )

    async def _deny_over_cap(self, user_id: str, plan_tier: str, reason: str) -> QuotaDecision:
        logger.info("Quota denied for %s: %s", user_id, reason)
        return QuotaDecision(
            permit=False,
            source=QuotaSource.NONE,
            daily_remaining=await self._allowances.get_remaining(user_id, plan_tier),
            credit_balance=await self._ledger.get_balance(user_id),
            reason=reason,
        )

    async def _record_usage(self, user_id: str, source: QuotaSource, amount: int) -> None:
        if self._usage is None:
            return
        # The debit has committed; a lost meter update must not turn it into an error
        try:
            await self._usage.record(user_id, source, amount)
        except (PersistenceConflictError, StorageUnavailableError) as e:
            logger.warning("Usage meter not updated for %s (%d tokens): %s", user_id, amount, e)

    async def ensure_quota(
        self,
        user_id: str,
        plan_tier: str,
        estimated_amount: int,
        correlation_id: str | None = None,
    ) -> QuotaDecision:
        """Like ``authorize_and_consume`` but raises ``QuotaExhaustedError`` on DENY."""
        decision = await self.authorize_and_consume(
            user_id, plan_tier, estimated_amount, correlation_id=correlation_id
        )
        if not decision.permit:
            raise QuotaExhaustedError(decision, user_id, estimated_amount)
        return decision

    async def purchase(
        self,
        user_id: str,
        package_id: str,
        payment_evidence: Optional[PaymentEvidence] = None,
        correlation_id: str | None = None,
    ) -> PurchaseResult:
        return await self._ledger.purchase(
            user_id, package_id, payment_evidence, correlation_id=correlation_id
        )

    async def list_transactions(
        self, user_id: str, limit: int | None = None
    ) -> List[CreditTransaction]:
        return await self._ledger.list_transactions(user_id, limit)
