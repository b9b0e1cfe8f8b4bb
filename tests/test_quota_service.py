from __future__ import annotations

import asyncio

import pytest

from usage_metering.errors import InvalidAmountError, QuotaExhaustedError, UnknownPlanTierError
from usage_metering.logging.ledger_logger import LedgerLogger
from usage_metering.models.credits import CreditPackage
from usage_metering.models.quota import QuotaSource
from usage_metering.services.allowance_service import DailyAllowanceService
from usage_metering.services.ledger_service import CreditLedgerService
from usage_metering.services.quota_service import QuotaEnforcementService
from usage_metering.services.usage_service import UsageMeterService


def _quota(db, tmp_path, plan_caps=None) -> QuotaEnforcementService:
    ledger = LedgerLogger(db=db, file_path=tmp_path / "ledger.log")
    return QuotaEnforcementService(
        allowances=DailyAllowanceService(db=db, ledger=ledger),
        ledger=CreditLedgerService(db=db, ledger=ledger),
        usage=UsageMeterService(db=db, plan_caps=plan_caps),
    )


@pytest.mark.asyncio
async def test_daily_allowance_is_spent_before_credits(quota, credits):
    await credits.grant_bonus("user-1", 5_000)

    decision = await quota.authorize_and_consume("user-1", "free", 1_000)
    assert decision.permit is True
    assert decision.source == QuotaSource.DAILY
    assert decision.daily_remaining == 39_000
    assert decision.credit_balance == 5_000


@pytest.mark.asyncio
async def test_credits_cover_what_the_daily_allowance_cannot(quota, credits):
    await credits.add_package(CreditPackage(id="bulk", name="Bulk", price=399.0, credits=500_000))
    await quota.purchase("user-1", "bulk")

    first = await quota.authorize_and_consume("user-1", "free", 25_000)
    assert first.source == QuotaSource.DAILY

    # 15000 left today is not enough; nothing is taken from it
    second = await quota.authorize_and_consume("user-1", "free", 20_000)
    assert second.permit is True
    assert second.source == QuotaSource.CREDIT
    assert second.daily_remaining == 15_000
    assert second.credit_balance == 480_000


@pytest.mark.asyncio
async def test_deny_reports_both_sources(quota, credits):
    await credits.grant_bonus("user-1", 300)
    await quota.authorize_and_consume("user-1", "free", 39_500)

    decision = await quota.authorize_and_consume("user-1", "free", 1_000)
    assert decision.permit is False
    assert decision.source == QuotaSource.NONE
    assert decision.daily_remaining == 500
    assert decision.credit_balance == 300


@pytest.mark.asyncio
async def test_ensure_quota_raises_on_deny(quota):
    await quota.ensure_quota("user-1", "free", 40_000)

    with pytest.raises(QuotaExhaustedError) as excinfo:
        await quota.ensure_quota("user-1", "free", 1)
    assert excinfo.value.decision.permit is False
    assert excinfo.value.requested == 1


@pytest.mark.asyncio
async def test_transactions_listed_through_facade(quota, credits):
    await credits.grant_bonus("user-1", 50_000)
    await quota.authorize_and_consume("user-1", "free", 40_000)
    await quota.authorize_and_consume("user-1", "free", 2_000)

    txs = await quota.list_transactions("user-1", limit=10)
    assert [t.amount for t in txs] == [-2_000, 50_000]


@pytest.mark.asyncio
async def test_concurrent_credit_consumes_never_overspend(interleaving_db, tmp_path):
    db = interleaving_db
    quota = _quota(db, tmp_path)
    await quota.ledger.grant_bonus("user-1", 1_000)
    await quota.authorize_and_consume("user-1", "free", 40_000)

    decisions = await asyncio.gather(
        *[quota.authorize_and_consume("user-1", "free", 400) for _ in range(3)]
    )
    assert sorted(d.source for d in decisions) == sorted(
        [QuotaSource.CREDIT, QuotaSource.CREDIT, QuotaSource.NONE]
    )
    assert await db.get_balance_snapshot("user-1") == (200, 200)

    meter = await quota.usage.get_usage("user-1")
    assert meter.credit_tokens == 800
    assert meter.requests == 3


@pytest.mark.asyncio
async def test_permitted_amounts_are_metered_per_source(db, tmp_path):
    quota = _quota(db, tmp_path)
    await quota.ledger.grant_bonus("user-1", 50_000)

    await quota.authorize_and_consume("user-1", "free", 30_000)
    await quota.authorize_and_consume("user-1", "free", 20_000)
    denied = await quota.authorize_and_consume("user-1", "free", 90_000)
    assert denied.permit is False

    meter = await quota.usage.get_usage("user-1")
    assert meter.tokens_used == 50_000
    assert meter.daily_tokens == 30_000
    assert meter.credit_tokens == 20_000
    # Denials are not metered
    assert meter.requests == 2


@pytest.mark.asyncio
async def test_monthly_cap_denies_before_any_debit(db, tmp_path):
    quota = _quota(db, tmp_path, plan_caps={"free": 50_000})
    await quota.ledger.grant_bonus("user-1", 100_000)

    await quota.authorize_and_consume("user-1", "free", 40_000)
    at_cap = await quota.authorize_and_consume("user-1", "free", 10_000)
    assert at_cap.permit is True

    decision = await quota.authorize_and_consume("user-1", "free", 1)
    assert decision.permit is False
    assert decision.source == QuotaSource.NONE
    assert "monthly cap reached" in decision.reason
    assert decision.daily_remaining == 0
    assert decision.credit_balance == 90_000
    assert (await quota.usage.get_usage("user-1")).tokens_used == 50_000

    # Uncapped plans are not affected
    assert (await quota.authorize_and_consume("user-2", "pro", 60_000)).permit is True


@pytest.mark.asyncio
async def test_invalid_requests_rejected_before_the_cap_check(db, tmp_path):
    quota = _quota(db, tmp_path, plan_caps={"free": 0})
    with pytest.raises(InvalidAmountError):
        await quota.authorize_and_consume("user-1", "free", -5)
    with pytest.raises(UnknownPlanTierError):
        await quota.authorize_and_consume("user-1", "enterprise", 5)
