from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse

from ..errors import (
    ContractViolationError,
    MeteringError,
    PackageInactiveError,
    PackageNotFoundError,
    PersistenceConflictError,
    SoftDenialError,
)
from ..estimation.tokens import effective_tokens, estimate_conversation
from ..models.credits import CreditTransaction
from ..services.container import MeteringServices
from .models import (
    AuthorizeRequest,
    AuthorizeResponse,
    CreditAccountResponse,
    CreditBalanceResponse,
    CreditPackageResponse,
    PackageValueResponse,
    PurchaseRequest,
    PurchaseResponse,
    UsageResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/metering", tags=["metering"])


def get_services(request: Request) -> MeteringServices:
    return request.app.state.metering


def _http_error(exc: MeteringError) -> HTTPException:
    if isinstance(exc, PackageNotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, PackageInactiveError):
        code = status.HTTP_409_CONFLICT
    elif isinstance(exc, ContractViolationError):
        code = status.HTTP_400_BAD_REQUEST
    elif isinstance(exc, SoftDenialError):
        code = status.HTTP_402_PAYMENT_REQUIRED
    elif isinstance(exc, PersistenceConflictError):
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Concurrent update in progress, try again.",
            headers={"Retry-After": "1"},
        )
    else:
        logger.error("Metering request failed: %s", exc)
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Metering storage unavailable.",
        )
    return HTTPException(status_code=code, detail=str(exc))


@router.post("/authorize", response_model=AuthorizeResponse)
async def authorize(
    payload: AuthorizeRequest,
    services: MeteringServices = Depends(get_services),
):
    """
    Pre-authorize a metered action. A DENY answers 402 with the same body so
    the client can render an upgrade prompt.
    """
    plan_tier = payload.plan_tier or services.settings.default_plan_tier
    if payload.estimated_tokens is not None:
        amount = payload.estimated_tokens
    else:
        raw = estimate_conversation(
            [m.model_dump() for m in payload.messages or []], payload.model_id or ""
        )
        amount = effective_tokens(payload.model_id or "", raw, web_search=payload.web_search)

    try:
        decision = await services.quota.authorize_and_consume(payload.user_id, plan_tier, amount)
    except MeteringError as exc:
        raise _http_error(exc) from exc

    body = AuthorizeResponse(user_id=payload.user_id, amount=amount, **decision.model_dump())
    if not decision.permit:
        return JSONResponse(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            content=body.model_dump(mode="json"),
        )
    return body


@router.get("/usage/{user_id}", response_model=UsageResponse)
async def get_usage(
    user_id: str,
    plan_tier: Optional[str] = None,
    services: MeteringServices = Depends(get_services),
) -> UsageResponse:
    plan_tier = plan_tier or services.settings.default_plan_tier
    try:
        allowance = await services.allowances.get_or_create_allowance(user_id, plan_tier)
        balance = await services.credits.get_balance(user_id)
        meter = await services.usage.get_usage(user_id)
    except MeteringError as exc:
        raise _http_error(exc) from exc
    return UsageResponse(
        user_id=user_id,
        plan_tier=plan_tier,
        day=allowance.day,
        granted=allowance.granted,
        remaining=allowance.remaining,
        credit_balance=balance,
        resets_in_seconds=services.allowances.seconds_until_rollover(),
        period_start=meter.period_start,
        month_tokens_used=meter.tokens_used,
        month_requests=meter.requests,
        monthly_cap=services.usage.cap_for(plan_tier),
    )


@router.get("/credits/balance/{user_id}", response_model=CreditBalanceResponse)
async def get_balance(
    user_id: str,
    services: MeteringServices = Depends(get_services),
) -> CreditBalanceResponse:
    try:
        balance = await services.credits.get_balance(user_id)
    except MeteringError as exc:
        raise _http_error(exc) from exc
    return CreditBalanceResponse(user_id=user_id, balance=balance)


@router.get("/credits/packages", response_model=List[CreditPackageResponse])
async def list_packages(
    include_inactive: bool = False,
    services: MeteringServices = Depends(get_services),
) -> List[CreditPackageResponse]:
    try:
        packages = await services.credits.list_packages(active_only=not include_inactive)
    except MeteringError as exc:
        raise _http_error(exc) from exc
    return [
        CreditPackageResponse(
            **p.model_dump(),
            total_credits=p.total_credits,
            price_per_credit=p.price_per_credit,
        )
        for p in packages
    ]


@router.post("/credits/purchase", response_model=PurchaseResponse)
async def purchase(
    payload: PurchaseRequest,
    services: MeteringServices = Depends(get_services),
) -> PurchaseResponse:
    try:
        result = await services.quota.purchase(
            payload.user_id,
            payload.package_id,
            payload.payment,
        )
    except MeteringError as exc:
        raise _http_error(exc) from exc
    return PurchaseResponse(
        user_id=payload.user_id,
        transaction_id=result.transaction_id,
        new_balance=result.new_balance,
    )


@router.get("/credits/transactions/{user_id}", response_model=List[CreditTransaction])
async def list_transactions(
    user_id: str,
    limit: Optional[int] = Query(default=None),
    services: MeteringServices = Depends(get_services),
) -> List[CreditTransaction]:
    try:
        return await services.quota.list_transactions(user_id, limit)
    except MeteringError as exc:
        raise _http_error(exc) from exc


@router.get("/credits/account/{user_id}", response_model=CreditAccountResponse)
async def get_account(
    user_id: str,
    services: MeteringServices = Depends(get_services),
) -> CreditAccountResponse:
    try:
        account = await services.credits.get_account(user_id)
    except MeteringError as exc:
        raise _http_error(exc) from exc
    return CreditAccountResponse(
        user_id=user_id,
        balance=account.balance,
        total_purchased=account.total_purchased,
        total_used=account.total_used,
    )


@router.get("/credits/packages/recommended", response_model=CreditPackageResponse)
async def recommend_package(
    expected_credits: int = Query(ge=0),
    services: MeteringServices = Depends(get_services),
) -> CreditPackageResponse:
    try:
        package = await services.credits.recommend_package(expected_credits)
    except MeteringError as exc:
        raise _http_error(exc) from exc
    if package is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No active credit packages.")
    return CreditPackageResponse(
        **package.model_dump(),
        total_credits=package.total_credits,
        price_per_credit=package.price_per_credit,
    )


@router.get("/credits/packages/{package_id}/value", response_model=PackageValueResponse)
async def get_package_value(
    package_id: str,
    services: MeteringServices = Depends(get_services),
) -> PackageValueResponse:
    try:
        value = await services.credits.package_value(package_id)
    except MeteringError as exc:
        raise _http_error(exc) from exc
    return PackageValueResponse(**value.model_dump())
