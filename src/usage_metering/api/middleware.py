"""
FastAPI/Starlette middleware that pre-authorizes metered requests.

Flow:
  1. Before the request: resolve the user from a header and debit an
     estimated token count (daily allowance first, then credits).
  2. DENY answers 402 without running the endpoint.
  3. PERMIT runs the endpoint and tags the response with the quota source.
  The debit is final; the actual usage is not reconciled afterwards.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional, Sequence

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from ..errors import ContractViolationError, InvalidAmountError, PersistenceConflictError
from ..services.quota_service import QuotaEnforcementService

logger = logging.getLogger(__name__)


class QuotaEnforcementMiddleware(BaseHTTPMiddleware):
    """
    Debits an estimate (from header or default) for every request under
    ``path_prefix`` before the endpoint runs.

    - Missing user header: 401.
    - Malformed or negative token estimate, unknown plan tier: 400.
    - Quota exhausted: 402 with the remaining daily allowance and balance.
    - Storage write conflict: 503, the client should retry.
    """

    def __init__(
        self,
        app: Any,
        quota_service: QuotaEnforcementService,
        *,
        path_prefix: str = "/api",
        user_id_header: str = "X-User-Id",
        estimated_tokens_header: str = "X-Estimated-Tokens",
        plan_tier_header: str = "X-Plan-Tier",
        default_estimated_tokens: int = 100,
        default_plan_tier: str = "free",
        skip_paths: Optional[Sequence[str]] = None,
    ) -> None:
        super().__init__(app)
        self.quota_service = quota_service
        self.path_prefix = path_prefix.rstrip("/")
        self.user_id_header = user_id_header
        self.estimated_tokens_header = estimated_tokens_header
        self.plan_tier_header = plan_tier_header
        self.default_estimated_tokens = default_estimated_tokens
        self.default_plan_tier = default_plan_tier
        self.skip_paths = tuple(skip_paths or ())

    def _should_apply(self, path: str) -> bool:
        if not path.startswith(self.path_prefix + "/") and path != self.path_prefix:
            return False
        for skip in self.skip_paths:
            if path == skip or path.startswith(skip.rstrip("/") + "/"):
                return False
        return True

    def _estimated_tokens(self, request: Request) -> int:
        """
        Header value as sent. A negative count is passed on so the quota
        service rejects it; only a missing header falls back to the default.
        """
        raw = request.headers.get(self.estimated_tokens_header)
        if raw is None:
            return self.default_estimated_tokens
        try:
            return int(raw.strip())
        except ValueError:
            raise InvalidAmountError(raw) from None

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Any]
    ) -> Response:
        if not self._should_apply(request.url.path):
            return await call_next(request)

        user_id = request.headers.get(self.user_id_header)
        if not user_id:
            return JSONResponse(
                status_code=401,
                content={"detail": f"Missing user identification ({self.user_id_header} header)."},
            )

        plan_tier = request.headers.get(self.plan_tier_header) or self.default_plan_tier

        try:
            estimated = self._estimated_tokens(request)
            decision = await self.quota_service.authorize_and_consume(
                user_id,
                plan_tier,
                estimated,
                correlation_id=request.headers.get("X-Request-Id"),
            )
        except ContractViolationError as e:
            return JSONResponse(status_code=400, content={"detail": str(e)})
        except PersistenceConflictError as e:
            logger.warning(
                "Quota middleware: write conflict, asking client to retry: %s",
                e,
                extra={"path": request.url.path, "user_id": user_id},
            )
            return JSONResponse(
                status_code=503,
                content={"detail": "Concurrent update in progress, try again."},
                headers={"Retry-After": "1"},
            )

        if not decision.permit:
            return JSONResponse(
                status_code=402,
                content={
                    "detail": "Quota exhausted for this request.",
                    "code": "QUOTA_EXHAUSTED",
                    "daily_remaining": decision.daily_remaining,
                    "credit_balance": decision.credit_balance,
                    "reason": decision.reason,
                },
            )

        request.state.quota_decision = decision
        response = await call_next(request)
        response.headers["X-Quota-Source"] = decision.source.value
        return response
