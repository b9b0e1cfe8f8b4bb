"""
Application factory: the metering router plus quota enforcement for
routes under ``settings.quota_path_prefix``.

Run:
  uvicorn usage_metering.api.app:create_app --factory
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional, Sequence

from fastapi import FastAPI

from ..config import Settings, get_settings
from ..services.container import MeteringServices, build_services
from .middleware import QuotaEnforcementMiddleware
from .router import router


def create_app(
    settings: Optional[Settings] = None,
    services: Optional[MeteringServices] = None,
    *,
    skip_paths: Optional[Sequence[str]] = None,
) -> FastAPI:
    settings = settings or (services.settings if services is not None else get_settings())
    services = services or build_services(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await services.start()
        try:
            yield
        finally:
            await services.stop()

    app = FastAPI(title="Usage metering", lifespan=lifespan)
    app.state.metering = services
    app.include_router(router)
    app.add_middleware(
        QuotaEnforcementMiddleware,
        quota_service=services.quota,
        path_prefix=settings.quota_path_prefix,
        user_id_header=settings.user_id_header,
        estimated_tokens_header=settings.estimated_tokens_header,
        plan_tier_header=settings.plan_tier_header,
        default_estimated_tokens=settings.default_estimated_tokens,
        default_plan_tier=settings.default_plan_tier,
        skip_paths=skip_paths,
    )
    return app
