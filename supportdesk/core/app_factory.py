from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ..presentation.api.routers import admin as admin_router
from ..presentation.api.routers import billing as billing_router
from ..presentation.api.routers import subscriptions as subscriptions_router
from .config import Settings
from .container import ApplicationContainer, build_container
from .logging import configure_logging

logger = logging.getLogger(__name__)


def create_application(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings()

    app = FastAPI(title="Support Desk Billing", lifespan=_create_lifespan(settings))

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(admin_router.router)
    app.include_router(subscriptions_router.router)
    app.include_router(billing_router.router)

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        container: ApplicationContainer = app.state.container  # type: ignore[attr-defined]
        return {
            "ok": True,
            "gateway_configured": container.gateway is not None,
            "scheduler_running": container.job_scheduler.is_running,
            "last_billing_run": container.job_scheduler.last_run(),
        }

    return app


def _create_lifespan(settings: Settings):
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        configure_logging()
        container = build_container(settings)
        container.admin_auth_service.ensure_default_admin(
            settings.admin_default_email, settings.admin_default_password
        )
        app.state.container = container  # type: ignore[attr-defined]

        if settings.billing_scheduler_enabled:
            await container.job_scheduler.start()
        else:
            logger.info("Billing scheduler disabled; run jobs via the API or scripts/run_billing_jobs.py.")

        try:
            yield
        finally:
            await container.job_scheduler.stop()
            container.persistence.close()

    return lifespan
