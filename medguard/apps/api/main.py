from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
import logging
from typing import AsyncIterator

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from medguard.apps.api.errors import (
    http_exception_handler,
    medguard_exception_handler,
    starlette_http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from medguard.apps.api.headers import security_headers_middleware
from medguard.apps.api.response import API_VERSION
from medguard.apps.api.routes.audit import router as audit_router
from medguard.apps.api.routes.devices import router as devices_router
from medguard.apps.api.routes.health import router as health_router
from medguard.apps.api.routes.incidents import router as incidents_router
from medguard.apps.api.routes.medical_records import router as medical_records_router
from medguard.apps.api.routes.rate_limits_admin import router as rate_limits_admin_router
from medguard.apps.api.routes.tenants_admin import router as tenants_admin_router
from medguard.apps.api.security import security_pipeline_middleware
from medguard.core.config import get_settings
from medguard.core.errors import MedguardError
from medguard.core.logging import configure_logging
from medguard.persistence.db import SessionLocal
from medguard.services.audit import get_audit_trail
from medguard.services.events import get_event_bus
from medguard.services.incidents import process_notifications, subscribe_anomaly_handler
from medguard.services.rate_limiting import get_rate_limiter
from medguard.services.scheduler import RecurringTask


logger = logging.getLogger(__name__)


async def _deliver_notifications() -> None:
    async with SessionLocal() as session:
        result = await process_notifications(session)
    if result.sent or result.failed or result.retried:
        logger.info(
            "breach_notifications_processed sent=%s failed=%s retried=%s",
            result.sent,
            result.failed,
            result.retried,
        )


async def _log_activity_report() -> None:
    # Platform-wide summary of the last reporting interval.
    end = datetime.now(timezone.utc)
    start = end - timedelta(seconds=get_settings().activity_report_interval_s)
    report = await get_audit_trail().generate_activity_report(start, end)
    logger.info(
        "audit_activity_report total=%s phi_access=%s violations=%s denials=%s critical=%s",
        report["total_events"],
        report["phi_access_events"],
        report["security_violations"],
        report["permission_denials"],
        report["critical_events"],
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    bus = get_event_bus()
    audit = get_audit_trail()
    limiter = get_rate_limiter()
    tasks: list[RecurringTask] = []
    if settings.background_jobs_enabled:
        subscribe_anomaly_handler(bus)
        audit.start()
        limiter.start()
        tasks = [
            RecurringTask("breach-notifications", settings.notification_poll_interval_s, _deliver_notifications),
            RecurringTask("activity-report", settings.activity_report_interval_s, _log_activity_report),
        ]
        for task in tasks:
            task.start()
    try:
        yield
    finally:
        for task in tasks:
            await task.stop()
        await limiter.stop()
        # Final flush so buffered audit entries survive a clean shutdown.
        await audit.stop()
        await bus.drain()


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="MedGuard API", lifespan=lifespan, docs_url=None, redoc_url=None)

    # Registered first so it runs inside the header layer.
    app.middleware("http")(security_pipeline_middleware)
    # Outermost: throttled, rejected and failed responses all carry the security headers.
    app.middleware("http")(security_headers_middleware)

    @app.exception_handler(MedguardError)
    async def _medguard_exception_handler(request: Request, exc: MedguardError):
        return await medguard_exception_handler(request, exc)

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    # Mount versioned v1 API routes.
    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(tenants_admin_router, prefix=f"/{API_VERSION}")
    app.include_router(rate_limits_admin_router, prefix=f"/{API_VERSION}")
    app.include_router(audit_router, prefix=f"/{API_VERSION}")
    app.include_router(incidents_router, prefix=f"/{API_VERSION}")
    app.include_router(devices_router, prefix=f"/{API_VERSION}")
    app.include_router(medical_records_router, prefix=f"/{API_VERSION}")

    @app.get("/v1/openapi.json", include_in_schema=False)
    async def openapi_json() -> JSONResponse:
        return JSONResponse(app.openapi())

    @app.get("/v1/docs", include_in_schema=False)
    async def v1_docs() -> HTMLResponse:
        return get_swagger_ui_html(openapi_url="/v1/openapi.json", title="MedGuard API v1")

    @app.get("/docs", include_in_schema=False)
    async def docs_redirect() -> RedirectResponse:
        return RedirectResponse(url="/v1/docs")

    return app


app = create_app()
