from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from readshare import db
from readshare.config import AppInfo, get_settings
from readshare.core.logging import get_logger, setup_logging
from readshare.core.runtime_state import set_scheduler_active
import readshare.models  # noqa: F401 - registers the tables
from readshare.routers import get_api_router
from readshare.services.changes import get_change_feed
from readshare.services.cron import (
    get_delivery_worker,
    heartbeat_scheduler_lock,
    process_delivery_queue_once,
    release_stale_deliveries_once,
    set_delivery_worker,
)
from readshare.services.scheduler_lock import release_scheduler_lock, try_acquire_scheduler_lock
from readshare.utils.errors import error_response

logger = get_logger(__name__)
scheduler: AsyncIOScheduler | None = None
ALLOWED_CREATE_ENV = {"dev", "local", "test"}


def _configure_middlewares(fastapi_app: FastAPI) -> None:
    runtime_settings = get_settings()
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=runtime_settings.CORS_ALLOW_ORIGINS,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-API-Key", "Last-Event-ID"],
    )

    if runtime_settings.PROMETHEUS_ENABLED:
        from starlette_exporter import PrometheusMiddleware, handle_metrics

        fastapi_app.add_middleware(PrometheusMiddleware, app_name="readshare")
        fastapi_app.add_route("/metrics", handle_metrics)

    if runtime_settings.SENTRY_DSN:
        import sentry_sdk

        sentry_sdk.init(dsn=runtime_settings.SENTRY_DSN, traces_sample_rate=0.2)


def _start_scheduler(settings: Any) -> bool:
    """Start the delivery jobs; returns whether this instance holds the lock."""

    global scheduler
    scheduler = AsyncIOScheduler()
    # Every instance drains the queue: claims keep workers apart.
    scheduler.add_job(
        process_delivery_queue_once,
        "interval",
        seconds=settings.DELIVERY_INTERVAL_SECONDS,
        id="delivery-worker",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    lock_acquired = try_acquire_scheduler_lock()
    if lock_acquired:
        scheduler.add_job(
            release_stale_deliveries_once,
            "interval",
            seconds=max(30, settings.DELIVERY_VISIBILITY_TIMEOUT_SECONDS // 2),
            id="delivery-reaper",
            replace_existing=True,
        )
        scheduler.add_job(
            heartbeat_scheduler_lock,
            "interval",
            seconds=60,
            id="scheduler-lock-heartbeat",
            replace_existing=True,
        )
    else:
        logger.warning(
            "Stale-claim reaper not scheduled; lock held by another instance.",
            extra={"env": settings.app_env},
        )
    scheduler.start()
    set_scheduler_active(True)
    return lock_acquired


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    settings = get_settings()
    logger.info("Application startup", extra={"env": settings.app_env, "sink": settings.NOTIFICATION_SINK})
    db.init_engine()
    if settings.ALLOW_DB_CREATE_ALL and settings.app_env.lower() in ALLOWED_CREATE_ENV:
        logger.warning(
            "Running Base.metadata.create_all() because APP_ENV=%s and ALLOW_DB_CREATE_ALL=True",
            settings.app_env,
        )
        db.create_all()
    else:
        logger.info(
            "Skipping create_all(); use Alembic migrations. APP_ENV=%s, ALLOW_DB_CREATE_ALL=%s",
            settings.app_env,
            settings.ALLOW_DB_CREATE_ALL,
        )

    app.state.change_feed = get_change_feed()
    app.state.delivery_worker = get_delivery_worker()

    set_scheduler_active(False)
    lock_acquired = False
    if settings.SCHEDULER_ENABLED:
        lock_acquired = _start_scheduler(settings)
    try:
        yield
    finally:
        global scheduler
        if scheduler:
            scheduler.shutdown(wait=False)
            scheduler = None
        if lock_acquired:
            release_scheduler_lock()
        set_scheduler_active(False)
        app.state.delivery_worker.close()
        set_delivery_worker(None)
        db.close_engine()
        logger.info("Application shutdown", extra={"env": settings.app_env})


app_info = AppInfo()

app = FastAPI(title=app_info.name, version=app_info.version, lifespan=lifespan)

_configure_middlewares(app)
app.include_router(get_api_router())


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception", exc_info=exc)
    payload = error_response("INTERNAL_SERVER_ERROR", "An unexpected error occurred.")
    return JSONResponse(status_code=500, content=payload)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    detail = exc.detail
    if isinstance(detail, dict) and "error" in detail:
        content: dict[str, Any] = detail
    else:
        content = error_response("HTTP_ERROR", str(detail))
    return JSONResponse(status_code=exc.status_code, content=content, headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Submitted values stay out of the body; non-finite floats cannot be rendered as JSON.
    errors = []
    for error in exc.errors():
        error = {key: value for key, value in error.items() if key != "input"}
        if "ctx" in error:
            error["ctx"] = {key: str(value) for key, value in error["ctx"].items()}
        errors.append(error)
    payload = error_response("VALIDATION_ERROR", "Request payload is invalid.", {"errors": errors})
    return JSONResponse(status_code=422, content=jsonable_encoder(payload))


__all__ = ["app"]
