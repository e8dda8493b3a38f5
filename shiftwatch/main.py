import asyncio
import logging
import time
from contextlib import suppress
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from shiftwatch.errors import ApiError, error_response
from shiftwatch.logging_utils import setup_json_logging
from shiftwatch.routers import admin, guard
from shiftwatch.services.alert_generator import sweep_missed_windows
from shiftwatch.services.fanout import get_notification_fanout
from shiftwatch.settings import get_cors_origins, get_settings

setup_json_logging()
logger = logging.getLogger("shiftwatch.request")
alert_sweep_logger = logging.getLogger("shiftwatch.alert_sweep")
settings = get_settings()

app = FastAPI(title=settings.app_name, version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-Id") or str(uuid4())
    request.state.request_id = request_id
    request.state.actor = getattr(request.state, "actor", "system")
    request.state.actor_id = getattr(request.state, "actor_id", "system")

    start = time.perf_counter()
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        response.headers["X-Request-Id"] = request_id
        return response
    finally:
        latency_ms = round((time.perf_counter() - start) * 1000, 2)
        logger.info(
            "request_complete",
            extra={
                "request_id": request_id,
                "path": request.url.path,
                "method": request.method,
                "status_code": status_code,
                "latency_ms": latency_ms,
                "actor": getattr(request.state, "actor", "system"),
                "actor_id": getattr(request.state, "actor_id", "system"),
                "shift_id": getattr(request.state, "shift_id", None),
            },
        )


@app.exception_handler(ApiError)
async def handle_api_error(request: Request, exc: ApiError) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
    )


@app.exception_handler(HTTPException)
async def handle_http_exception(request: Request, exc: HTTPException) -> JSONResponse:
    code_map = {
        401: "INVALID_TOKEN",
        403: "FORBIDDEN",
        404: "NOT_FOUND",
        429: "TOO_MANY_ATTEMPTS",
    }
    return error_response(
        request,
        status_code=exc.status_code,
        code=code_map.get(exc.status_code, "HTTP_ERROR"),
        message=str(exc.detail) if exc.detail else "Request failed.",
    )


@app.exception_handler(RequestValidationError)
async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(
        request,
        status_code=422,
        code="VALIDATION_ERROR",
        message=str(exc.errors()),
    )


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "unhandled_error",
        extra={
            "request_id": getattr(request.state, "request_id", "unknown"),
            "path": request.url.path,
            "method": request.method,
        },
    )
    return error_response(
        request,
        status_code=500,
        code="INTERNAL_ERROR",
        message="Unexpected server error.",
    )


app.include_router(guard.router)
app.include_router(admin.router)


async def run_alert_sweep_once(now_utc: datetime | None = None) -> list[dict[str, Any]]:
    """Sweep for missed windows and publish ``alert_created`` for each new alert."""
    reference_utc = now_utc or datetime.now(timezone.utc)
    created = await asyncio.to_thread(sweep_missed_windows, reference_utc)
    fanout = get_notification_fanout()
    for payload in created:
        await fanout.publish_alert("alert_created", payload)
    return created


async def _alert_sweep_loop(stop_event: asyncio.Event) -> None:
    interval_seconds = max(5, int(settings.alert_sweep_interval_seconds))
    while not stop_event.is_set():
        try:
            created = await run_alert_sweep_once()
        except Exception:
            alert_sweep_logger.exception("alert_sweep_tick_failed")
        else:
            if created:
                alert_sweep_logger.info(
                    "alert_sweep_tick",
                    extra={"created_alerts": len(created)},
                )

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            continue


@app.on_event("startup")
async def start_alert_sweep() -> None:
    if not settings.alert_sweep_enabled:
        return
    if getattr(app.state, "alert_sweep_task", None) is not None:
        return

    stop_event = asyncio.Event()
    app.state.alert_sweep_stop_event = stop_event
    app.state.alert_sweep_task = asyncio.create_task(_alert_sweep_loop(stop_event))
    alert_sweep_logger.info(
        "alert_sweep_started",
        extra={"interval_seconds": max(5, int(settings.alert_sweep_interval_seconds))},
    )


@app.on_event("shutdown")
async def stop_alert_sweep() -> None:
    stop_event: asyncio.Event | None = getattr(app.state, "alert_sweep_stop_event", None)
    task: asyncio.Task[None] | None = getattr(app.state, "alert_sweep_task", None)
    if stop_event is not None:
        stop_event.set()
    if task is not None:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
    app.state.alert_sweep_stop_event = None
    app.state.alert_sweep_task = None


@app.on_event("shutdown")
async def close_notification_broker() -> None:
    await get_notification_fanout().close()


@app.get("/health")
def health() -> dict[str, Any]:
    return {
        "status": "ok",
        "notification_backend": settings.notification_backend,
        "token_version_cache_backend": settings.token_version_cache_backend,
        "alert_sweep_running": getattr(app.state, "alert_sweep_task", None) is not None,
    }
