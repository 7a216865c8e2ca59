import asyncio
from datetime import datetime, timezone
import logging
import time
from typing import Any
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from presence.db import SessionLocal, engine
from presence.errors import ApiError, error_response
from presence.logging_utils import setup_json_logging
from presence.routers import admin, attendance, notifications
from presence.scheduler import ReconciliationScheduler
from presence.schemas import HealthResponse
from presence.services.schema_guard import SchemaGuardResult, verify_runtime_schema
from presence.settings import get_cors_origins, get_settings

settings = get_settings()
setup_json_logging(settings.log_level, service=settings.app_name)
logger = logging.getLogger("presence.request")
scheduler_logger = logging.getLogger("presence.scheduler")


app = FastAPI(title=settings.app_name, version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.state.scheduler = ReconciliationScheduler(SessionLocal, settings=settings)


@app.middleware("http")
async def request_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-Id") or str(uuid4())
    request.state.request_id = request_id
    request.state.actor = getattr(request.state, "actor", "anonymous")
    request.state.actor_id = getattr(request.state, "actor_id", None)

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
                "actor": getattr(request.state, "actor", "anonymous"),
                "actor_id": getattr(request.state, "actor_id", None),
                "attendance_id": getattr(request.state, "attendance_id", None),
                "job_name": getattr(request.state, "job_name", None),
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
    status_code = exc.status_code
    code_map = {
        401: "MISSING_IDENTITY",
        403: "FORBIDDEN",
        404: "NOT_FOUND",
    }
    code = code_map.get(status_code, "HTTP_ERROR")
    message = str(exc.detail) if exc.detail else "Request failed."
    return error_response(
        request,
        status_code=status_code,
        code=code,
        message=message,
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


app.include_router(attendance.router)
app.include_router(admin.router)
app.include_router(notifications.router)


def _default_schema_guard_result() -> SchemaGuardResult:
    return SchemaGuardResult(
        ok=False,
        checked_at_utc=datetime.now(timezone.utc),
        issues=["SCHEMA_GUARD_NOT_RUN"],
        warnings=[],
    )


@app.on_event("startup")
async def run_schema_guard() -> None:
    result = await asyncio.to_thread(verify_runtime_schema, engine)
    app.state.schema_guard_result = result
    if result.ok:
        scheduler_logger.info("schema_guard_ok", extra=result.to_dict())
        return

    scheduler_logger.error("schema_guard_failed", extra=result.to_dict())
    if settings.schema_guard_strict:
        joined_issues = "; ".join(result.issues)
        raise RuntimeError(f"Runtime schema guard failed: {joined_issues}")


@app.on_event("startup")
async def start_scheduler() -> None:
    if not settings.scheduler_enabled:
        scheduler_logger.info("scheduler_disabled")
        return
    scheduler: ReconciliationScheduler = app.state.scheduler
    scheduler.register_all()
    scheduler.start()


@app.on_event("shutdown")
async def stop_scheduler() -> None:
    scheduler: ReconciliationScheduler | None = getattr(app.state, "scheduler", None)
    if scheduler is not None:
        scheduler.shutdown()


@app.get("/health", response_model=HealthResponse)
def health() -> dict[str, Any]:
    schema_guard_result: SchemaGuardResult = getattr(app.state, "schema_guard_result", _default_schema_guard_result())
    scheduler: ReconciliationScheduler = app.state.scheduler
    return {
        "status": "ok",
        "schema_guard": schema_guard_result.to_dict(),
        "scheduler": {
            "enabled": settings.scheduler_enabled,
            "running": scheduler.scheduler.running,
            "timezone": settings.business_timezone,
            "clock_in_cutoff_hour": settings.clock_in_cutoff_hour,
            "auto_clock_out_time": settings.auto_clock_out_time,
            "jobs": scheduler.describe(),
        },
    }
