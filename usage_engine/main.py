"""FastAPI application entry point."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.responses import HTMLResponse, JSONResponse

from usage_engine.api import admin, keys, otlp, profiles
from usage_engine.core.config import load_config
from usage_engine.core.exceptions import (
    DeadlineExceededError,
    EngineError,
    GuardrailNotFoundError,
    KeyNotFoundError,
    ReservationNotFoundError,
    StoreUnavailableError,
    ToolProfileNotFoundError,
)
from usage_engine.logging import configure_logging, get_request_id
from usage_engine.middleware.request_context import RequestContextMiddleware
from usage_engine.storage.database import init_db
from usage_engine.telemetry.events import record_event

configure_logging()

logger = logging.getLogger("usage_engine.app")

app = FastAPI(
    title="Usage Telemetry Engine",
    version="0.1.0",
    openapi_url="/api/openapi.json",
    docs_url=None,
    redoc_url=None,
)
app.include_router(otlp.router)
app.include_router(profiles.router)
app.include_router(keys.router)
app.include_router(admin.router)
app.add_middleware(RequestContextMiddleware)

# Status and machine-readable code for engine errors that reach the HTTP layer.
_ERROR_STATUS: dict[type[EngineError], tuple[int, str, str]] = {
    ToolProfileNotFoundError: (404, "not_found_error", "tool_profile_not_found"),
    KeyNotFoundError: (404, "not_found_error", "key_not_found"),
    ReservationNotFoundError: (404, "not_found_error", "reservation_not_found"),
    GuardrailNotFoundError: (404, "not_found_error", "guardrail_not_found"),
    StoreUnavailableError: (503, "service_unavailable", "store_unavailable"),
    DeadlineExceededError: (504, "timeout_error", "deadline_exceeded"),
}


@app.on_event("startup")
def on_startup() -> None:
    init_db()
    load_config()


@app.get("/healthz")
def healthcheck() -> dict:
    return {"status": "ok"}


@app.get("/api/docs", response_class=HTMLResponse)
def swagger_ui() -> HTMLResponse:
    return get_swagger_ui_html(
        openapi_url="/api/openapi.json",
        title="Usage Telemetry Engine API",
    )


@app.exception_handler(EngineError)
async def engine_exception_handler(request: Request, exc: EngineError) -> JSONResponse:
    status_code, error_type, code = next(
        (mapped for cls, mapped in _ERROR_STATUS.items() if isinstance(exc, cls)),
        (500, "internal_server_error", "engine_error"),
    )
    level = logging.ERROR if status_code >= 500 else logging.INFO
    logger.log(
        level,
        "Engine error",
        extra={
            "event": "request_engine_error",
            "path": request.url.path,
            "code": code,
            "error_message": exc.message,
        },
    )
    return JSONResponse(
        status_code=status_code,
        content={"error": {"message": exc.message, "type": error_type, "code": code}},
    )


@app.exception_handler(Exception)
async def unexpected_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "Unhandled error",
        extra={
            "event": "request_error",
            "path": request.url.path,
            "request_id": get_request_id(),
        },
    )
    record_event(
        "request_error",
        "ERROR",
        message=str(exc),
        meta={
            "path": request.url.path,
        },
    )
    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "message": "Internal server error",
                "type": "internal_server_error",
                "code": "internal_error",
            }
        },
    )
