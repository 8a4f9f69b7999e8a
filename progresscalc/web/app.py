"""FastAPI application for the ProgressCalc JSON API."""

from __future__ import annotations

from contextlib import asynccontextmanager
from uuid import uuid4

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from progresscalc.config import get_config
from progresscalc.core.logging import configure_logging
from progresscalc.db.connection import close_db
from progresscalc.exceptions import (
    ComponentNotFoundError,
    ConcurrencyConflict,
    MilestoneStateError,
    ProgressCalcError,
    TemplateNotFoundError,
    TemplatePermissionError,
    TransactionFailure,
    WeightValidationError,
)
from progresscalc.web.routes import components, templates

logger = structlog.get_logger()

# First match wins; subclasses before their bases
ERROR_STATUS: list[tuple[type[ProgressCalcError], int]] = [
    (WeightValidationError, 422),
    (MilestoneStateError, 422),
    (TemplateNotFoundError, 404),
    (ComponentNotFoundError, 404),
    (TemplatePermissionError, 403),
    (ConcurrencyConflict, 409),
    (TransactionFailure, 503),
]


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        structlog.contextvars.clear_contextvars()

        request_id = request.headers.get("X-Request-ID", str(uuid4()))
        structlog.contextvars.bind_contextvars(
            request_id=request_id, actor_id=request.headers.get("X-Actor-Id")
        )

        logger.info("request_started", method=request.method, path=request.url.path)
        try:
            response = await call_next(request)
        except Exception as exc:
            logger.error("request_failed", error=str(exc))
            raise

        logger.info("request_completed", status_code=response.status_code)
        return response


def error_status(exc: ProgressCalcError) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return 500


async def progresscalc_error_handler(request: Request, exc: ProgressCalcError) -> JSONResponse:
    status_code = error_status(exc)
    content: dict = {
        "detail": str(exc),
        "error": type(exc).__name__,
        "retryable": exc.retryable,
    }
    if isinstance(exc, WeightValidationError):
        content.update(errors=exc.errors, total=exc.total, fields=exc.fields)
    elif isinstance(exc, MilestoneStateError):
        content.update(errors=exc.errors)

    log = logger.warning if status_code < 500 else logger.error
    log("request_rejected", error=type(exc).__name__, status_code=status_code, detail=str(exc))
    return JSONResponse(status_code=status_code, content=content)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await close_db()


def create_app() -> FastAPI:
    config = get_config()
    configure_logging(config.log_level, config.log_format)

    app = FastAPI(
        title="ProgressCalc",
        description="Milestone weight templates and component progress",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.add_exception_handler(ProgressCalcError, progresscalc_error_handler)

    app.include_router(templates.router)
    app.include_router(components.router)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app
