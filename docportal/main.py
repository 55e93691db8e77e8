"""Document ingestion and reconciliation API - FastAPI application."""

import asyncio
import time
import traceback
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, suppress
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from docportal import __version__
from docportal.config import settings
from docportal.database import init_db
from docportal.deps import DbSession
from docportal.logger import configure_logging, get_logger
from docportal.routers import bank_accounts, documents, jobs, reconciliation, transactions
from docportal.services.job_supervisor import run_job_supervisor
from docportal.services.processing import drain

# Initialize logging early
configure_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan - init DB and the stale-job supervisor."""
    await init_db()
    stop_event = asyncio.Event()
    supervisor_task = asyncio.create_task(run_job_supervisor(stop_event))
    logger.info("Application started", version=__version__, environment=settings.environment)

    yield

    stop_event.set()
    supervisor_task.cancel()
    with suppress(asyncio.CancelledError):
        await supervisor_task
    # Let in-flight ingestion finish its current batch before the engine goes away
    await drain()
    logger.info("Application shutting down")


app = FastAPI(
    title="Document Ingestion API",
    description="Bank statement and invoice ingestion with review, reconciliation and export",
    version=__version__,
    lifespan=lifespan,
)


@app.middleware("http")
async def logging_middleware(request: Request, call_next: Any) -> Response:
    """Middleware to inject Request-ID and log request details."""
    request_id = request.headers.get("X-Request-ID", str(uuid4()))

    # Background ingestion tasks copy these contextvars when they are scheduled
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(
        request_id=request_id,
        method=request.method,
        path=request.url.path,
    )

    start_time = time.perf_counter()
    try:
        response = await call_next(request)
        duration = time.perf_counter() - start_time
        logger.info(
            "HTTP Request",
            status_code=response.status_code,
            duration_ms=round(duration * 1000, 2),
        )
        response.headers["X-Request-ID"] = request_id
        return response
    except Exception as exc:
        duration = time.perf_counter() - start_time
        logger.exception(
            "HTTP Request Failed",
            duration_ms=round(duration * 1000, 2),
            error=str(exc),
        )
        raise


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler to ensure JSON response."""
    if settings.debug:
        detail = str(exc)
        trace = traceback.format_exc()
    else:
        detail = "An internal server error occurred. Please try again later."
        trace = None

    return JSONResponse(
        status_code=500,
        content={
            "detail": detail,
            "trace": trace,
            "request_id": structlog.contextvars.get_contextvars().get("request_id"),
        },
    )


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "PATCH"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
)

app.include_router(jobs.router)
app.include_router(transactions.router)
app.include_router(reconciliation.router)
app.include_router(bank_accounts.router)
app.include_router(documents.router)


@app.get("/health")
async def health_check(db: DbSession) -> Response:
    """Liveness with a database round trip. Returns 503 when the database is unreachable."""
    try:
        await db.execute(text("SELECT 1"))
        database_ok = True
    except Exception as exc:
        logger.error("Health check: database unreachable", error=str(exc), error_type=type(exc).__name__)
        database_ok = False

    return JSONResponse(
        status_code=200 if database_ok else 503,
        content={
            "status": "healthy" if database_ok else "unhealthy",
            "timestamp": datetime.now(UTC).isoformat(),
            "checks": {"database": database_ok},
            "version": __version__,
        },
    )
