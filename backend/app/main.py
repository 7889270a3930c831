"""FastAPI application entry point."""

import asyncio
import logging
import os
import sys
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config import get_settings
from app.db import trace_store
from app.db.database import close_database, init_database
from app.db.trace_store import cutoff
from app.errors import ErrorCode, ValidationFailed, WorkbenchError
from app.llm import close_openai_client
from app.services.cleanup_queue import get_cleanup_queue
from app.services.execution_tracker import get_tracker
from app.services.reconciler import get_reconciler

# Configure logging
log_level = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, log_level, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    stream=sys.stdout,
)

logger = logging.getLogger(__name__)

# Background task handle
_maintenance_task: asyncio.Task | None = None


async def run_maintenance() -> None:
    """One pass of the periodic sweeps. Each sweep fails independently."""
    settings = get_settings()
    try:
        await get_tracker().sweep_all_orphans()
    except Exception as e:
        logger.exception(f"Orphaned trace sweep failed: {e}")

    reconciler = get_reconciler()
    await reconciler.cleanup_orphaned_pending()
    try:
        await reconciler.purge_old_pending()
    except Exception as e:
        logger.exception(f"Pending response purge failed: {e}")

    try:
        await trace_store.purge_rate_windows(cutoff(settings.rate_limit.window_seconds * 2))
    except Exception as e:
        logger.exception(f"Rate window purge failed: {e}")


async def maintain_periodically() -> None:
    """Background task running the maintenance sweeps on an interval."""
    interval = get_settings().maintenance_interval_seconds
    while True:
        await run_maintenance()
        await asyncio.sleep(interval)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup and shutdown."""
    global _maintenance_task

    # Startup
    settings = get_settings()
    await init_database(settings.database_path)

    cleanup_queue = get_cleanup_queue()
    await cleanup_queue.start()

    _maintenance_task = asyncio.create_task(maintain_periodically())
    logger.info("Started maintenance background task")

    yield

    # Shutdown
    if _maintenance_task:
        _maintenance_task.cancel()
        try:
            await _maintenance_task
        except asyncio.CancelledError:
            pass
        logger.info("Stopped maintenance background task")

    await cleanup_queue.stop()
    await close_openai_client()
    await close_database()


app = FastAPI(
    title="Prompt Workbench",
    description="Execution tracing, family threads and provider calls for prompt trees",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware - allow any localhost port for local frontends
app.add_middleware(
    CORSMiddleware,
    allow_origin_regex=r"^http://localhost(:\d+)?$",
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(WorkbenchError)
async def workbench_error_handler(request: Request, exc: WorkbenchError) -> JSONResponse:
    """Render a WorkbenchError with its code's status."""
    headers = None
    if exc.code == ErrorCode.RATE_LIMITED and exc.retry_after:
        headers = {"Retry-After": str(int(exc.retry_after))}
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict(), headers=headers)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Render body validation failures as VALIDATION_ERROR."""
    details = [
        {"loc": [str(part) for part in err["loc"]], "msg": err["msg"], "type": err["type"]}
        for err in exc.errors()
    ]
    error = ValidationFailed("Invalid request", details=details)
    return JSONResponse(status_code=error.http_status, content=error.to_dict())


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy"}


# Import and include routers after app is created to avoid circular imports
from app.api import execution, prompts, responses, runs, webhooks  # noqa: E402

app.include_router(execution.router, prefix="/api/v1", tags=["execution"])
app.include_router(runs.router, prefix="/api/v1", tags=["runs"])
app.include_router(responses.router, prefix="/api/v1", tags=["responses"])
app.include_router(webhooks.router, prefix="/api/v1", tags=["webhooks"])
app.include_router(prompts.router, prefix="/api/v1", tags=["prompts"])
