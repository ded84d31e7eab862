"""
FastAPI application: operational API for the inbox auto-reply engine.
When AUTO_REPLY_ENABLED is set the scheduler runs inside the app process.
"""

import asyncio
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from app.config import settings
from app.db.pool import db_pool
from app.features.auto_reply.api.router import router as auto_reply_router
from app.features.auto_reply.jobs.auto_reply_job import start_auto_reply_scheduler
from app.infrastructure.observability.logging import get_logger, setup_logging
from app.middleware import RequestContextMiddleware
from app.routes import health

# Setup logging before creating the app
setup_logging(log_level=settings.LOG_LEVEL)
logger = get_logger(__name__)

SCHEDULER_SHUTDOWN_TIMEOUT_SECONDS = 60


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle application startup and shutdown with proper resource management."""

    logger.info("Application starting", environment=settings.environment, debug=settings.debug)

    logger.info("Initializing database pool")
    await db_pool.initialize()

    stop_event = asyncio.Event()
    scheduler_task: asyncio.Task | None = None

    if settings.AUTO_REPLY_ENABLED:
        scheduler_task = asyncio.create_task(start_auto_reply_scheduler(stop_event))
        logger.info("Auto-reply scheduler started")

    yield

    logger.info("Application shutting down")

    shutdown_errors = []

    if scheduler_task is not None:
        # The running tick finishes its current message before the loop exits
        stop_event.set()
        try:
            await asyncio.wait_for(scheduler_task, timeout=SCHEDULER_SHUTDOWN_TIMEOUT_SECONDS)
        except TimeoutError:
            logger.warning("Auto-reply scheduler did not stop in time, cancelling")
            scheduler_task.cancel()
            shutdown_errors.append("Scheduler: shutdown timeout")
        except Exception as e:
            logger.error("Auto-reply scheduler exited with error", error=str(e))
            shutdown_errors.append(f"Scheduler: {e}")

    try:
        logger.info("Closing database pool")
        await db_pool.close()
    except Exception as e:
        logger.error("Error closing database pool", error=str(e))
        shutdown_errors.append(f"Database: {e}")

    if shutdown_errors:
        logger.warning("Some services had shutdown errors", errors=shutdown_errors)
    else:
        logger.info("All services closed successfully")


app = FastAPI(
    title="Inbox Auto-Reply",
    description="Autonomous inbox triage and auto-reply for dental studios",
    version="0.1.0",
    lifespan=lifespan,
)

# Include routers
app.include_router(health.router)
app.include_router(auto_reply_router)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log HTTP requests with timing."""
    start_time = time.time()
    response = await call_next(request)
    process_time = (time.time() - start_time) * 1000

    logger.info(
        "HTTP request completed",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=round(process_time, 2),
    )
    return response


# Outermost: log_requests runs inside the bound request_id
app.add_middleware(RequestContextMiddleware)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
