"""
Generic background worker runner.

Reads the desired job name from CLI args or the WORKER_JOB environment
variable and delegates to the appropriate scheduler. SIGINT/SIGTERM set the
stop event so the running tick can finish its current message.
"""

import asyncio
import os
import signal
import sys
from collections.abc import Awaitable, Callable

from app.config import settings
from app.db.pool import db_pool
from app.features.auto_reply.jobs.auto_reply_job import run_auto_reply_job, start_auto_reply_scheduler
from app.infrastructure.observability.logging import get_logger, setup_logging

logger = get_logger(__name__)

JobCoroutine = Callable[[asyncio.Event], Awaitable[object]]


async def _run_auto_reply_once(stop_event: asyncio.Event) -> None:
    await db_pool.initialize()
    try:
        await run_auto_reply_job()
    finally:
        await db_pool.close()


JOB_REGISTRY: dict[str, JobCoroutine] = {
    "auto_reply": start_auto_reply_scheduler,
    "auto_reply_once": _run_auto_reply_once,
}


def _resolve_job_name() -> str:
    """Pick the target job from CLI args or WORKER_JOB env variable."""
    if len(sys.argv) > 1:
        return sys.argv[1].strip().lower()
    return os.getenv("WORKER_JOB", "auto_reply").strip().lower()


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops have no signal handler support
            logger.debug("Signal handlers unavailable", signal=sig.name)


async def run_worker(job_name: str | None = None, stop_event: asyncio.Event | None = None) -> None:
    """Run the requested background job."""
    name = (job_name or _resolve_job_name()).strip().lower()
    if name not in JOB_REGISTRY:
        raise ValueError(
            f"Unknown worker job '{name}'. "
            f"Available jobs: {', '.join(sorted(JOB_REGISTRY.keys()))}"
        )

    if stop_event is None:
        stop_event = asyncio.Event()
        _install_signal_handlers(stop_event)

    logger.info("Starting background worker", job=name)
    await JOB_REGISTRY[name](stop_event)


def main() -> None:
    """CLI entrypoint."""
    setup_logging(log_level=settings.LOG_LEVEL)
    job_name = _resolve_job_name()
    asyncio.run(run_worker(job_name))


if __name__ == "__main__":
    main()
