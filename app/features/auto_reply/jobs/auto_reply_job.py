"""
Auto-reply scheduler job.

Every tick polls the unread inbox of each studio with a connected mailbox and
runs new messages through the reply pipeline. Ticks never overlap; studios are
processed concurrently and a failure in one never affects the others.
"""

import asyncio
import time
import uuid
from datetime import UTC, datetime, timedelta

import structlog

from app.config import settings
from app.db.pool import db_pool
from app.features.auto_reply.domain import ProcessOutcome, ProcessResult, Tenant
from app.features.auto_reply.repository.tenant_repository import TenantRepository
from app.features.auto_reply.services.auto_reply_service import AutoReplyService, auto_reply_service
from app.features.auto_reply.services.mailbox_gateway import MailboxAuthError, MailboxTransientError
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

JOB_NAME = "auto_reply"


class AutoReplyJobError(Exception):
    """Custom exception for auto-reply job operations."""

    def __init__(self, message: str, operation: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


class AutoReplyMetrics:
    """Per-tick counters for the auto-reply job."""

    def __init__(self):
        self.reset()

    def reset(self):
        """Reset all metrics for a new tick."""
        self.start_time = datetime.now(UTC)
        self.tenants_total = 0
        self.tenants_processed = 0
        self.tenants_auth_failed = 0
        self.tenants_errored = 0
        self.messages_seen = 0
        self.replied = 0
        self.skipped = 0
        self.failed = 0
        self.transient = 0
        self.already_handled = 0
        self.calendar_events = 0
        self.total_duration_seconds = 0.0
        self.errors: list[dict] = []

    def record_result(self, result: ProcessResult):
        self.messages_seen += 1

        if result.outcome is ProcessOutcome.REPLIED:
            self.replied += 1
            if result.calendar_event_id:
                self.calendar_events += 1
        elif result.outcome is ProcessOutcome.SKIPPED:
            self.skipped += 1
        elif result.outcome is ProcessOutcome.FAILED:
            self.failed += 1
        elif result.outcome is ProcessOutcome.TRANSIENT:
            self.transient += 1
        else:
            self.already_handled += 1

    def record_tenant_done(self, tenant_id: str, duration_ms: float):
        self.tenants_processed += 1
        logger.debug("Studio inbox processed", tenant_id=tenant_id, duration_ms=round(duration_ms, 1))

    def record_auth_failure(self, tenant_id: str, error: str):
        """The studio must reconnect; it is retried on the next tick only."""
        self.tenants_auth_failed += 1
        self.errors.append(
            {
                "tenant_id": tenant_id,
                "error": error,
                "error_type": "auth",
                "timestamp": datetime.now(UTC).isoformat(),
            }
        )
        logger.warning("Studio mailbox authorization failed", tenant_id=tenant_id, error=error)

    def record_tenant_error(self, tenant_id: str, error: str):
        self.tenants_errored += 1
        self.errors.append(
            {
                "tenant_id": tenant_id,
                "error": error,
                "error_type": "processing",
                "timestamp": datetime.now(UTC).isoformat(),
            }
        )
        logger.error("Studio inbox processing error", tenant_id=tenant_id, error=error)

    def finalize(self):
        self.total_duration_seconds = (datetime.now(UTC) - self.start_time).total_seconds()

    def to_dict(self) -> dict:
        """Convert metrics to dictionary for logging."""
        return {
            "job_run": JOB_NAME,
            "start_time": self.start_time.isoformat(),
            "total_duration_seconds": round(self.total_duration_seconds, 2),
            "tenants_total": self.tenants_total,
            "tenants_processed": self.tenants_processed,
            "tenants_auth_failed": self.tenants_auth_failed,
            "tenants_errored": self.tenants_errored,
            "messages_seen": self.messages_seen,
            "replied": self.replied,
            "skipped": self.skipped,
            "failed": self.failed,
            "transient": self.transient,
            "already_handled": self.already_handled,
            "calendar_events": self.calendar_events,
            "errors_count": len(self.errors),
        }


class AutoReplyJob:
    """
    Background job polling studio inboxes.

    `run_once` is guarded by `is_running`: a call made while a tick is in
    progress returns immediately without doing any work.
    """

    def __init__(
        self,
        service: AutoReplyService | None = None,
        tenant_repository: type[TenantRepository] = TenantRepository,
        max_concurrent_tenants: int | None = None,
        fetch_limit: int | None = None,
        fetch_query: str | None = None,
    ):
        self.service = service or auto_reply_service
        self.tenant_repository = tenant_repository
        self.max_concurrent_tenants = (
            max_concurrent_tenants
            if max_concurrent_tenants is not None
            else settings.AUTO_REPLY_MAX_CONCURRENT_TENANTS
        )
        self.fetch_limit = (
            fetch_limit if fetch_limit is not None else settings.AUTO_REPLY_FETCH_LIMIT
        )
        self.fetch_query = (
            fetch_query if fetch_query is not None else settings.AUTO_REPLY_FETCH_QUERY
        )
        self.is_running = False
        self.last_run_time: datetime | None = None
        self.job_metrics = AutoReplyMetrics()

    async def run_once(self, stop_event: asyncio.Event | None = None) -> dict:
        """
        Run a single tick over every connected studio.

        Returns:
            Dict: Tick metrics, or {"skipped": True} if a tick is already running

        Raises:
            AutoReplyJobError: If the studio list cannot be loaded
        """
        if self.is_running:
            logger.warning("Auto-reply job already running, skipping this tick")
            return {"skipped": True, "reason": "already_running"}

        self.is_running = True
        self.job_metrics.reset()
        tick_id = uuid.uuid4().hex[:12]

        try:
            with structlog.contextvars.bound_contextvars(tick_id=tick_id):
                tenants = await self._get_tenants()
                self.job_metrics.tenants_total = len(tenants)

                if not tenants:
                    logger.info("No studios with a connected mailbox")
                else:
                    logger.info("Starting auto-reply tick", tenant_count=len(tenants))
                    semaphore = asyncio.Semaphore(self.max_concurrent_tenants)
                    await asyncio.gather(
                        *(self._process_tenant_with_semaphore(semaphore, t, stop_event) for t in tenants)
                    )

                self.job_metrics.finalize()
                self.last_run_time = datetime.now(UTC)
                metrics = self.job_metrics.to_dict()
                logger.info("Auto-reply tick completed", **metrics)
                return metrics

        finally:
            self.is_running = False

    async def _get_tenants(self) -> list[Tenant]:
        try:
            return await self.tenant_repository.list_tenants_with_active_mailbox()
        except Exception as e:
            logger.error("Failed to load studios", error=str(e), error_type=type(e).__name__)
            raise AutoReplyJobError(f"Failed to load studios: {e}", operation="get_tenants") from e

    async def _process_tenant_with_semaphore(
        self, semaphore: asyncio.Semaphore, tenant: Tenant, stop_event: asyncio.Event | None
    ):
        async with semaphore:
            with structlog.contextvars.bound_contextvars(tenant_id=tenant.id):
                await self._process_tenant(tenant, stop_event)

    async def _process_tenant(self, tenant: Tenant, stop_event: asyncio.Event | None):
        """Fetch and process one studio's inbox; every failure stays inside this studio."""
        start_time = time.monotonic()

        try:
            messages = await asyncio.wait_for(
                self.service.gateway.fetch(tenant, self.fetch_limit, self.fetch_query),
                self.service.call_timeout,
            )

            for message in messages:
                # Stop between messages so the current state write always completes
                if stop_event is not None and stop_event.is_set():
                    logger.info("Stop requested, leaving remaining messages for next run")
                    break

                result = await self.service.process_message(tenant, message)
                self.job_metrics.record_result(result)

            self.job_metrics.record_tenant_done(tenant.id, (time.monotonic() - start_time) * 1000)

        except MailboxAuthError as e:
            self.job_metrics.record_auth_failure(tenant.id, str(e))

        except TimeoutError:
            self.job_metrics.record_tenant_error(
                tenant.id, f"Inbox fetch timed out after {self.service.call_timeout}s"
            )

        except MailboxTransientError as e:
            self.job_metrics.record_tenant_error(tenant.id, f"Mailbox unavailable: {e}")

        except Exception as e:
            self.job_metrics.record_tenant_error(tenant.id, f"Unexpected error: {type(e).__name__}: {e}")

    def get_job_status(self) -> dict:
        """Current job status and last tick metrics."""
        return {
            "job_name": JOB_NAME,
            "enabled": settings.AUTO_REPLY_ENABLED,
            "is_running": self.is_running,
            "last_run_time": self.last_run_time.isoformat() if self.last_run_time else None,
            "interval_seconds": settings.AUTO_REPLY_INTERVAL_SECONDS,
            "fetch_limit": self.fetch_limit,
            "max_concurrent_tenants": self.max_concurrent_tenants,
            "last_run_metrics": self.job_metrics.to_dict() if self.last_run_time else None,
        }

    def health_check(self) -> dict:
        """Unhealthy when no tick completed within twice the interval."""
        now = datetime.now(UTC)
        overdue_threshold = timedelta(seconds=settings.AUTO_REPLY_INTERVAL_SECONDS * 2)
        is_overdue = self.last_run_time is not None and (now - self.last_run_time) > overdue_threshold

        health_status = {
            "healthy": not is_overdue,
            "service": "auto_reply_job",
            "is_running": self.is_running,
            "last_run_time": self.last_run_time.isoformat() if self.last_run_time else None,
            "is_overdue": is_overdue,
        }

        if is_overdue:
            health_status["warning"] = (
                f"Job overdue by {(now - self.last_run_time).total_seconds():.0f} seconds"
            )

        return health_status


# Singleton instance for application use
auto_reply_job = AutoReplyJob()


async def run_auto_reply_job() -> dict:
    """Run a single tick of the auto-reply job."""
    return await auto_reply_job.run_once()


async def start_auto_reply_scheduler(
    stop_event: asyncio.Event | None = None, job: AutoReplyJob | None = None
) -> None:
    """
    Run ticks until `stop_event` is set.

    The next tick starts only after the previous one returned and the interval
    elapsed, so ticks never overlap.
    """
    stop_event = stop_event or asyncio.Event()
    job = job or auto_reply_job
    interval = settings.AUTO_REPLY_INTERVAL_SECONDS

    if not db_pool._initialized:
        await db_pool.initialize()

    logger.info("Starting auto-reply scheduler", interval_seconds=interval)

    while not stop_event.is_set():
        try:
            await job.run_once(stop_event)
        except AutoReplyJobError as e:
            logger.error("Auto-reply tick failed", error=str(e), operation=e.operation)

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
        except TimeoutError:
            continue

    logger.info("Auto-reply scheduler stopped")
