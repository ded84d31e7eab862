"""
Auto-reply routes.

Operational endpoints for the studio dashboard: trigger a reply on one
thread, inspect a thread's recorded state, read quota usage and scheduler
status.
"""

from fastapi import APIRouter, Depends, HTTPException, status

from app.auth.verify import auth_dependency
from app.features.auto_reply.jobs.auto_reply_job import AutoReplyJob, auto_reply_job
from app.features.auto_reply.repository.thread_state_repository import ThreadStateStoreError
from app.features.auto_reply.services.auto_reply_service import (
    AutoReplyService,
    TenantNotFoundError,
    ThreadNotFoundError,
    auto_reply_service,
)
from app.features.auto_reply.services.mailbox_gateway import MailboxAuthError, MailboxTransientError
from app.infrastructure.observability.logging import get_logger
from app.models.api.auto_reply_response import (
    JobStatusResponse,
    ThreadStateResponse,
    TriggerReplyResponse,
    UsageStatsResponse,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/auto-reply", tags=["auto-reply"])

SERVICE_ROLE = "service_role"


def get_auto_reply_service() -> AutoReplyService:
    return auto_reply_service


def get_auto_reply_job() -> AutoReplyJob:
    return auto_reply_job


def _authorize_tenant(claims: dict, tenant_id: str) -> None:
    """Studio tokens may only act on their own studio; service tokens on any."""
    if claims.get("role") == SERVICE_ROLE:
        return

    studio_id = claims.get("studio_id") or claims.get("sub")
    if not studio_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    if str(studio_id) != tenant_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed for this studio")


@router.post(
    "/tenants/{tenant_id}/threads/{thread_id}/trigger",
    response_model=TriggerReplyResponse,
)
async def trigger_thread_reply(
    tenant_id: str,
    thread_id: str,
    claims: dict = Depends(auth_dependency),
    service: AutoReplyService = Depends(get_auto_reply_service),
):
    """Run the auto-reply pipeline now on the latest inbound message of a thread."""
    _authorize_tenant(claims, tenant_id)

    try:
        result = await service.trigger_reply(tenant_id, thread_id)
    except (TenantNotFoundError, ThreadNotFoundError) as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except MailboxAuthError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Mailbox must be reconnected: {e}",
        ) from e
    except (MailboxTransientError, TimeoutError) as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Mailbox temporarily unavailable",
        ) from e
    except ThreadStateStoreError as e:
        logger.error("Thread state unavailable during manual trigger", tenant_id=tenant_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Thread state store unavailable",
        ) from e

    return TriggerReplyResponse.from_result(result)


@router.get(
    "/tenants/{tenant_id}/threads/{thread_id}",
    response_model=ThreadStateResponse,
)
async def get_thread_status(
    tenant_id: str,
    thread_id: str,
    claims: dict = Depends(auth_dependency),
    service: AutoReplyService = Depends(get_auto_reply_service),
):
    """Recorded auto-reply state of a thread."""
    _authorize_tenant(claims, tenant_id)

    try:
        state = await service.get_thread_status(tenant_id, thread_id)
    except ThreadStateStoreError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Thread state store unavailable",
        ) from e

    if state is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Thread not handled yet")

    return ThreadStateResponse.from_state(state)


@router.get("/usage", response_model=UsageStatsResponse)
async def get_usage_stats(
    claims: dict = Depends(auth_dependency),
    service: AutoReplyService = Depends(get_auto_reply_service),
):
    """Shared generation quota usage."""
    return service.get_usage_stats()


@router.get("/job", response_model=JobStatusResponse)
async def get_job_status(
    claims: dict = Depends(auth_dependency),
    job: AutoReplyJob = Depends(get_auto_reply_job),
):
    """Scheduler status and metrics of the last tick."""
    return job.get_job_status()
