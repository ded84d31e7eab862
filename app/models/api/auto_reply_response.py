"""
Auto-reply API response models.
Used by the auto-reply router for output formatting.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from app.features.auto_reply.domain import ProcessResult, ThreadState


class ThreadStateResponse(BaseModel):
    """Recorded state of a conversation thread."""

    tenant_id: str = Field(..., description="Studio ID")
    thread_id: str = Field(..., description="Gmail thread ID")
    status: str = Field(..., description="pending, replied, skipped or failed")
    last_message_id: str | None = Field(None, description="Last message handled in the thread")
    updated_at: datetime = Field(..., description="Last state change")
    calendar_event_id: str | None = Field(None, description="Booked calendar event, if any")
    transient_failures: int = Field(default=0, description="Retryable failures so far")
    reply_confidence: int | None = Field(None, description="Triage score of the sent reply (70-100)")
    failure_reason: str | None = Field(None, description="Why the thread was skipped or failed")

    @classmethod
    def from_state(cls, state: ThreadState) -> "ThreadStateResponse":
        return cls(
            tenant_id=state.tenant_id,
            thread_id=state.thread_id,
            status=state.status.value,
            last_message_id=state.last_message_id,
            updated_at=state.updated_at,
            calendar_event_id=state.calendar_event_id,
            transient_failures=state.transient_failures,
            reply_confidence=state.reply_confidence,
            failure_reason=state.failure_reason,
        )


class TriggerReplyResponse(BaseModel):
    """Outcome of a manually triggered auto-reply."""

    outcome: str = Field(..., description="replied, skipped, failed, transient or already_handled")
    tenant_id: str = Field(..., description="Studio ID")
    thread_id: str = Field(..., description="Gmail thread ID")
    message_id: str = Field(..., description="Message the pipeline ran on")
    calendar_event_id: str | None = Field(None, description="Calendar event created for this reply")
    reason: str | None = Field(None, description="Failure or retry reason")
    state: ThreadStateResponse | None = Field(None, description="Thread state after the run")

    @classmethod
    def from_result(cls, result: ProcessResult) -> "TriggerReplyResponse":
        return cls(
            outcome=result.outcome.value,
            tenant_id=result.tenant_id,
            thread_id=result.thread_id,
            message_id=result.message_id,
            calendar_event_id=result.calendar_event_id,
            reason=result.reason,
            state=ThreadStateResponse.from_state(result.state) if result.state else None,
        )


class QuotaWindowResponse(BaseModel):
    count: int = Field(..., description="Requests counted in the current window")
    limit: int = Field(..., description="Ceiling for the window")
    resets_in_seconds: float = Field(..., description="Seconds until the window resets")


class UsageStatsResponse(BaseModel):
    """Shared generation quota usage."""

    minute: QuotaWindowResponse
    day: QuotaWindowResponse
    percentage_used: dict[str, float] = Field(..., description="Usage per window in percent")


class JobStatusResponse(BaseModel):
    """Scheduler status and last tick metrics."""

    job_name: str
    enabled: bool
    is_running: bool
    last_run_time: str | None = None
    interval_seconds: float
    fetch_limit: int
    max_concurrent_tenants: int
    last_run_metrics: dict[str, Any] | None = None
