"""
Auto-reply pipeline for a single inbound message.

Order of effects for one message: read thread state, classify, generate,
send, mark read, optionally book the appointment, record the terminal state.
The state write always follows the send, so a crash in between can cause a
retry but a recorded thread is never answered twice. A send whose outcome is
unknown (timed out after reaching Gmail) closes the thread as failed.
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from app.config import settings
from app.features.auto_reply.domain import (
    AppointmentIntent,
    InboxMessage,
    ProcessOutcome,
    ProcessResult,
    Tenant,
    ThreadState,
    ThreadStatus,
)
from app.features.auto_reply.repository.tenant_repository import TenantRepository
from app.features.auto_reply.repository.thread_state_repository import (
    PostgresThreadStateStore,
    ThreadStateStore,
)
from app.features.auto_reply.services.calendar_bridge import (
    CalendarBridge,
    CalendarBridgeError,
    GoogleCalendarBridge,
    parse_appointment_start,
)
from app.features.auto_reply.services.intent_detector import IntentDetector, intent_detector
from app.features.auto_reply.services.mailbox_gateway import (
    GmailMailboxGateway,
    MailboxDeliveryUnknownError,
    MailboxError,
    MailboxGateway,
    MailboxTransientError,
)
from app.features.auto_reply.services.reply_generator import (
    GenerationFailedError,
    QuotaExceededError,
    ReplyGenerator,
)
from app.infrastructure.observability.logging import get_logger, log_thread_transition
from app.services.openai_service import OpenAIServiceError

logger = get_logger(__name__)

REPLY_PREFIXES = ("re:", "r:")


class AutoReplyServiceError(Exception):
    """Base exception for manual pipeline triggers."""

    def __init__(self, message: str, recoverable: bool = False):
        super().__init__(message)
        self.recoverable = recoverable


class TenantNotFoundError(AutoReplyServiceError):
    pass


class ThreadNotFoundError(AutoReplyServiceError):
    pass


def reply_subject(subject: str) -> str:
    """Subject for an in-thread reply; never stacks `Re:` prefixes."""
    subject = (subject or "").strip()
    if subject.lower().startswith(REPLY_PREFIXES):
        return subject
    return f"Re: {subject}" if subject else "Re:"


class AutoReplyService:
    """
    Runs the reply pipeline for one message at a time.

    Collaborators are injectable; the defaults talk to Gmail, OpenAI, Google
    Calendar and Postgres.
    """

    def __init__(
        self,
        gateway: MailboxGateway | None = None,
        generator: ReplyGenerator | None = None,
        store: ThreadStateStore | None = None,
        calendar: CalendarBridge | None = None,
        detector: IntentDetector | None = None,
        tenant_repository: type[TenantRepository] = TenantRepository,
        call_timeout: float | None = None,
        max_transient_failures: int | None = None,
        appointment_minutes: int | None = None,
    ):
        self.gateway = gateway or GmailMailboxGateway()
        self.detector = detector or intent_detector
        self.generator = generator or ReplyGenerator(detector=self.detector)
        self.store = store or PostgresThreadStateStore()
        self.calendar = calendar or GoogleCalendarBridge()
        self.tenant_repository = tenant_repository
        self.call_timeout = (
            call_timeout if call_timeout is not None else settings.AUTO_REPLY_CALL_TIMEOUT_SECONDS
        )
        self.max_transient_failures = (
            max_transient_failures
            if max_transient_failures is not None
            else settings.AUTO_REPLY_MAX_TRANSIENT_FAILURES
        )
        self.appointment_minutes = (
            appointment_minutes
            if appointment_minutes is not None
            else settings.AUTO_REPLY_APPOINTMENT_MINUTES
        )
        # (tenant_id, thread_id) -> [lock, holders]
        self._thread_locks: dict[tuple[str, str], list] = {}

    async def process_message(self, tenant: Tenant, message: InboxMessage) -> ProcessResult:
        """
        Handle one inbound message end to end.

        Raises:
            MailboxAuthError: The tenant's credentials stopped working mid-flow
            ThreadStateStoreError: Thread state could not be read or written
        """
        async with self._thread_lock(tenant.id, message.thread_id):
            return await self._process(tenant, message)

    @asynccontextmanager
    async def _thread_lock(self, tenant_id: str, thread_id: str) -> AsyncIterator[None]:
        """Serialize runs on one thread within this process (scheduler tick vs manual trigger)."""
        key = (tenant_id, thread_id)
        entry = self._thread_locks.setdefault(key, [asyncio.Lock(), 0])
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                del self._thread_locks[key]

    async def _process(self, tenant: Tenant, message: InboxMessage) -> ProcessResult:
        existing = await self.store.get(tenant.id, message.thread_id)
        if existing is not None and existing.is_terminal:
            logger.debug(
                "Thread already handled",
                tenant_id=tenant.id,
                thread_id=message.thread_id,
                status=existing.status.value,
            )
            return self._result(ProcessOutcome.ALREADY_HANDLED, tenant, message, state=existing)

        intent = self.detector.classify(message)
        if not intent.auto_reply_eligible:
            state = await self._record_terminal(
                tenant, message, ThreadStatus.SKIPPED, failure_reason="not eligible for auto-reply"
            )
            return self._result(ProcessOutcome.SKIPPED, tenant, message, state=state)

        try:
            reply = await asyncio.wait_for(self.generator.generate(message, tenant), self.call_timeout)
        except (QuotaExceededError, GenerationFailedError) as e:
            state = await self._record_terminal(
                tenant, message, ThreadStatus.FAILED, failure_reason=str(e)
            )
            return self._result(ProcessOutcome.FAILED, tenant, message, state=state, reason=str(e))
        except TimeoutError:
            return await self._handle_transient(tenant, message, "generation timed out")
        except OpenAIServiceError as e:
            return await self._handle_transient(tenant, message, f"generation unavailable: {e}")

        try:
            await asyncio.wait_for(
                self.gateway.send(
                    tenant,
                    message.sender_email,
                    reply_subject(message.subject),
                    reply.reply_body,
                    thread_id=message.thread_id,
                    in_reply_to=message.rfc_message_id,
                ),
                self.call_timeout,
            )
        except (TimeoutError, MailboxDeliveryUnknownError) as e:
            return await self._send_outcome_unknown(tenant, message, e)
        except MailboxTransientError as e:
            return await self._handle_transient(tenant, message, f"send failed: {e}")

        await self._mark_read(tenant, message)

        calendar_event_id = None
        appointment = reply.appointment
        if appointment.has_appointment and appointment.suggested_date:
            calendar_event_id = await self._book_appointment(tenant, message, appointment)

        try:
            state = await self._record_terminal(
                tenant,
                message,
                ThreadStatus.REPLIED,
                calendar_event_id=calendar_event_id,
                reply_confidence=reply.confidence,
            )
        except Exception:
            logger.error(
                "Reply sent but thread state was not recorded",
                tenant_id=tenant.id,
                thread_id=message.thread_id,
                message_id=message.id,
            )
            raise

        return self._result(
            ProcessOutcome.REPLIED,
            tenant,
            message,
            state=state,
            calendar_event_id=calendar_event_id,
        )

    async def trigger_reply(self, tenant_id: str, thread_id: str) -> ProcessResult:
        """
        Run the pipeline on demand for the latest inbound message of a thread.

        Raises:
            TenantNotFoundError: Unknown studio
            ThreadNotFoundError: Thread has no inbound message
            MailboxAuthError / MailboxTransientError: Gmail unavailable
        """
        tenant = await self.tenant_repository.get_tenant(tenant_id)
        if tenant is None:
            raise TenantNotFoundError(f"Studio {tenant_id} not found")

        message = await asyncio.wait_for(
            self.gateway.fetch_latest_inbound(tenant, thread_id), self.call_timeout
        )
        if message is None:
            raise ThreadNotFoundError(f"No inbound message in thread {thread_id}")

        logger.info("Manual auto-reply triggered", tenant_id=tenant_id, thread_id=thread_id)
        return await self.process_message(tenant, message)

    async def get_thread_status(self, tenant_id: str, thread_id: str) -> ThreadState | None:
        return await self.store.get(tenant_id, thread_id)

    def get_usage_stats(self) -> dict[str, Any]:
        return self.generator.quota_guard.get_usage_stats()

    async def _handle_transient(self, tenant: Tenant, message: InboxMessage, reason: str) -> ProcessResult:
        failures = await self.store.record_transient_failure(
            tenant.id, message.thread_id, message.id, reason
        )
        logger.warning(
            "Transient failure on thread",
            tenant_id=tenant.id,
            thread_id=message.thread_id,
            attempts=failures,
            max_attempts=self.max_transient_failures,
            reason=reason,
        )

        if failures >= self.max_transient_failures:
            final_reason = f"gave up after {failures} attempts: {reason}"
            state = await self._record_terminal(
                tenant, message, ThreadStatus.FAILED, failure_reason=final_reason
            )
            return self._result(ProcessOutcome.FAILED, tenant, message, state=state, reason=final_reason)

        state = await self.store.get(tenant.id, message.thread_id)
        return self._result(ProcessOutcome.TRANSIENT, tenant, message, state=state, reason=reason)

    async def _send_outcome_unknown(
        self, tenant: Tenant, message: InboxMessage, error: Exception
    ) -> ProcessResult:
        """The reply may have been delivered: close the thread so no later tick sends again."""
        detail = str(error) or type(error).__name__
        reason = f"send outcome unknown: {detail}"
        logger.error(
            "Send outcome unknown, thread closed without retry",
            tenant_id=tenant.id,
            thread_id=message.thread_id,
            message_id=message.id,
            error=detail,
        )
        state = await self._record_terminal(tenant, message, ThreadStatus.FAILED, failure_reason=reason)
        return self._result(ProcessOutcome.FAILED, tenant, message, state=state, reason=reason)

    async def _mark_read(self, tenant: Tenant, message: InboxMessage) -> None:
        try:
            await asyncio.wait_for(self.gateway.mark_read(tenant, message.id), self.call_timeout)
        except (MailboxError, TimeoutError) as e:
            logger.warning(
                "Failed to mark message as read",
                tenant_id=tenant.id,
                message_id=message.id,
                error=str(e) or type(e).__name__,
            )

    async def _book_appointment(
        self, tenant: Tenant, message: InboxMessage, appointment: AppointmentIntent
    ) -> str | None:
        start = parse_appointment_start(appointment.suggested_date, appointment.suggested_time)
        if start is None:
            logger.info(
                "Appointment date not bookable automatically",
                tenant_id=tenant.id,
                thread_id=message.thread_id,
                suggested_date=appointment.suggested_date,
            )
            return None

        description = (
            f"Richiesta dal paziente via email.\n\nOggetto: {message.subject}\n\n"
            f"{appointment.raw_text}"
        )
        try:
            event_id = await asyncio.wait_for(
                self.calendar.create_appointment(
                    tenant,
                    message.sender_email,
                    message.sender_name,
                    start,
                    self.appointment_minutes,
                    description,
                ),
                self.call_timeout,
            )
        except (CalendarBridgeError, TimeoutError) as e:
            logger.warning(
                "Calendar event not created",
                tenant_id=tenant.id,
                thread_id=message.thread_id,
                error=str(e) or type(e).__name__,
            )
            return None

        logger.info(
            "Appointment booked",
            tenant_id=tenant.id,
            thread_id=message.thread_id,
            calendar_event_id=event_id,
            start=start.isoformat(),
        )
        return event_id

    async def _record_terminal(
        self,
        tenant: Tenant,
        message: InboxMessage,
        status: ThreadStatus,
        calendar_event_id: str | None = None,
        reply_confidence: int | None = None,
        failure_reason: str | None = None,
    ) -> ThreadState:
        state = await self.store.upsert_terminal(
            tenant.id,
            message.thread_id,
            status,
            message_id=message.id,
            calendar_event_id=calendar_event_id,
            reply_confidence=reply_confidence,
            failure_reason=failure_reason,
        )
        log_thread_transition(
            tenant.id,
            message.thread_id,
            state.status.value,
            reason=failure_reason,
            message_id=message.id,
            calendar_event_id=calendar_event_id,
        )
        return state

    @staticmethod
    def _result(
        outcome: ProcessOutcome,
        tenant: Tenant,
        message: InboxMessage,
        state: ThreadState | None = None,
        calendar_event_id: str | None = None,
        reason: str | None = None,
    ) -> ProcessResult:
        return ProcessResult(
            outcome=outcome,
            tenant_id=tenant.id,
            thread_id=message.thread_id,
            message_id=message.id,
            state=state,
            calendar_event_id=calendar_event_id,
            reason=reason,
        )


# Singleton instance for application use
auto_reply_service = AutoReplyService()
