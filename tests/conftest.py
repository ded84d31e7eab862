from datetime import UTC, datetime

import pytest

from app.auth.verify import auth_dependency
from app.features.auto_reply.domain import InboxMessage, SentMessage, Tenant
from app.features.auto_reply.repository.thread_state_repository import InMemoryThreadStateStore
from app.features.auto_reply.services.auto_reply_service import AutoReplyService
from app.features.auto_reply.services.mailbox_gateway import MailboxAuthError, MailboxTransientError
from app.features.auto_reply.services.quota_guard import QuotaGuard
from app.features.auto_reply.services.reply_generator import ReplyGenerator
from app.services.openai_service import CompletionResult

DEFAULT_REPLY = (
    "Gentile paziente,\n\nla ringraziamo per averci scritto. Abbiamo ricevuto la sua richiesta "
    "e un nostro operatore la ricontatterà a breve per confermare data e ora.\n\n"
    "Cordiali saluti,\nAssistente Virtuale - Studio Dentistico Rossi"
)


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeGenerationService:
    def __init__(self, text: str = DEFAULT_REPLY):
        self.text = text
        self.error: Exception | None = None
        self.calls: list[dict] = []

    async def complete(self, prompt, history=None, system_prompt=None):
        self.calls.append({"prompt": prompt, "history": history, "system_prompt": system_prompt})
        if self.error is not None:
            raise self.error
        return CompletionResult(text=self.text, tokens_used=321, model="test-model")


class FakeMailboxGateway:
    def __init__(self):
        self.inbox: dict[str, list[InboxMessage]] = {}
        self.threads: dict[tuple[str, str], InboxMessage] = {}
        self.sent: list[dict] = []
        self.marked_read: list[tuple[str, str]] = []
        self.fetch_errors: dict[str, Exception] = {}
        self.send_error: Exception | None = None

    async def fetch(self, tenant, max_results, query):
        if tenant.id in self.fetch_errors:
            raise self.fetch_errors[tenant.id]
        return list(self.inbox.get(tenant.id, []))[:max_results]

    async def fetch_latest_inbound(self, tenant, thread_id):
        return self.threads.get((tenant.id, thread_id))

    async def send(self, tenant, to, subject, body, thread_id=None, in_reply_to=None):
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(
            {
                "tenant_id": tenant.id,
                "to": to,
                "subject": subject,
                "body": body,
                "thread_id": thread_id,
                "in_reply_to": in_reply_to,
            }
        )
        return SentMessage(message_id=f"sent-{len(self.sent)}", thread_id=thread_id)

    async def mark_read(self, tenant, message_id):
        self.marked_read.append((tenant.id, message_id))


class FakeCalendarBridge:
    def __init__(self, event_id: str = "evt-123"):
        self.event_id = event_id
        self.error: Exception | None = None
        self.calls: list[dict] = []

    async def create_appointment(
        self, tenant, attendee_email, attendee_name, start, duration_minutes, description
    ):
        self.calls.append(
            {
                "tenant_id": tenant.id,
                "attendee_email": attendee_email,
                "attendee_name": attendee_name,
                "start": start,
                "duration_minutes": duration_minutes,
                "description": description,
            }
        )
        if self.error is not None:
            raise self.error
        return self.event_id


class FakeTenantRepository:
    tenants: list[Tenant] = []
    error: Exception | None = None

    @classmethod
    async def list_tenants_with_active_mailbox(cls):
        if cls.error is not None:
            raise cls.error
        return list(cls.tenants)

    @classmethod
    async def get_tenant(cls, tenant_id):
        return next((t for t in cls.tenants if t.id == tenant_id), None)


def make_message(
    message_id: str = "msg-1",
    thread_id: str = "thread-1",
    sender_email: str | None = "mario.bianchi@example.com",
    sender_name: str = "Mario Bianchi",
    subject: str = "Informazioni",
    body: str = "Buongiorno, vorrei sapere gli orari di apertura dello studio. Grazie mille.",
    is_sent: bool = False,
) -> InboxMessage:
    return InboxMessage(
        id=message_id,
        thread_id=thread_id,
        sender_email=sender_email,
        sender_name=sender_name,
        subject=subject,
        body=body,
        received_at=datetime(2025, 3, 10, 9, 0, tzinfo=UTC),
        is_unread=True,
        is_sent=is_sent,
        rfc_message_id=f"<{message_id}@mail.example.com>",
    )


@pytest.fixture
def tenant():
    return Tenant(
        id="studio-1",
        display_name="Studio Dentistico Rossi",
        contact_email="info@studiorossi.it",
        contact_phone="+39 02 1234567",
    )


@pytest.fixture
def other_tenant():
    return Tenant(id="studio-2", display_name="Studio Verdi", contact_email="info@studioverdi.it")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def guard(clock):
    return QuotaGuard(limits={"minute": 10, "day": 1000}, clock=clock)


@pytest.fixture
def generation_service():
    return FakeGenerationService()


@pytest.fixture
def gateway():
    return FakeMailboxGateway()


@pytest.fixture
def calendar_bridge():
    return FakeCalendarBridge()


@pytest.fixture
def store():
    return InMemoryThreadStateStore()


@pytest.fixture
def tenant_repository(tenant, other_tenant):
    FakeTenantRepository.tenants = [tenant, other_tenant]
    FakeTenantRepository.error = None
    return FakeTenantRepository


@pytest.fixture
def service(gateway, generation_service, guard, store, calendar_bridge, tenant_repository):
    return AutoReplyService(
        gateway=gateway,
        generator=ReplyGenerator(generation_service=generation_service, guard=guard),
        store=store,
        calendar=calendar_bridge,
        tenant_repository=tenant_repository,
        call_timeout=5,
        max_transient_failures=3,
        appointment_minutes=60,
    )


@pytest.fixture
def auth_error():
    return MailboxAuthError("Gmail authorization expired. Please reconnect.", tenant_id="studio-1")


@pytest.fixture
def transient_error():
    return MailboxTransientError("Gmail service temporarily unavailable.", tenant_id="studio-1")


@pytest.fixture
def auth_override():
    def _override():
        return {"sub": "studio-1"}

    return _override


@pytest.fixture
def apply_auth_override(auth_override):
    def _apply(app):
        app.dependency_overrides[auth_dependency] = auth_override

    return _apply


@pytest.fixture
def message_factory():
    return make_message
