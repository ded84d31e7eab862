"""
Domain models for the auto-reply feature.

Tenants and credentials are read from the studio database; inbox messages are
rebuilt from Gmail payloads on every tick; thread states are the durable
idempotency ledger that guarantees one automated reply per thread.
"""

import base64
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum

from pydantic import BaseModel

_ADDRESS_IN_BRACKETS = re.compile(r"<(.+?)>")


class ThreadStatus(str, Enum):
    """Lifecycle of a conversation thread in the automated path."""

    PENDING = "pending"
    REPLIED = "replied"
    SKIPPED = "skipped"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not ThreadStatus.PENDING


TERMINAL_STATUSES = frozenset({ThreadStatus.REPLIED, ThreadStatus.SKIPPED, ThreadStatus.FAILED})


@dataclass(slots=True)
class Tenant:
    """A studio account whose mailbox is polled independently."""

    id: str
    display_name: str
    contact_email: str | None = None
    contact_phone: str | None = None
    language: str = "it"
    timezone: str = "Europe/Rome"


class MailboxCredential(BaseModel):
    """Decrypted Google OAuth credential for a tenant mailbox."""

    tenant_id: str
    access_token: str
    refresh_token: str | None = None
    scope: str = ""
    expires_at: datetime | None = None
    active: bool = True

    def is_expired(self) -> bool:
        """Check if access token is expired."""
        if not self.expires_at:
            return False
        return datetime.now(UTC) >= self.expires_at

    def needs_refresh(self, buffer_minutes: int = 5) -> bool:
        """Check if token should be refreshed before use."""
        if not self.expires_at:
            return False
        return datetime.now(UTC) + timedelta(minutes=buffer_minutes) >= self.expires_at

    def has_calendar_access(self) -> bool:
        """Check if token grants Calendar event creation."""
        return "calendar" in self.scope


def extract_email_address(from_header: str) -> str | None:
    """Pull the bare address out of a `Name <addr@host>` header value."""
    if not from_header:
        return None

    match = _ADDRESS_IN_BRACKETS.search(from_header)
    if match:
        return match.group(1).strip()

    if "@" in from_header:
        return from_header.strip()

    return None


def extract_display_name(from_header: str) -> str:
    """Display name part of a From header, empty when only an address is present."""
    if not from_header or "<" not in from_header:
        return ""
    return from_header.split("<")[0].strip().strip('"')


@dataclass(slots=True)
class InboxMessage:
    """Snapshot of an inbound message; re-fetched every tick, never persisted."""

    id: str
    thread_id: str
    sender_email: str | None
    sender_name: str
    subject: str
    body: str
    received_at: datetime | None = None
    is_unread: bool = True
    is_sent: bool = False
    rfc_message_id: str | None = None

    @property
    def sender_header(self) -> str:
        if self.sender_name:
            return f"{self.sender_name} <{self.sender_email}>"
        return self.sender_email or ""

    @classmethod
    def from_gmail_payload(cls, data: dict) -> "InboxMessage":
        """Build a message from a Gmail `users.messages.get` (format=full) response."""
        payload = data.get("payload") or {}
        headers = {h["name"].lower(): h["value"] for h in payload.get("headers", [])}
        from_header = headers.get("from", "")

        received_at = None
        internal_date = data.get("internalDate")
        if internal_date:
            try:
                received_at = datetime.fromtimestamp(int(internal_date) / 1000, tz=UTC)
            except (ValueError, OSError):
                received_at = None

        return cls(
            id=data.get("id", ""),
            thread_id=data.get("threadId") or data.get("id", ""),
            sender_email=extract_email_address(from_header),
            sender_name=extract_display_name(from_header),
            subject=headers.get("subject", ""),
            body=_extract_plain_text(payload) or data.get("snippet", ""),
            received_at=received_at,
            is_unread="UNREAD" in data.get("labelIds", []),
            is_sent="SENT" in data.get("labelIds", []),
            rfc_message_id=headers.get("message-id"),
        )


def _decode_base64_data(data: str) -> str:
    """Decode Gmail's URL-safe base64 body data."""
    try:
        padded = data + "=" * (-len(data) % 4)
        return base64.urlsafe_b64decode(padded).decode("utf-8", errors="ignore")
    except (ValueError, TypeError):
        return ""


def _extract_plain_text(payload: dict) -> str:
    """Find the first text/plain body in a (possibly nested) multipart payload."""
    body_data = (payload.get("body") or {}).get("data")
    mime_type = payload.get("mimeType", "text/plain")

    if body_data and mime_type.startswith("text/plain"):
        return _decode_base64_data(body_data)

    for part in payload.get("parts", []) or []:
        text = _extract_plain_text(part)
        if text:
            return text

    # Single-part message without an explicit mime type
    if body_data and not payload.get("parts") and "mimeType" not in payload:
        return _decode_base64_data(body_data)

    return ""


@dataclass(slots=True)
class AppointmentIntent:
    """Result of appointment detection; derived per message, never cached."""

    has_appointment: bool = False
    confidence: float = 0.0
    suggested_date: str | None = None
    suggested_time: str | None = None
    raw_text: str = ""


@dataclass(slots=True)
class IntentResult:
    auto_reply_eligible: bool
    appointment: AppointmentIntent = field(default_factory=AppointmentIntent)


@dataclass(slots=True)
class GeneratedReply:
    """Reply body drafted for a message plus its triage metadata."""

    reply_body: str
    appointment: AppointmentIntent
    confidence: int
    tokens_used: int = 0


@dataclass(slots=True)
class SentMessage:
    message_id: str
    thread_id: str | None


@dataclass(slots=True)
class ThreadState:
    """Represents an auto_reply_threads row."""

    tenant_id: str
    thread_id: str
    status: ThreadStatus
    last_message_id: str | None
    updated_at: datetime
    calendar_event_id: str | None = None
    transient_failures: int = 0
    reply_confidence: int | None = None
    failure_reason: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict:
        return {
            "tenant_id": self.tenant_id,
            "thread_id": self.thread_id,
            "status": self.status.value,
            "last_message_id": self.last_message_id,
            "updated_at": self.updated_at.isoformat(),
            "calendar_event_id": self.calendar_event_id,
            "transient_failures": self.transient_failures,
            "reply_confidence": self.reply_confidence,
            "failure_reason": self.failure_reason,
        }


@dataclass(slots=True)
class QuotaDecision:
    """Outcome of a Quota Guard check: Allow, or Deny with a reason."""

    allowed: bool
    reason: str | None = None
    window: str | None = None

    @classmethod
    def allow(cls) -> "QuotaDecision":
        return cls(allowed=True)

    @classmethod
    def deny(cls, window: str, reason: str) -> "QuotaDecision":
        return cls(allowed=False, reason=reason, window=window)


class ProcessOutcome(str, Enum):
    """What the pipeline did with one inbound message."""

    REPLIED = "replied"
    SKIPPED = "skipped"
    FAILED = "failed"
    TRANSIENT = "transient"
    ALREADY_HANDLED = "already_handled"


@dataclass(slots=True)
class ProcessResult:
    outcome: ProcessOutcome
    tenant_id: str
    thread_id: str
    message_id: str
    state: ThreadState | None = None
    calendar_event_id: str | None = None
    reason: str | None = None

    def to_dict(self) -> dict:
        return {
            "outcome": self.outcome.value,
            "tenant_id": self.tenant_id,
            "thread_id": self.thread_id,
            "message_id": self.message_id,
            "calendar_event_id": self.calendar_event_id,
            "reason": self.reason,
            "state": self.state.to_dict() if self.state else None,
        }
