"""
Domain exports for the auto-reply feature.
"""

from .models import (
    TERMINAL_STATUSES,
    AppointmentIntent,
    GeneratedReply,
    InboxMessage,
    IntentResult,
    MailboxCredential,
    ProcessOutcome,
    ProcessResult,
    QuotaDecision,
    SentMessage,
    Tenant,
    ThreadState,
    ThreadStatus,
    extract_display_name,
    extract_email_address,
)

__all__ = [
    "TERMINAL_STATUSES",
    "AppointmentIntent",
    "GeneratedReply",
    "InboxMessage",
    "IntentResult",
    "MailboxCredential",
    "ProcessOutcome",
    "ProcessResult",
    "QuotaDecision",
    "SentMessage",
    "Tenant",
    "ThreadState",
    "ThreadStatus",
    "extract_display_name",
    "extract_email_address",
]
