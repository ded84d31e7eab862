"""
Mailbox Gateway: the auto-reply engine's view of a studio's Gmail inbox.

Translates Gmail API and credential failures into the outcomes the pipeline
understands: the studio must reconnect (MailboxAuthError), the call may be
retried on a later tick (MailboxTransientError), or a send may already have
been delivered and must not be repeated (MailboxDeliveryUnknownError).
"""

from typing import Protocol

from app.features.auto_reply.domain import InboxMessage, SentMessage, Tenant
from app.features.auto_reply.services.credentials import (
    AuthExpiredError,
    CredentialUnavailableError,
    GoogleCredentialProvider,
    credential_provider,
)
from app.infrastructure.observability.logging import get_logger
from app.services.gmail.google_client import GoogleGmailError, GoogleGmailService, google_gmail_service

logger = get_logger(__name__)


class MailboxError(Exception):
    """Base exception for mailbox gateway failures."""

    def __init__(self, message: str, tenant_id: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.tenant_id = tenant_id
        self.recoverable = recoverable


class MailboxAuthError(MailboxError):
    """Credentials missing, expired or revoked; the studio must reconnect."""

    def __init__(self, message: str, tenant_id: str | None = None):
        super().__init__(message, tenant_id=tenant_id, recoverable=False)


class MailboxTransientError(MailboxError):
    """Timeouts, 5xx, rate limits or a partially fetched inbox."""


class MailboxDeliveryUnknownError(MailboxError):
    """A send failed after the request reached Gmail; the reply may have gone out."""

    def __init__(self, message: str, tenant_id: str | None = None):
        super().__init__(message, tenant_id=tenant_id, recoverable=False)


class MailboxGateway(Protocol):
    async def fetch(self, tenant: Tenant, max_results: int, query: str) -> list[InboxMessage]: ...

    async def fetch_latest_inbound(self, tenant: Tenant, thread_id: str) -> InboxMessage | None: ...

    async def send(
        self,
        tenant: Tenant,
        to: str,
        subject: str,
        body: str,
        thread_id: str | None = None,
        in_reply_to: str | None = None,
    ) -> SentMessage: ...

    async def mark_read(self, tenant: Tenant, message_id: str) -> None: ...


class GmailMailboxGateway:
    """MailboxGateway backed by the Gmail REST API."""

    def __init__(
        self,
        gmail_client: GoogleGmailService | None = None,
        credentials: GoogleCredentialProvider | None = None,
    ):
        self.gmail_client = gmail_client or google_gmail_service
        self.credentials = credentials or credential_provider

    async def _access_token(self, tenant: Tenant) -> str:
        try:
            return await self.credentials.get_access_token(tenant)
        except AuthExpiredError as e:
            raise MailboxAuthError(str(e), tenant_id=tenant.id) from e
        except CredentialUnavailableError as e:
            raise MailboxTransientError(str(e), tenant_id=tenant.id) from e

    def _map_error(self, tenant: Tenant, error: GoogleGmailError, operation: str) -> MailboxError:
        logger.warning(
            "Gmail operation failed",
            tenant_id=tenant.id,
            operation=operation,
            status_code=error.status_code,
            error=str(error),
        )
        if error.is_auth_error:
            return MailboxAuthError(str(error), tenant_id=tenant.id)
        if error.delivery_unknown:
            return MailboxDeliveryUnknownError(str(error), tenant_id=tenant.id)
        return MailboxTransientError(str(error), tenant_id=tenant.id)

    async def fetch(self, tenant: Tenant, max_results: int, query: str) -> list[InboxMessage]:
        """
        Most recent messages matching the query.

        Raises:
            MailboxAuthError: Credentials unusable or rejected
            MailboxTransientError: Any other failure, including a single bad message
        """
        access_token = await self._access_token(tenant)
        try:
            return await self.gmail_client.list_messages(access_token, max_results=max_results, query=query)
        except GoogleGmailError as e:
            raise self._map_error(tenant, e, "fetch") from e

    async def fetch_latest_inbound(self, tenant: Tenant, thread_id: str) -> InboxMessage | None:
        """Latest message of a thread not sent from the studio's mailbox (no SENT label)."""
        access_token = await self._access_token(tenant)
        try:
            messages = await self.gmail_client.get_thread_messages(access_token, thread_id)
        except GoogleGmailError as e:
            raise self._map_error(tenant, e, "fetch_thread") from e

        inbound = [m for m in messages if not m.is_sent]
        return inbound[-1] if inbound else None

    async def send(
        self,
        tenant: Tenant,
        to: str,
        subject: str,
        body: str,
        thread_id: str | None = None,
        in_reply_to: str | None = None,
    ) -> SentMessage:
        access_token = await self._access_token(tenant)
        try:
            data = await self.gmail_client.send_message(
                access_token, to, subject, body, thread_id=thread_id, in_reply_to=in_reply_to
            )
        except GoogleGmailError as e:
            raise self._map_error(tenant, e, "send") from e

        return SentMessage(message_id=data.get("id", ""), thread_id=data.get("threadId") or thread_id)

    async def mark_read(self, tenant: Tenant, message_id: str) -> None:
        access_token = await self._access_token(tenant)
        try:
            await self.gmail_client.mark_as_read(access_token, message_id)
        except GoogleGmailError as e:
            raise self._map_error(tenant, e, "mark_read") from e
