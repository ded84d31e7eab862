"""
Google Gmail API client for inbox polling and replies.
Handles HTTP calls, retry with backoff, error mapping and payload parsing.
Low-level Gmail API client
"""

import asyncio
import base64
from email.mime.text import MIMEText
from typing import Any

import httpx

from app.features.auto_reply.domain import InboxMessage
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

# Google Gmail API configuration
GMAIL_API_BASE_URL = "https://gmail.googleapis.com/gmail/v1"
GMAIL_USER_ID = "me"  # Authenticated mailbox

# Request timeouts and retry configuration
REQUEST_TIMEOUT = 30  # seconds
MAX_RETRIES = 3
BACKOFF_FACTOR = 2
RETRY_STATUS_CODES = {429, 500, 502, 503, 504}
AUTH_STATUS_CODES = {401, 403}
# Send failures raised before the request reached Gmail
SEND_NOT_DELIVERED_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout)


class GoogleGmailError(Exception):
    """Custom exception for Google Gmail API errors."""

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        status_code: int | None = None,
        response_data: dict | None = None,
        delivery_unknown: bool = False,
    ):
        super().__init__(message)
        self.error_code = error_code
        self.status_code = status_code
        self.response_data = response_data or {}
        # Set when a send may have been delivered even though it failed
        self.delivery_unknown = delivery_unknown

    @property
    def is_auth_error(self) -> bool:
        return self.status_code in AUTH_STATUS_CODES


class GoogleGmailService:
    """
    Service for Google Gmail API operations.

    Pure API client: callers pass a valid access token, the service returns
    parsed InboxMessage snapshots or raw API dicts.
    """

    def __init__(self, client: httpx.AsyncClient | None = None):
        self._client = client or self._create_client()

    def _create_client(self) -> httpx.AsyncClient:
        """Create async HTTP client for Gmail API."""
        timeout = httpx.Timeout(REQUEST_TIMEOUT)
        limits = httpx.Limits(max_keepalive_connections=20, max_connections=50)
        return httpx.AsyncClient(timeout=timeout, limits=limits)

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def _request_with_retry(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Execute an HTTP request with retry and backoff."""
        for attempt in range(1, MAX_RETRIES + 1):
            try:
                response = await self._client.request(method, url, **kwargs)
                if response.status_code in RETRY_STATUS_CODES and attempt < MAX_RETRIES:
                    backoff = BACKOFF_FACTOR * (2 ** (attempt - 1))
                    logger.debug(
                        "Gmail API retrying request",
                        attempt=attempt,
                        status_code=response.status_code,
                        backoff_seconds=backoff,
                    )
                    await asyncio.sleep(backoff)
                    continue
                return response
            except httpx.RequestError as e:
                if attempt >= MAX_RETRIES:
                    raise
                backoff = BACKOFF_FACTOR * (2 ** (attempt - 1))
                logger.debug(
                    "Gmail API request error, retrying",
                    attempt=attempt,
                    error=str(e),
                    backoff_seconds=backoff,
                )
                await asyncio.sleep(backoff)
        raise RuntimeError("Gmail API retry loop exhausted")

    def _get_auth_headers(self, access_token: str) -> dict:
        """Get authorization headers for Gmail API requests."""
        return {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def _handle_api_response(self, response: httpx.Response, operation: str) -> dict:
        """
        Handle and validate Gmail API response.

        Args:
            response: HTTP response from Gmail API
            operation: Operation name for logging

        Returns:
            dict: Parsed response data

        Raises:
            GoogleGmailError: If response contains errors
        """
        logger.debug(
            f"Gmail API {operation} response",
            status_code=response.status_code,
            response_size=len(response.text) if response.text else 0,
        )

        if response.is_success:
            try:
                return response.json() if response.text else {}
            except ValueError as e:
                logger.error(f"Failed to parse Gmail API {operation} response", error=str(e))
                raise GoogleGmailError(f"Invalid response format: {e}") from e

        try:
            error_data = response.json() if response.text else {}
        except ValueError:
            logger.error(
                f"Gmail API {operation} failed with non-JSON response",
                status_code=response.status_code,
                response_text=response.text[:200] if response.text else "",
            )
            raise GoogleGmailError(
                f"Gmail API error (HTTP {response.status_code})",
                error_code=str(response.status_code),
                status_code=response.status_code,
            ) from None

        error_info = error_data.get("error", {}) if isinstance(error_data, dict) else {}
        error_code = str(error_info.get("code", response.status_code))
        error_message = error_info.get("message", "Unknown Gmail API error")

        logger.error(
            f"Gmail API {operation} failed",
            status_code=response.status_code,
            error_code=error_code,
            error_message=error_message,
        )

        raise GoogleGmailError(
            self._map_gmail_error(error_code, error_message),
            error_code=error_code,
            status_code=response.status_code,
            response_data=error_data,
        )

    def _map_gmail_error(self, error_code: str, error_message: str) -> str:
        """Map Gmail API error codes to readable messages."""
        error_mappings = {
            "403": "Gmail access denied. Please check permissions.",
            "404": "Email message not found.",
            "400": "Invalid Gmail request format.",
            "401": "Gmail authorization expired. Please reconnect.",
            "429": "Too many Gmail requests. Please try again later.",
            "500": "Gmail service temporarily unavailable.",
        }

        return error_mappings.get(error_code, f"Gmail error: {error_message}")

    async def list_messages(
        self,
        access_token: str,
        max_results: int = 10,
        query: str | None = None,
    ) -> list[InboxMessage]:
        """
        List messages matching a query with full payloads.

        Any per-message failure aborts the listing: a partial inbox is never
        returned silently.

        Args:
            access_token: Valid OAuth access token
            max_results: Maximum number of messages to return
            query: Gmail search query (e.g., "in:inbox is:unread")

        Returns:
            list[InboxMessage]: Parsed messages, newest first

        Raises:
            GoogleGmailError: If listing or fetching any message fails
        """
        url = f"{GMAIL_API_BASE_URL}/users/{GMAIL_USER_ID}/messages"
        params: dict[str, Any] = {"maxResults": min(max_results, 500)}
        if query:
            params["q"] = query

        logger.info("Listing Gmail messages", max_results=max_results, query=query)

        try:
            response = await self._request_with_retry(
                "GET", url, headers=self._get_auth_headers(access_token), params=params
            )
        except httpx.RequestError as e:
            logger.error("Network error listing messages", error=str(e))
            raise GoogleGmailError(f"Failed to list messages: {e}") from e

        data = self._handle_api_response(response, "list_messages")
        message_ids = [msg["id"] for msg in data.get("messages", [])]

        if not message_ids:
            logger.info("No messages found")
            return []

        messages = [await self.get_message(access_token, msg_id) for msg_id in message_ids]

        logger.info("Messages listed successfully", message_count=len(messages))
        return messages

    async def get_message(self, access_token: str, message_id: str) -> InboxMessage:
        """
        Get a specific message by ID.

        Raises:
            GoogleGmailError: If getting message fails
        """
        url = f"{GMAIL_API_BASE_URL}/users/{GMAIL_USER_ID}/messages/{message_id}"

        try:
            response = await self._request_with_retry(
                "GET", url, headers=self._get_auth_headers(access_token), params={"format": "full"}
            )
        except httpx.RequestError as e:
            logger.error("Network error getting message", message_id=message_id, error=str(e))
            raise GoogleGmailError(f"Failed to get message: {e}") from e

        data = self._handle_api_response(response, "get_message")
        return InboxMessage.from_gmail_payload(data)

    async def get_thread_messages(self, access_token: str, thread_id: str) -> list[InboxMessage]:
        """
        Get every message of a thread, oldest first.

        Raises:
            GoogleGmailError: If getting thread fails
        """
        url = f"{GMAIL_API_BASE_URL}/users/{GMAIL_USER_ID}/threads/{thread_id}"

        logger.info("Getting Gmail thread", thread_id=thread_id)

        try:
            response = await self._request_with_retry(
                "GET", url, headers=self._get_auth_headers(access_token), params={"format": "full"}
            )
        except httpx.RequestError as e:
            logger.error("Network error getting thread", thread_id=thread_id, error=str(e))
            raise GoogleGmailError(f"Failed to get thread: {e}") from e

        data = self._handle_api_response(response, "get_thread")
        return [InboxMessage.from_gmail_payload(msg) for msg in data.get("messages", [])]

    async def send_message(
        self,
        access_token: str,
        to: str,
        subject: str,
        body: str,
        thread_id: str | None = None,
        in_reply_to: str | None = None,
    ) -> dict:
        """
        Send a plain-text email, in-thread when thread_id is given.

        Args:
            access_token: Valid OAuth access token
            to: Recipient email address
            subject: Email subject
            body: Email body (plain text)
            thread_id: Gmail thread ID for replies
            in_reply_to: RFC822 Message-ID of the message being answered

        Returns:
            dict: Sent message information ({"id", "threadId", ...})

        Raises:
            GoogleGmailError: If sending message fails
        """
        msg = MIMEText(body, "plain", "utf-8")
        msg["To"] = to
        msg["Subject"] = subject
        if in_reply_to:
            msg["In-Reply-To"] = in_reply_to
            msg["References"] = in_reply_to

        send_data: dict[str, Any] = {
            "raw": base64.urlsafe_b64encode(msg.as_bytes()).decode("utf-8"),
        }
        if thread_id:
            send_data["threadId"] = thread_id

        url = f"{GMAIL_API_BASE_URL}/users/{GMAIL_USER_ID}/messages/send"

        logger.info("Sending Gmail message", subject=subject, is_reply=bool(thread_id))

        try:
            # No retry on send: a retried POST after a lost response could deliver twice
            response = await self._client.post(
                url, headers=self._get_auth_headers(access_token), json=send_data
            )
        except SEND_NOT_DELIVERED_ERRORS as e:
            logger.error("Network error sending message", error=str(e), delivered=False)
            raise GoogleGmailError(f"Failed to send message: {e}") from e
        except httpx.RequestError as e:
            logger.error("Send outcome unknown", error=str(e))
            raise GoogleGmailError(f"Failed to send message: {e}", delivery_unknown=True) from e

        try:
            data = self._handle_api_response(response, "send_message")
        except GoogleGmailError as e:
            # A 2xx with an unreadable body was still accepted by Gmail
            e.delivery_unknown = response.is_success
            raise

        logger.info("Message sent successfully", message_id=data.get("id"))
        return data

    async def modify_message(
        self,
        access_token: str,
        message_id: str,
        add_label_ids: list[str] | None = None,
        remove_label_ids: list[str] | None = None,
    ) -> dict:
        """
        Modify message labels (mark as read, etc.).

        Raises:
            GoogleGmailError: If modifying message fails
        """
        url = f"{GMAIL_API_BASE_URL}/users/{GMAIL_USER_ID}/messages/{message_id}/modify"

        modify_data = {}
        if add_label_ids:
            modify_data["addLabelIds"] = add_label_ids
        if remove_label_ids:
            modify_data["removeLabelIds"] = remove_label_ids

        try:
            response = await self._request_with_retry(
                "POST", url, headers=self._get_auth_headers(access_token), json=modify_data
            )
        except httpx.RequestError as e:
            logger.error("Network error modifying message", message_id=message_id, error=str(e))
            raise GoogleGmailError(f"Failed to modify message: {e}") from e

        data = self._handle_api_response(response, "modify_message")
        logger.info("Message modified successfully", message_id=message_id)
        return data

    async def mark_as_read(self, access_token: str, message_id: str) -> dict:
        """Mark message as read."""
        return await self.modify_message(access_token, message_id, remove_label_ids=["UNREAD"])


# Singleton instance for application use
google_gmail_service = GoogleGmailService()
