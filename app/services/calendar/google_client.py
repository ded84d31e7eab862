"""
Google Calendar API client for appointment events.
Handles event creation with retry and error mapping.
Low-level Calendar API client
"""

import asyncio
from datetime import datetime

import httpx

from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

# Google Calendar API configuration
CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
CALENDAR_PRIMARY = "primary"  # Studio's primary calendar

# Request timeouts and retry configuration
REQUEST_TIMEOUT = 30  # seconds
MAX_RETRIES = 3
BACKOFF_FACTOR = 2
RETRY_STATUS_CODES = {429, 500, 502, 503, 504}

# Green, used for patient appointments
APPOINTMENT_COLOR_ID = "10"


class GoogleCalendarError(Exception):
    """Custom exception for Google Calendar API errors."""

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        status_code: int | None = None,
        response_data: dict | None = None,
    ):
        super().__init__(message)
        self.error_code = error_code
        self.status_code = status_code
        self.response_data = response_data or {}


class GoogleCalendarService:
    """
    Service for Google Calendar API operations.

    Creates events on a studio's primary calendar with retry logic.
    """

    def __init__(self, client: httpx.AsyncClient | None = None):
        self._client = client or self._create_client()

    def _create_client(self) -> httpx.AsyncClient:
        """Create async HTTP client for Calendar API."""
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
                        "Calendar API retrying request",
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
                    "Calendar API request error, retrying",
                    attempt=attempt,
                    error=str(e),
                    backoff_seconds=backoff,
                )
                await asyncio.sleep(backoff)
        raise RuntimeError("Calendar API retry loop exhausted")

    def _get_auth_headers(self, access_token: str) -> dict:
        """Get authorization headers for Calendar API requests."""
        return {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def _handle_api_response(self, response: httpx.Response, operation: str) -> dict:
        """
        Handle and validate Calendar API response.

        Raises:
            GoogleCalendarError: If response contains errors
        """
        logger.debug(
            f"Calendar API {operation} response",
            status_code=response.status_code,
            response_size=len(response.text) if response.text else 0,
        )

        if response.is_success:
            try:
                return response.json() if response.text else {}
            except ValueError as e:
                logger.error(f"Failed to parse Calendar API {operation} response", error=str(e))
                raise GoogleCalendarError(f"Invalid response format: {e}") from e

        try:
            error_data = response.json() if response.text else {}
        except ValueError:
            logger.error(
                f"Calendar API {operation} failed with non-JSON response",
                status_code=response.status_code,
                response_text=response.text[:200] if response.text else "",
            )
            raise GoogleCalendarError(
                f"Calendar API error (HTTP {response.status_code})",
                status_code=response.status_code,
            ) from None

        error_info = error_data.get("error", {}) if isinstance(error_data, dict) else {}
        error_code = str(error_info.get("code", response.status_code))
        error_message = error_info.get("message", "Unknown Calendar API error")

        logger.error(
            f"Calendar API {operation} failed",
            status_code=response.status_code,
            error_code=error_code,
            error_message=error_message,
        )

        raise GoogleCalendarError(
            self._map_calendar_error(error_code, error_message),
            error_code=error_code,
            status_code=response.status_code,
            response_data=error_data,
        )

    def _map_calendar_error(self, error_code: str, error_message: str) -> str:
        """Map Calendar API error codes to readable messages."""
        error_mappings = {
            "403": "Calendar access denied. Please check permissions.",
            "404": "Calendar or event not found.",
            "400": "Invalid calendar request format.",
            "401": "Calendar authorization expired. Please reconnect.",
            "429": "Too many calendar requests. Please try again later.",
            "500": "Google Calendar service temporarily unavailable.",
        }

        return error_mappings.get(error_code, f"Calendar error: {error_message}")

    async def create_event(
        self,
        access_token: str,
        summary: str,
        start_time: datetime,
        end_time: datetime,
        timezone_str: str,
        description: str = "",
        attendees: list[dict[str, str]] | None = None,
        reminder_minutes: dict[str, list[int]] | None = None,
        calendar_id: str = CALENDAR_PRIMARY,
    ) -> dict:
        """
        Create a calendar event.

        Args:
            access_token: Valid OAuth access token
            summary: Event title
            start_time: Event start (naive wall-clock time in timezone_str)
            end_time: Event end
            timezone_str: IANA timezone the times are expressed in
            description: Event description
            attendees: [{"email": ..., "displayName": ...}]
            reminder_minutes: {"email": [1440], "popup": [60, 30]}
            calendar_id: Calendar ID (default: primary)

        Returns:
            dict: Created event ({"id", "htmlLink", ...})

        Raises:
            GoogleCalendarError: If creating event fails
        """
        url = f"{CALENDAR_API_BASE_URL}/calendars/{calendar_id}/events"

        event_data: dict = {
            "summary": summary,
            "description": description,
            "start": {"dateTime": start_time.isoformat(), "timeZone": timezone_str},
            "end": {"dateTime": end_time.isoformat(), "timeZone": timezone_str},
            "colorId": APPOINTMENT_COLOR_ID,
        }

        if attendees:
            event_data["attendees"] = attendees

        if reminder_minutes:
            event_data["reminders"] = {
                "useDefault": False,
                "overrides": [
                    {"method": method, "minutes": minutes}
                    for method, values in reminder_minutes.items()
                    for minutes in values
                ],
            }

        logger.info(
            "Creating calendar event",
            summary=summary,
            start_time=start_time.isoformat(),
            calendar_id=calendar_id,
        )

        try:
            response = await self._request_with_retry(
                "POST",
                url,
                headers=self._get_auth_headers(access_token),
                params={"sendUpdates": "all"},
                json=event_data,
            )
        except httpx.RequestError as e:
            logger.error("Network error creating event", summary=summary, error=str(e))
            raise GoogleCalendarError(f"Failed to create event: {e}") from e

        data = self._handle_api_response(response, "create_event")
        logger.info("Event created successfully", event_id=data.get("id"), summary=summary)
        return data


# Singleton instance for application use
google_calendar_service = GoogleCalendarService()
