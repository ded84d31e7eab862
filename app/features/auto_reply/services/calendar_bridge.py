"""
Calendar Bridge: turns a detected appointment request into a calendar event.

Only numeric dates (15/03/2025, 15-03-25) are booked; weekday names and
relative terms are left for a human to confirm. Failures here never affect
the reply that was already sent.
"""

import re
from datetime import datetime, timedelta
from typing import Protocol

from app.features.auto_reply.domain import Tenant
from app.features.auto_reply.services.credentials import (
    CredentialError,
    GoogleCredentialProvider,
    credential_provider,
)
from app.infrastructure.observability.logging import get_logger
from app.services.calendar.google_client import (
    GoogleCalendarError,
    GoogleCalendarService,
    google_calendar_service,
)

logger = get_logger(__name__)

NUMERIC_DATE = re.compile(r"^\s*(\d{1,2})[/\-](\d{1,2})[/\-](\d{2,4})\s*$")
CLOCK_TIME = re.compile(r"^\s*(\d{1,2}):(\d{2})\s*$")

DEFAULT_START_HOUR = 10
TWO_DIGIT_YEAR_BASE = 2000

REMINDER_MINUTES = {
    "email": [24 * 60],
    "popup": [60, 30],
}


class CalendarBridgeError(Exception):
    """Appointment could not be parsed or booked."""

    def __init__(self, message: str, tenant_id: str | None = None, recoverable: bool = False):
        super().__init__(message)
        self.tenant_id = tenant_id
        self.recoverable = recoverable


def parse_appointment_start(raw_date: str | None, raw_time: str | None = None) -> datetime | None:
    """
    Wall-clock start time from raw date/time tokens.

    D/M/Y with `/` or `-`; two-digit years are 20xx. The time is used only
    when it is HH:MM, otherwise the appointment defaults to 10:00. Returns
    None for non-numeric dates and impossible calendar dates.
    """
    if not raw_date:
        return None

    date_match = NUMERIC_DATE.match(raw_date)
    if not date_match:
        return None

    day, month, year = (int(part) for part in date_match.groups())
    if year < 100:
        year += TWO_DIGIT_YEAR_BASE

    hour, minute = DEFAULT_START_HOUR, 0
    if raw_time:
        time_match = CLOCK_TIME.match(raw_time)
        if time_match:
            hour, minute = int(time_match.group(1)), int(time_match.group(2))

    try:
        return datetime(year, month, day, hour, minute)
    except ValueError:
        logger.info("Unparseable appointment date", raw_date=raw_date, raw_time=raw_time)
        return None


class CalendarBridge(Protocol):
    async def create_appointment(
        self,
        tenant: Tenant,
        attendee_email: str,
        attendee_name: str,
        start: datetime,
        duration_minutes: int,
        description: str,
    ) -> str: ...


class GoogleCalendarBridge:
    """Books appointments on the studio's primary Google Calendar."""

    def __init__(
        self,
        calendar_client: GoogleCalendarService | None = None,
        credentials: GoogleCredentialProvider | None = None,
    ):
        self.calendar_client = calendar_client or google_calendar_service
        self.credentials = credentials or credential_provider

    async def create_appointment(
        self,
        tenant: Tenant,
        attendee_email: str,
        attendee_name: str,
        start: datetime,
        duration_minutes: int,
        description: str,
    ) -> str:
        """
        Create the event and return its id.

        Raises:
            CalendarBridgeError: Missing calendar access or API failure
        """
        try:
            credential = await self.credentials.get_credential(tenant)
        except CredentialError as e:
            raise CalendarBridgeError(f"No usable Google credential: {e}", tenant_id=tenant.id) from e

        if not credential.has_calendar_access():
            raise CalendarBridgeError("Google grant does not include Calendar scope", tenant_id=tenant.id)

        name = attendee_name or attendee_email
        try:
            event = await self.calendar_client.create_event(
                credential.access_token,
                summary=f"Appuntamento - {name}",
                start_time=start,
                end_time=start + timedelta(minutes=duration_minutes),
                timezone_str=tenant.timezone,
                description=description,
                attendees=[{"email": attendee_email, "displayName": name}],
                reminder_minutes=REMINDER_MINUTES,
            )
        except GoogleCalendarError as e:
            raise CalendarBridgeError(
                f"Calendar event creation failed: {e}",
                tenant_id=tenant.id,
                recoverable=(e.status_code or 500) >= 500,
            ) from e

        event_id = event.get("id")
        if not event_id:
            raise CalendarBridgeError("Calendar API returned no event id", tenant_id=tenant.id)

        return event_id
