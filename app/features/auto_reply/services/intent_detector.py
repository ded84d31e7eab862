"""
Intent detection for inbound patient emails.

Decides whether a message may receive an automated reply and scores how
likely it is to be an appointment request. Scoring is deterministic:
0.4 for a keyword hit, 0.3 for a date token, 0.3 for a time token.
"""

import re
from typing import Protocol

from app.features.auto_reply.domain import (
    AppointmentIntent,
    InboxMessage,
    IntentResult,
)

AUTOMATED_SENDER_MARKERS = ("no-reply", "noreply", "automated", "notification")

AUTO_REPLY_SUBJECT_MARKERS = (
    "out of office",
    "auto-reply",
    "risposta automatica",
    "fuori sede",
)

APPOINTMENT_KEYWORDS = (
    # Italian
    "appuntamento",
    "prenotare",
    "prenotazione",
    "vorrei venire",
    "disponibilità",
    "quando posso",
    "visita",
    "consulenza",
    # English
    "appointment",
    "booking",
    "book a",
    "availability",
    "consultation",
)

DATE_PATTERNS = (
    re.compile(r"\b\d{1,2}[/\-]\d{1,2}[/\-]\d{2,4}\b"),
    re.compile(
        r"\b(lunedì|martedì|mercoledì|giovedì|venerdì|sabato|domenica|"
        r"monday|tuesday|wednesday|thursday|friday|saturday|sunday)\b",
        re.IGNORECASE,
    ),
    re.compile(r"\b(dopodomani|domani|prossima settimana|tomorrow|next week)\b", re.IGNORECASE),
)

TIME_PATTERNS = (
    re.compile(r"\b\d{1,2}:\d{2}\b"),
    re.compile(r"\b\d{1,2}\s?(am|pm)\b", re.IGNORECASE),
    re.compile(r"\b(mattina|pomeriggio|sera|morning|afternoon|evening)\b", re.IGNORECASE),
)

KEYWORD_WEIGHT = 0.4
DATE_WEIGHT = 0.3
TIME_WEIGHT = 0.3
RAW_TEXT_PREVIEW_CHARS = 200


class IntentDetector(Protocol):
    """Pluggable classification strategy used by the reply pipeline."""

    def classify(self, message: InboxMessage) -> IntentResult: ...


def should_auto_reply(message: InboxMessage) -> bool:
    """
    Conservative allow-by-default check that avoids reply loops with other
    automated systems.
    """
    sender = (message.sender_email or "").lower()
    if not sender:
        return False

    if any(marker in sender for marker in AUTOMATED_SENDER_MARKERS):
        return False

    subject = (message.subject or "").lower()
    if any(marker in subject for marker in AUTO_REPLY_SUBJECT_MARKERS):
        return False

    return True


def _first_match(patterns: tuple[re.Pattern, ...], text: str) -> str | None:
    for pattern in patterns:
        match = pattern.search(text)
        if match:
            return match.group(0)
    return None


def detect_appointment_request(body: str) -> AppointmentIntent:
    """Score an email body for an appointment request and pull date/time tokens."""
    text = (body or "").lower()

    if not any(keyword in text for keyword in APPOINTMENT_KEYWORDS):
        return AppointmentIntent(has_appointment=False, confidence=0.0)

    found_date = _first_match(DATE_PATTERNS, text)
    found_time = _first_match(TIME_PATTERNS, text)

    confidence = KEYWORD_WEIGHT
    if found_date:
        confidence += DATE_WEIGHT
    if found_time:
        confidence += TIME_WEIGHT

    return AppointmentIntent(
        has_appointment=True,
        confidence=min(round(confidence, 2), 1.0),
        suggested_date=found_date,
        suggested_time=found_time,
        raw_text=(body or "")[:RAW_TEXT_PREVIEW_CHARS],
    )


class HeuristicIntentDetector:
    """Keyword and regex based detector; no model calls."""

    def classify(self, message: InboxMessage) -> IntentResult:
        return IntentResult(
            auto_reply_eligible=should_auto_reply(message),
            appointment=detect_appointment_request(message.body),
        )


intent_detector = HeuristicIntentDetector()
