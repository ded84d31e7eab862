"""
Reply generation for inbound patient emails.

Builds a grounded prompt from the studio context, the original message and
the detected intent, asks the Generation Service for a body-only reply and
cleans up header lines a model may prepend anyway. The shared Quota Guard is
consulted before every generation call.
"""

import re

from app.features.auto_reply.domain import (
    AppointmentIntent,
    GeneratedReply,
    InboxMessage,
    Tenant,
)
from app.features.auto_reply.services.intent_detector import IntentDetector, intent_detector
from app.features.auto_reply.services.quota_guard import QuotaGuard, quota_guard
from app.infrastructure.observability.logging import get_logger
from app.services.openai_service import (
    OpenAIMalformedResponseError,
    OpenAIQuotaError,
    OpenAIService,
    OpenAIServiceError,
    openai_service,
)

logger = get_logger(__name__)

LEAKED_HEADER_PATTERN = re.compile(
    r"^\s*(subject|oggetto|to|a|from|da)\s*:[^\n]*(?:\n+|$)", re.IGNORECASE
)

LANGUAGE_NAMES = {
    "it": "italiano",
    "en": "English",
}

REPLY_SYSTEM_PROMPT = """Sei l'assistente virtuale di uno studio dentistico professionale.

Rispondi alle email dei pazienti in modo professionale ma cordiale, empatico, chiaro e conciso.

Regole:
1. Usa sempre il "Lei" formale
2. Firma come "Assistente Virtuale" seguito dal nome dello studio
3. Non dare diagnosi mediche o consigli clinici specifici
4. Per emergenze, invita sempre a chiamare lo studio
5. Per domande cliniche complesse o sui costi, invita a prenotare una visita
6. Lunghezza: 3-5 paragrafi al massimo
7. Se rilevi una richiesta di appuntamento, spiega che un operatore ricontatterà il paziente per confermare data e ora
8. Scrivi solo il corpo della email, senza oggetto, mittente o destinatario"""

NORMAL_MESSAGE_RANGE = (50, 500)
NORMAL_REPLY_RANGE = (100, 800)
HIGH_APPOINTMENT_CONFIDENCE = 0.7
BASE_REPLY_CONFIDENCE = 70
RAW_PREFIX_CHARS = 120


class ReplyGenerationError(Exception):
    """Base exception for reply generation."""

    def __init__(self, message: str, recoverable: bool = False):
        super().__init__(message)
        self.recoverable = recoverable


class QuotaExceededError(ReplyGenerationError):
    """Quota Guard (or the upstream provider) refused the generation call."""

    def __init__(self, message: str, window: str | None = None):
        super().__init__(message, recoverable=False)
        self.window = window


class GenerationFailedError(ReplyGenerationError):
    """Generation returned nothing usable or failed permanently."""

    def __init__(self, message: str, raw_response: str | None = None, recoverable: bool = False):
        super().__init__(message, recoverable=recoverable)
        self.raw_response = raw_response


def strip_leaked_headers(text: str) -> str:
    """Remove header-like lines (Subject:, Oggetto:, ...) at the top of a reply."""
    cleaned = text.strip()
    while True:
        stripped = LEAKED_HEADER_PATTERN.sub("", cleaned, count=1)
        if stripped == cleaned:
            return cleaned.strip()
        cleaned = stripped


def calculate_reply_confidence(
    message: InboxMessage, reply_body: str, appointment: AppointmentIntent
) -> int:
    """Bounded triage score in [70, 100]; observability only, never gating."""
    confidence = BASE_REPLY_CONFIDENCE

    if NORMAL_MESSAGE_RANGE[0] < len(message.body or "") < NORMAL_MESSAGE_RANGE[1]:
        confidence += 10

    if NORMAL_REPLY_RANGE[0] < len(reply_body) < NORMAL_REPLY_RANGE[1]:
        confidence += 10

    if appointment.has_appointment and appointment.confidence > HIGH_APPOINTMENT_CONFIDENCE:
        confidence += 10

    return min(confidence, 100)


def build_reply_prompt(message: InboxMessage, tenant: Tenant, appointment: AppointmentIntent) -> str:
    """Prompt embedding the original email, studio context and detection result."""
    language = LANGUAGE_NAMES.get(tenant.language, tenant.language)

    if appointment.has_appointment:
        detection = (
            f"Richiesta di appuntamento rilevata (confidenza: {appointment.confidence * 100:.0f}%)\n"
            f"Data suggerita: {appointment.suggested_date or 'Non specificata'}\n"
            f"Ora suggerita: {appointment.suggested_time or 'Non specificata'}"
        )
        task_note = (
            "IMPORTANTE: conferma che la richiesta di appuntamento è stata ricevuta e che "
            "un operatore ricontatterà il paziente a breve per confermare data e ora."
        )
    else:
        detection = "Nessuna richiesta di appuntamento rilevata"
        task_note = ""

    return f"""EMAIL RICEVUTA:
Da: {message.sender_header}
Oggetto: {message.subject}
Messaggio:
{message.body}

CONTESTO STUDIO:
Studio: {tenant.display_name}
Email: {tenant.contact_email or 'Non disponibile'}
Telefono: {tenant.contact_phone or 'Non disponibile'}

RILEVAMENTO APPUNTAMENTO:
{detection}

COMPITO:
Genera una risposta email professionale, empatica e utile in {language}.
{task_note}

Rispondi SOLO con il corpo della email (senza oggetto, senza "Da:", senza "A:")."""


class ReplyGenerator:
    """Drafts a reply for one message, guarded by the shared quota."""

    def __init__(
        self,
        generation_service: OpenAIService | None = None,
        guard: QuotaGuard | None = None,
        detector: IntentDetector | None = None,
    ):
        self.generation_service = generation_service or openai_service
        self.quota_guard = guard or quota_guard
        self.detector = detector or intent_detector

    async def generate(self, message: InboxMessage, tenant: Tenant) -> GeneratedReply:
        """
        Generate a reply for an inbound message.

        Args:
            message: The inbound message to answer
            tenant: Studio whose context grounds the reply

        Returns:
            GeneratedReply: Reply body, appointment detection and confidence

        Raises:
            QuotaExceededError: If the shared quota denies the call
            GenerationFailedError: If generation fails or returns unusable content
            OpenAIServiceError: For transient generation failures (recoverable)
        """
        appointment = self.detector.classify(message).appointment
        prompt = build_reply_prompt(message, tenant, appointment)

        decision = self.quota_guard.check()
        if not decision.allowed:
            logger.warning(
                "Reply generation blocked by quota guard",
                tenant_id=tenant.id,
                message_id=message.id,
                window=decision.window,
            )
            raise QuotaExceededError(decision.reason or "Generation quota exceeded", window=decision.window)

        try:
            completion = await self.generation_service.complete(prompt, [], REPLY_SYSTEM_PROMPT)
        except OpenAIQuotaError as e:
            raise QuotaExceededError(str(e), window="provider") from e
        except OpenAIMalformedResponseError as e:
            logger.error(
                "Generation returned malformed content",
                tenant_id=tenant.id,
                message_id=message.id,
                raw_prefix=e.raw_response[:RAW_PREFIX_CHARS],
            )
            raise GenerationFailedError(str(e), raw_response=e.raw_response) from e
        except OpenAIServiceError as e:
            if e.recoverable:
                raise
            raise GenerationFailedError(f"Generation failed: {e}") from e

        reply_body = strip_leaked_headers(completion.text)
        if not reply_body:
            logger.error(
                "Generation produced only header lines",
                tenant_id=tenant.id,
                message_id=message.id,
                raw_prefix=completion.text[:RAW_PREFIX_CHARS],
            )
            raise GenerationFailedError("Generated reply is empty", raw_response=completion.text)

        confidence = calculate_reply_confidence(message, reply_body, appointment)

        logger.info(
            "Reply generated",
            tenant_id=tenant.id,
            message_id=message.id,
            reply_length=len(reply_body),
            confidence=confidence,
            has_appointment=appointment.has_appointment,
            tokens_used=completion.tokens_used,
        )

        return GeneratedReply(
            reply_body=reply_body,
            appointment=appointment,
            confidence=confidence,
            tokens_used=completion.tokens_used,
        )
