import pytest

from app.features.auto_reply.domain import AppointmentIntent
from app.features.auto_reply.services.reply_generator import (
    REPLY_SYSTEM_PROMPT,
    GenerationFailedError,
    QuotaExceededError,
    ReplyGenerator,
    build_reply_prompt,
    calculate_reply_confidence,
    strip_leaked_headers,
)
from app.services.openai_service import (
    OpenAIMalformedResponseError,
    OpenAIQuotaError,
    OpenAIServiceError,
)


@pytest.fixture
def generator(generation_service, guard):
    return ReplyGenerator(generation_service=generation_service, guard=guard)


@pytest.mark.asyncio
async def test_generate_returns_reply_and_counts_quota(generator, generation_service, guard, tenant, message_factory):
    reply = await generator.generate(message_factory(), tenant)

    assert reply.reply_body.startswith("Gentile paziente")
    assert reply.tokens_used == 321
    assert guard.get_usage_stats()["minute"]["count"] == 1

    call = generation_service.calls[0]
    assert call["history"] == []
    assert call["system_prompt"] == REPLY_SYSTEM_PROMPT
    assert "Studio Dentistico Rossi" in call["prompt"]
    assert "mario.bianchi@example.com" in call["prompt"]


@pytest.mark.asyncio
async def test_quota_denied_before_any_call(generator, generation_service, guard, tenant, message_factory):
    guard._windows["minute"].count = guard._windows["minute"].limit

    with pytest.raises(QuotaExceededError) as exc_info:
        await generator.generate(message_factory(), tenant)

    assert exc_info.value.window == "minute"
    assert generation_service.calls == []


@pytest.mark.asyncio
async def test_provider_quota_maps_to_quota_exceeded(generator, generation_service, tenant, message_factory):
    generation_service.error = OpenAIQuotaError("insufficient_quota")

    with pytest.raises(QuotaExceededError) as exc_info:
        await generator.generate(message_factory(), tenant)

    assert exc_info.value.window == "provider"


@pytest.mark.asyncio
async def test_malformed_response_maps_to_generation_failed(generator, generation_service, tenant, message_factory):
    generation_service.error = OpenAIMalformedResponseError("Empty response", raw_response="   ")

    with pytest.raises(GenerationFailedError):
        await generator.generate(message_factory(), tenant)


@pytest.mark.asyncio
async def test_permanent_service_error_maps_to_generation_failed(
    generator, generation_service, tenant, message_factory
):
    generation_service.error = OpenAIServiceError("auth failed", recoverable=False)

    with pytest.raises(GenerationFailedError):
        await generator.generate(message_factory(), tenant)


@pytest.mark.asyncio
async def test_recoverable_service_error_is_reraised(generator, generation_service, tenant, message_factory):
    generation_service.error = OpenAIServiceError("unreachable", recoverable=True)

    with pytest.raises(OpenAIServiceError) as exc_info:
        await generator.generate(message_factory(), tenant)

    assert not isinstance(exc_info.value, GenerationFailedError)
    assert exc_info.value.recoverable is True


@pytest.mark.asyncio
async def test_leaked_headers_are_removed(generator, generation_service, tenant, message_factory):
    generation_service.text = "Oggetto: Re: Informazioni\nA: mario.bianchi@example.com\n\nGentile Mario, grazie."

    reply = await generator.generate(message_factory(), tenant)

    assert reply.reply_body == "Gentile Mario, grazie."


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("Subject: Hello\n\nBody text", "Body text"),
        ("From: Studio\nTo: Mario\nDear Mario", "Dear Mario"),
        ("Gentile Mario,\nOggetto: resta qui", "Gentile Mario,\nOggetto: resta qui"),
        ("Oggetto: solo intestazione", ""),
    ],
)
def test_strip_leaked_headers(raw, expected):
    assert strip_leaked_headers(raw) == expected


def test_confidence_base_only(message_factory):
    message = message_factory(body="Ciao")
    assert calculate_reply_confidence(message, "Ok", AppointmentIntent()) == 70


def test_confidence_all_bonuses_capped(message_factory):
    message = message_factory(body="x" * 120)
    appointment = AppointmentIntent(has_appointment=True, confidence=1.0)

    assert calculate_reply_confidence(message, "y" * 300, appointment) == 100


def test_confidence_boundaries_are_exclusive(message_factory):
    message = message_factory(body="x" * 50)
    appointment = AppointmentIntent(has_appointment=True, confidence=0.7)

    assert calculate_reply_confidence(message, "y" * 100, appointment) == 70


def test_prompt_mentions_appointment_and_language(tenant, message_factory):
    appointment = AppointmentIntent(
        has_appointment=True, confidence=1.0, suggested_date="15/03/2025", suggested_time="14:30"
    )

    prompt = build_reply_prompt(message_factory(), tenant, appointment)

    assert "15/03/2025" in prompt
    assert "14:30" in prompt
    assert "operatore" in prompt
    assert "italiano" in prompt
    assert "+39 02 1234567" in prompt
