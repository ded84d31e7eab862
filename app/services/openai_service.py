# app/services/openai_service.py
"""
OpenAI Service for reply generation.
Black-box text completion used by the auto-reply pipeline: prompt plus
optional conversation history in, plain text out.
"""

import asyncio
from dataclasses import dataclass
from typing import Any

import openai
from openai import AsyncOpenAI

from app.config import settings
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

MAX_CONNECTION_RETRIES = 2


class OpenAIServiceError(Exception):
    """Base exception for OpenAI service errors."""

    def __init__(self, message: str, recoverable: bool = True):
        super().__init__(message)
        self.recoverable = recoverable


class OpenAIQuotaError(OpenAIServiceError):
    """Upstream rate limit or billing quota exhausted."""

    def __init__(self, message: str):
        super().__init__(message, recoverable=False)


class OpenAIMalformedResponseError(OpenAIServiceError):
    """Completion came back empty or unusable."""

    def __init__(self, message: str, raw_response: str | None = None):
        super().__init__(message, recoverable=False)
        self.raw_response = raw_response or ""


@dataclass(slots=True)
class CompletionResult:
    text: str
    tokens_used: int
    model: str


class OpenAIService:
    """
    Service for OpenAI chat completions.

    The client is created on first use so importing the module never requires
    an API key.
    """

    def __init__(self, client: AsyncOpenAI | None = None):
        self.client = client

    def _get_client(self) -> AsyncOpenAI:
        """Initialize OpenAI async client with configuration."""
        if self.client is not None:
            return self.client

        if not settings.OPENAI_API_KEY:
            raise OpenAIServiceError("OPENAI_API_KEY not configured in settings", recoverable=False)

        self.client = AsyncOpenAI(
            api_key=settings.OPENAI_API_KEY,
            timeout=settings.OPENAI_TIMEOUT_SECONDS,
            max_retries=0,
        )

        logger.info(
            "OpenAI client initialized",
            model=settings.OPENAI_MODEL,
            timeout=settings.OPENAI_TIMEOUT_SECONDS,
        )
        return self.client

    def _build_messages(
        self, prompt: str, history: list[dict[str, str]], system_prompt: str | None
    ) -> list[dict[str, str]]:
        messages: list[dict[str, str]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})

        for entry in history:
            role = "user" if entry.get("role") == "user" else "assistant"
            messages.append({"role": role, "content": entry.get("content", "")})

        messages.append({"role": "user", "content": prompt})
        return messages

    async def complete(
        self,
        prompt: str,
        history: list[dict[str, str]] | None = None,
        system_prompt: str | None = None,
    ) -> CompletionResult:
        """
        Generate a completion for a prompt.

        Args:
            prompt: User prompt
            history: Prior turns as {"role": "user"|"assistant", "content": str}
            system_prompt: Optional system instructions

        Returns:
            CompletionResult: Generated text with token usage

        Raises:
            OpenAIQuotaError: If the upstream quota is exhausted
            OpenAIMalformedResponseError: If the completion is empty
            OpenAIServiceError: For timeouts, connection and API errors
        """
        client = self._get_client()
        messages = self._build_messages(prompt, history or [], system_prompt)

        for attempt in range(MAX_CONNECTION_RETRIES + 1):
            try:
                logger.debug(
                    "Calling OpenAI chat completions",
                    attempt=attempt + 1,
                    model=settings.OPENAI_MODEL,
                    message_count=len(messages),
                )

                response = await client.chat.completions.create(
                    model=settings.OPENAI_MODEL,
                    messages=messages,
                    max_tokens=settings.OPENAI_MAX_TOKENS,
                    temperature=settings.OPENAI_TEMPERATURE,
                )
                break

            except openai.RateLimitError as e:
                logger.warning("OpenAI rate limit or quota hit", error=str(e))
                raise OpenAIQuotaError(f"OpenAI quota exceeded: {e}") from e

            except (openai.APITimeoutError, openai.APIConnectionError) as e:
                if attempt >= MAX_CONNECTION_RETRIES:
                    logger.error("OpenAI API unreachable", attempts=attempt + 1, error=str(e))
                    raise OpenAIServiceError(f"OpenAI API unreachable: {e}") from e

                wait_time = min(2**attempt, 10)
                logger.warning(
                    "OpenAI connection error, retrying",
                    attempt=attempt + 1,
                    wait_time=wait_time,
                    error=str(e),
                )
                await asyncio.sleep(wait_time)

            except openai.AuthenticationError as e:
                logger.error("OpenAI authentication failed", error=str(e))
                raise OpenAIServiceError(f"OpenAI authentication failed: {e}", recoverable=False) from e

            except openai.APIStatusError as e:
                recoverable = e.status_code >= 500
                logger.error(
                    "OpenAI API error",
                    status_code=e.status_code,
                    error=str(e),
                    recoverable=recoverable,
                )
                raise OpenAIServiceError(f"OpenAI API error: {e}", recoverable=recoverable) from e

        content = None
        if response.choices and response.choices[0].message:
            content = response.choices[0].message.content

        if not content or not content.strip():
            raise OpenAIMalformedResponseError("Empty response from OpenAI API", raw_response=content)

        tokens_used = response.usage.total_tokens if response.usage else 0

        logger.info(
            "OpenAI completion successful",
            response_length=len(content),
            usage_tokens=tokens_used,
        )

        return CompletionResult(text=content.strip(), tokens_used=tokens_used, model=settings.OPENAI_MODEL)

    def health_check(self) -> dict[str, Any]:
        """Report configuration health without calling the API."""
        return {
            "healthy": bool(settings.OPENAI_API_KEY),
            "service": "openai",
            "model": settings.OPENAI_MODEL,
            "client_initialized": self.client is not None,
        }


# Singleton instance for application use
openai_service = OpenAIService()
