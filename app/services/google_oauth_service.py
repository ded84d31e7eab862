"""
Google OAuth Service for refreshing Gmail + Calendar access tokens.
The OAuth handshake itself happens outside this service; tokens are only
refreshed here when the scheduler finds them expired.
"""

import asyncio
from datetime import UTC, datetime, timedelta

import httpx

from app.config import settings
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"

# Request timeouts and retry configuration
REQUEST_TIMEOUT = 10  # seconds
MAX_RETRIES = 3
BACKOFF_FACTOR = 2  # 2, 4, 8 seconds
RETRY_STATUS_CODES = {429, 500, 502, 503, 504}

# Errors meaning the grant is gone and the studio must reconnect
REVOKED_GRANT_ERRORS = {"invalid_grant", "unauthorized_client", "invalid_client"}


class GoogleOAuthError(Exception):
    """Custom exception for Google OAuth-related errors."""

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        response_data: dict | None = None,
        recoverable: bool = True,
    ):
        super().__init__(message)
        self.error_code = error_code
        self.response_data = response_data or {}
        self.recoverable = recoverable


class TokenResponse:
    """Structured representation of OAuth token response."""

    def __init__(self, data: dict):
        self.access_token = data.get("access_token")
        self.refresh_token = data.get("refresh_token")
        self.token_type = data.get("token_type", "Bearer")
        self.expires_in = data.get("expires_in")
        self.scope = data.get("scope", "")

        if self.expires_in:
            self.expires_at = datetime.now(UTC) + timedelta(seconds=int(self.expires_in))
        else:
            self.expires_at = None

    def is_valid(self) -> bool:
        """Check if token response contains required fields."""
        return bool(self.access_token and self.token_type)


class GoogleOAuthService:
    """
    Service for Google OAuth 2.0 token refresh.

    Configuration is validated on use so the worker can start (and report
    per-tenant auth failures) even when client credentials are missing.
    """

    def _validate_config(self) -> None:
        if not settings.GOOGLE_CLIENT_ID:
            raise GoogleOAuthError("GOOGLE_CLIENT_ID not configured", recoverable=False)
        if not settings.GOOGLE_CLIENT_SECRET:
            raise GoogleOAuthError("GOOGLE_CLIENT_SECRET not configured", recoverable=False)

    async def _post_with_retry(self, url: str, data: dict, operation: str) -> httpx.Response:
        """
        Perform POST request with retry/backoff handling.

        Args:
            url: Target URL
            data: Form data payload
            operation: Operation name for logging context
        """
        headers = {"Content-Type": "application/x-www-form-urlencoded"}

        async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT) as client:
            for attempt in range(1, MAX_RETRIES + 1):
                try:
                    response = await client.post(url, data=data, headers=headers)

                    if response.status_code in RETRY_STATUS_CODES and attempt < MAX_RETRIES:
                        wait_time = BACKOFF_FACTOR**attempt
                        logger.warning(
                            "Google OAuth transient status",
                            operation=operation,
                            status_code=response.status_code,
                            attempt=attempt,
                            wait_time=wait_time,
                        )
                        await asyncio.sleep(wait_time)
                        continue

                    return response

                except httpx.RequestError as exc:
                    if attempt == MAX_RETRIES:
                        raise

                    wait_time = BACKOFF_FACTOR**attempt
                    logger.warning(
                        "Google OAuth request error, retrying",
                        operation=operation,
                        attempt=attempt,
                        wait_time=wait_time,
                        error=str(exc),
                        error_type=type(exc).__name__,
                    )
                    await asyncio.sleep(wait_time)

        raise GoogleOAuthError(f"{operation} failed: retries exhausted")

    async def refresh_access_token(self, refresh_token: str) -> TokenResponse:
        """
        Refresh access token using refresh token.

        Args:
            refresh_token: Valid refresh token

        Returns:
            TokenResponse: New access token (refresh token preserved if not rotated)

        Raises:
            GoogleOAuthError: If token refresh fails; recoverable=False when the
                grant was revoked and the studio must reconnect
        """
        self._validate_config()

        data = {
            "client_id": settings.GOOGLE_CLIENT_ID,
            "client_secret": settings.GOOGLE_CLIENT_SECRET,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }

        logger.info("Refreshing Google access token", refresh_token_preview=refresh_token[:8] + "...")

        try:
            response = await self._post_with_retry(GOOGLE_TOKEN_URL, data, operation="token_refresh")
        except httpx.RequestError as e:
            logger.error("Network error during token refresh", error=str(e), error_type=type(e).__name__)
            raise GoogleOAuthError(f"Network error during token refresh: {e}") from e

        token_response = self._handle_token_response(response)

        # Google may not return a new refresh token on refresh
        if not token_response.refresh_token:
            token_response.refresh_token = refresh_token

        return token_response

    def _handle_token_response(self, response: httpx.Response) -> TokenResponse:
        """
        Handle and validate token response from Google.

        Raises:
            GoogleOAuthError: If response is invalid or contains errors
        """
        if not response.is_success:
            try:
                error_data = response.json()
            except ValueError:
                logger.error(
                    "Google token refresh failed with non-JSON response",
                    status_code=response.status_code,
                    response_text=response.text[:200],
                )
                raise GoogleOAuthError(
                    f"Google OAuth service error (HTTP {response.status_code})",
                    recoverable=response.status_code >= 500,
                ) from None

            error_code = error_data.get("error", "unknown_error")
            logger.error(
                "Google token refresh failed",
                status_code=response.status_code,
                error_code=error_code,
                error_description=error_data.get("error_description"),
            )
            raise GoogleOAuthError(
                self._map_google_error(error_code),
                error_code=error_code,
                response_data=error_data,
                recoverable=error_code not in REVOKED_GRANT_ERRORS,
            )

        try:
            token_response = TokenResponse(response.json())
        except ValueError as e:
            raise GoogleOAuthError(f"Failed to parse Google response: {e}") from e

        if not token_response.is_valid():
            raise GoogleOAuthError("Invalid token response from Google")

        logger.info(
            "Google token refresh successful",
            expires_in=token_response.expires_in,
            rotated_refresh_token=bool(token_response.refresh_token),
        )
        return token_response

    def _map_google_error(self, error_code: str) -> str:
        """Map Google OAuth error codes to readable messages."""
        error_mappings = {
            "invalid_grant": "Google authorization expired or was revoked. Please reconnect.",
            "invalid_client": "Google OAuth client is misconfigured.",
            "unauthorized_client": "Google OAuth client is not authorized for this grant.",
            "invalid_request": "Invalid token refresh request.",
        }
        return error_mappings.get(error_code, f"OAuth error: {error_code}")


# Singleton instance for application use
google_oauth_service = GoogleOAuthService()
