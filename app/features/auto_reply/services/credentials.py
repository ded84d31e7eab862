"""
Access-token resolution for a studio's Google account.

Gmail and Calendar share one OAuth grant. Tokens close to expiry are refreshed
through the OAuth service and written back to the credential store.
"""

from app.features.auto_reply.domain import MailboxCredential, Tenant
from app.features.auto_reply.repository.tenant_repository import TenantRepository, TenantStoreError
from app.infrastructure.observability.logging import get_logger
from app.services.google_oauth_service import (
    GoogleOAuthError,
    GoogleOAuthService,
    google_oauth_service,
)

logger = get_logger(__name__)

REFRESH_BUFFER_MINUTES = 5


class CredentialError(Exception):
    """Base exception for credential resolution."""

    def __init__(self, message: str, tenant_id: str | None = None, recoverable: bool = False):
        super().__init__(message)
        self.tenant_id = tenant_id
        self.recoverable = recoverable


class AuthExpiredError(CredentialError):
    """The studio has no usable grant; it must reconnect Google."""


class CredentialUnavailableError(CredentialError):
    """The grant exists but could not be refreshed right now."""

    def __init__(self, message: str, tenant_id: str | None = None):
        super().__init__(message, tenant_id=tenant_id, recoverable=True)


class GoogleCredentialProvider:
    """Resolves a valid access token for a tenant, refreshing when needed."""

    def __init__(
        self,
        oauth_service: GoogleOAuthService | None = None,
        tenant_repository: type[TenantRepository] = TenantRepository,
    ):
        self.oauth_service = oauth_service or google_oauth_service
        self.tenant_repository = tenant_repository

    async def get_credential(self, tenant: Tenant) -> MailboxCredential:
        """
        Active credential for the tenant with a fresh access token.

        Raises:
            AuthExpiredError: No active credential or the grant was revoked
            CredentialUnavailableError: Refresh failed transiently
        """
        try:
            credential = await self.tenant_repository.get_credentials(tenant.id)
        except TenantStoreError as e:
            if e.recoverable:
                raise CredentialUnavailableError(str(e), tenant_id=tenant.id) from e
            raise AuthExpiredError(str(e), tenant_id=tenant.id) from e

        if credential is None or not credential.active:
            raise AuthExpiredError("No active Google credential", tenant_id=tenant.id)

        if not credential.needs_refresh(REFRESH_BUFFER_MINUTES):
            return credential

        return await self._refresh(tenant, credential)

    async def get_access_token(self, tenant: Tenant) -> str:
        credential = await self.get_credential(tenant)
        return credential.access_token

    async def _refresh(self, tenant: Tenant, credential: MailboxCredential) -> MailboxCredential:
        if not credential.refresh_token:
            raise AuthExpiredError("Access token expired and no refresh token stored", tenant_id=tenant.id)

        try:
            token_response = await self.oauth_service.refresh_access_token(credential.refresh_token)
        except GoogleOAuthError as e:
            logger.warning(
                "Google token refresh failed",
                tenant_id=tenant.id,
                error=str(e),
                error_code=e.error_code,
                recoverable=e.recoverable,
            )
            if e.recoverable:
                raise CredentialUnavailableError(str(e), tenant_id=tenant.id) from e
            raise AuthExpiredError(str(e), tenant_id=tenant.id) from e

        refreshed = credential.model_copy(
            update={
                "access_token": token_response.access_token,
                "refresh_token": token_response.refresh_token or credential.refresh_token,
                "expires_at": token_response.expires_at,
            }
        )

        try:
            await self.tenant_repository.update_access_token(
                tenant.id,
                refreshed.access_token,
                refreshed.expires_at,
                refresh_token=token_response.refresh_token,
            )
        except TenantStoreError as e:
            # The new token is valid for this tick even if it could not be stored
            logger.error("Failed to persist refreshed token", tenant_id=tenant.id, error=str(e))

        return refreshed


# Singleton instance for application use
credential_provider = GoogleCredentialProvider()
