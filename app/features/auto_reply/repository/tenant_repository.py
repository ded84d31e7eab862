"""
Repository for studios and their Gmail OAuth credentials.

The auto-reply engine only reads studio profiles; the single write path is
persisting a refreshed access token.
"""

from datetime import datetime

from app.config import settings
from app.db.helpers import DatabaseError, execute_query, fetch_all, fetch_one, with_db_retry
from app.features.auto_reply.domain import MailboxCredential, Tenant
from app.infrastructure.observability.logging import get_logger
from app.services.infrastructure.encryption_service import (
    EncryptionError,
    decrypt_oauth_tokens,
    encrypt_token,
)

logger = get_logger(__name__)

GMAIL_SERVICE = "gmail"


class TenantStoreError(Exception):
    """Raised when studios or credentials cannot be read or written."""

    def __init__(self, message: str, tenant_id: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.tenant_id = tenant_id
        self.recoverable = recoverable


class TenantRepository:
    """Data access for studios with a connected mailbox."""

    @classmethod
    @with_db_retry(max_retries=2)
    async def list_tenants_with_active_mailbox(cls) -> list[Tenant]:
        query = """
            SELECT DISTINCT s.id, s.name, s.email, s.phone, s.language, s.timezone
            FROM studios s
            INNER JOIN oauth_tokens ot ON ot.studio_id = s.id
            WHERE ot.service = %s
              AND ot.active = TRUE
            ORDER BY s.id
        """
        try:
            rows = await fetch_all(query, (GMAIL_SERVICE,))
        except DatabaseError as e:
            logger.error("Failed to list studios with active mailbox", error=str(e))
            raise

        return [cls._row_to_tenant(row) for row in rows]

    @classmethod
    async def get_tenant(cls, tenant_id: str) -> Tenant | None:
        query = """
            SELECT id, name, email, phone, language, timezone
            FROM studios
            WHERE id = %s
        """
        row = await fetch_one(query, (tenant_id,))
        return cls._row_to_tenant(row) if row else None

    @classmethod
    async def get_credentials(cls, tenant_id: str) -> MailboxCredential | None:
        """
        Load and decrypt the active Gmail credential of a studio.

        Raises:
            TenantStoreError: If the row cannot be read (recoverable) or the
                stored tokens cannot be decrypted (not recoverable)
        """
        query = """
            SELECT studio_id, access_token_encrypted, refresh_token_encrypted,
                   scope, expires_at, active
            FROM oauth_tokens
            WHERE studio_id = %s
              AND service = %s
              AND active = TRUE
        """
        try:
            row = await fetch_one(query, (tenant_id, GMAIL_SERVICE))
        except DatabaseError as e:
            raise TenantStoreError(f"Failed to load credential: {e}", tenant_id=tenant_id) from e

        if not row:
            return None

        try:
            access_token, refresh_token = decrypt_oauth_tokens(
                row["access_token_encrypted"], row.get("refresh_token_encrypted")
            )
        except EncryptionError as e:
            logger.error("Failed to decrypt mailbox credential", tenant_id=tenant_id, error=str(e))
            raise TenantStoreError(
                f"Stored credential is unreadable: {e}", tenant_id=tenant_id, recoverable=False
            ) from e

        return MailboxCredential(
            tenant_id=str(row["studio_id"]),
            access_token=access_token,
            refresh_token=refresh_token,
            scope=row.get("scope") or "",
            expires_at=row.get("expires_at"),
            active=bool(row.get("active", True)),
        )

    @classmethod
    async def update_access_token(
        cls,
        tenant_id: str,
        access_token: str,
        expires_at: datetime | None,
        refresh_token: str | None = None,
    ) -> None:
        """Persist a refreshed access token (and a rotated refresh token, if any)."""
        try:
            encrypted_access = encrypt_token(access_token)
            encrypted_refresh = encrypt_token(refresh_token) if refresh_token else None
        except EncryptionError as e:
            raise TenantStoreError(f"Cannot encrypt refreshed token: {e}", tenant_id=tenant_id) from e

        query = """
            UPDATE oauth_tokens
            SET access_token_encrypted = %s,
                refresh_token_encrypted = COALESCE(%s, refresh_token_encrypted),
                expires_at = %s,
                updated_at = NOW()
            WHERE studio_id = %s
              AND service = %s
              AND active = TRUE
        """
        try:
            updated = await execute_query(
                query, (encrypted_access, encrypted_refresh, expires_at, tenant_id, GMAIL_SERVICE)
            )
        except DatabaseError as e:
            raise TenantStoreError(f"Failed to store refreshed token: {e}", tenant_id=tenant_id) from e

        if updated == 0:
            raise TenantStoreError("No active mailbox credential to update", tenant_id=tenant_id)

        logger.info("Mailbox access token refreshed", tenant_id=tenant_id, expires_at=expires_at)

    @staticmethod
    def _row_to_tenant(row: dict) -> Tenant:
        return Tenant(
            id=str(row["id"]),
            display_name=row.get("name") or "",
            contact_email=row.get("email"),
            contact_phone=row.get("phone"),
            language=row.get("language") or settings.AUTO_REPLY_DEFAULT_LANGUAGE,
            timezone=row.get("timezone") or settings.AUTO_REPLY_DEFAULT_TIMEZONE,
        )
