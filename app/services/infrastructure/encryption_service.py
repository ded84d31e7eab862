"""
Encryption service for stored OAuth tokens.
Studio mailbox tokens are kept as Fernet ciphertext (BYTEA) in oauth_tokens.
"""

from cryptography.fernet import Fernet, InvalidToken

from app.config import settings
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class EncryptionError(Exception):
    """Custom exception for encryption/decryption errors."""

    pass


def _get_fernet() -> Fernet:
    """
    Build the Fernet cipher from ENCRYPTION_KEY.

    Raises:
        EncryptionError: If encryption key is missing or malformed
    """
    if not settings.ENCRYPTION_KEY:
        raise EncryptionError("ENCRYPTION_KEY not configured in environment")

    try:
        return Fernet(settings.ENCRYPTION_KEY.encode("utf-8"))
    except (ValueError, TypeError) as e:
        logger.error("Failed to initialize Fernet cipher", error=str(e))
        raise EncryptionError(f"Invalid encryption key: {e}") from e


def encrypt_token(token: str) -> bytes:
    """
    Encrypt a token string for database storage.

    Raises:
        EncryptionError: If the token is empty or the key is unusable
    """
    if not token or not isinstance(token, str):
        raise EncryptionError("Token must be a non-empty string")

    return _get_fernet().encrypt(token.encode("utf-8"))


def decrypt_token(encrypted_token: bytes | memoryview) -> str:
    """
    Decrypt a token read from a BYTEA column.

    Raises:
        EncryptionError: If decryption fails or token is invalid
    """
    if isinstance(encrypted_token, memoryview):
        encrypted_token = encrypted_token.tobytes()

    if not encrypted_token or not isinstance(encrypted_token, bytes):
        raise EncryptionError("Encrypted token must be non-empty bytes")

    try:
        return _get_fernet().decrypt(encrypted_token).decode("utf-8")
    except InvalidToken as e:
        logger.error("Token decryption failed - invalid token")
        raise EncryptionError("Invalid or corrupted token") from e


def decrypt_oauth_tokens(
    encrypted_access: bytes | memoryview, encrypted_refresh: bytes | memoryview | None = None
) -> tuple[str, str | None]:
    """
    Decrypt an access/refresh token pair.

    Returns:
        tuple: (access_token, refresh_token)
    """
    access_token = decrypt_token(encrypted_access)
    refresh_token = decrypt_token(encrypted_refresh) if encrypted_refresh else None
    return access_token, refresh_token
