"""
Test encryption service functionality.
"""

import pytest
from cryptography.fernet import Fernet

from app.services.infrastructure import encryption_service
from app.services.infrastructure.encryption_service import (
    EncryptionError,
    decrypt_oauth_tokens,
    decrypt_token,
    encrypt_token,
)


@pytest.fixture(autouse=True)
def encryption_key(monkeypatch):
    key = Fernet.generate_key().decode("utf-8")
    monkeypatch.setattr(encryption_service.settings, "ENCRYPTION_KEY", key)
    return key


def test_basic_encryption_decryption():
    """Test that encryption and decryption work correctly."""
    test_token = "fake_oauth_token_12345"

    encrypted = encrypt_token(test_token)

    assert isinstance(encrypted, bytes)
    assert test_token.encode("utf-8") not in encrypted
    assert decrypt_token(encrypted) == test_token


def test_bytea_memoryview_is_accepted():
    """psycopg returns BYTEA columns as memoryview."""
    encrypted = encrypt_token("ya29.access")

    assert decrypt_token(memoryview(encrypted)) == "ya29.access"


def test_decrypt_token_pair():
    access, refresh = decrypt_oauth_tokens(encrypt_token("ya29.access"), encrypt_token("1//refresh"))

    assert access == "ya29.access"
    assert refresh == "1//refresh"


def test_decrypt_token_pair_without_refresh():
    access, refresh = decrypt_oauth_tokens(encrypt_token("ya29.access"), None)

    assert access == "ya29.access"
    assert refresh is None


def test_empty_token_is_rejected():
    with pytest.raises(EncryptionError):
        encrypt_token("")


def test_token_from_another_key_is_rejected(monkeypatch):
    encrypted = encrypt_token("ya29.access")
    monkeypatch.setattr(encryption_service.settings, "ENCRYPTION_KEY", Fernet.generate_key().decode("utf-8"))

    with pytest.raises(EncryptionError):
        decrypt_token(encrypted)


def test_missing_key_is_reported(monkeypatch):
    monkeypatch.setattr(encryption_service.settings, "ENCRYPTION_KEY", "")

    with pytest.raises(EncryptionError):
        encrypt_token("ya29.access")


def test_malformed_key_is_reported(monkeypatch):
    monkeypatch.setattr(encryption_service.settings, "ENCRYPTION_KEY", "not-a-fernet-key")

    with pytest.raises(EncryptionError):
        encrypt_token("ya29.access")
