from datetime import UTC, datetime
from unittest.mock import AsyncMock

import pytest
from cryptography.fernet import Fernet

from app.db.helpers import DatabaseError
from app.features.auto_reply.repository import tenant_repository
from app.features.auto_reply.repository.tenant_repository import TenantRepository, TenantStoreError
from app.services.infrastructure import encryption_service
from app.services.infrastructure.encryption_service import encrypt_token


@pytest.fixture(autouse=True)
def encryption_key(monkeypatch):
    monkeypatch.setattr(encryption_service.settings, "ENCRYPTION_KEY", Fernet.generate_key().decode("utf-8"))


def _token_row(**overrides) -> dict:
    row = {
        "studio_id": "studio-1",
        "access_token_encrypted": memoryview(encrypt_token("ya29.access")),
        "refresh_token_encrypted": memoryview(encrypt_token("1//refresh")),
        "scope": "https://www.googleapis.com/auth/gmail.modify",
        "expires_at": datetime(2025, 3, 10, 10, 0, tzinfo=UTC),
        "active": True,
    }
    row.update(overrides)
    return row


@pytest.mark.asyncio
async def test_get_credentials_decrypts_tokens(monkeypatch):
    monkeypatch.setattr(tenant_repository, "fetch_one", AsyncMock(return_value=_token_row()))

    credential = await TenantRepository.get_credentials("studio-1")

    assert credential.access_token == "ya29.access"
    assert credential.refresh_token == "1//refresh"
    assert credential.has_calendar_access() is False


@pytest.mark.asyncio
async def test_get_credentials_none_when_not_connected(monkeypatch):
    monkeypatch.setattr(tenant_repository, "fetch_one", AsyncMock(return_value=None))

    assert await TenantRepository.get_credentials("studio-1") is None


@pytest.mark.asyncio
async def test_unreadable_tokens_are_not_recoverable(monkeypatch):
    row = _token_row(access_token_encrypted=b"not-a-fernet-token")
    monkeypatch.setattr(tenant_repository, "fetch_one", AsyncMock(return_value=row))

    with pytest.raises(TenantStoreError) as exc_info:
        await TenantRepository.get_credentials("studio-1")

    assert exc_info.value.recoverable is False


@pytest.mark.asyncio
async def test_database_outage_is_recoverable(monkeypatch):
    monkeypatch.setattr(
        tenant_repository, "fetch_one", AsyncMock(side_effect=DatabaseError("timeout", operation="fetch_one"))
    )

    with pytest.raises(TenantStoreError) as exc_info:
        await TenantRepository.get_credentials("studio-1")

    assert exc_info.value.recoverable is True


@pytest.mark.asyncio
async def test_update_access_token_without_row_raises(monkeypatch):
    monkeypatch.setattr(tenant_repository, "execute_query", AsyncMock(return_value=0))

    with pytest.raises(TenantStoreError):
        await TenantRepository.update_access_token("studio-1", "ya29.new", None)


@pytest.mark.asyncio
async def test_update_access_token_keeps_refresh_token_when_not_rotated(monkeypatch):
    execute = AsyncMock(return_value=1)
    monkeypatch.setattr(tenant_repository, "execute_query", execute)

    await TenantRepository.update_access_token("studio-1", "ya29.new", None)

    params = execute.await_args.args[1]
    assert params[1] is None
    assert params[3:] == ("studio-1", "gmail")


@pytest.mark.asyncio
async def test_tenant_defaults_language_and_timezone(monkeypatch):
    monkeypatch.setattr(
        tenant_repository,
        "fetch_one",
        AsyncMock(return_value={"id": 7, "name": "Studio Rossi", "email": None, "phone": None}),
    )

    tenant = await TenantRepository.get_tenant("7")

    assert tenant.id == "7"
    assert tenant.language == tenant_repository.settings.AUTO_REPLY_DEFAULT_LANGUAGE
    assert tenant.timezone == tenant_repository.settings.AUTO_REPLY_DEFAULT_TIMEZONE
