import asyncio
from datetime import UTC, datetime
from unittest.mock import AsyncMock

import pytest

from app.db.helpers import DatabaseError
from app.features.auto_reply.domain import ThreadStatus
from app.features.auto_reply.repository import thread_state_repository
from app.features.auto_reply.repository.thread_state_repository import (
    InMemoryThreadStateStore,
    PostgresThreadStateStore,
    ThreadStateStoreError,
)


@pytest.mark.asyncio
async def test_unknown_thread_has_no_state(store):
    assert await store.get("studio-1", "thread-1") is None


@pytest.mark.asyncio
async def test_terminal_state_is_never_downgraded(store):
    await store.upsert_terminal("studio-1", "thread-1", ThreadStatus.REPLIED, message_id="m1")

    stored = await store.upsert_terminal(
        "studio-1", "thread-1", ThreadStatus.FAILED, failure_reason="late failure"
    )

    assert stored.status is ThreadStatus.REPLIED
    assert stored.failure_reason is None
    assert (await store.get("studio-1", "thread-1")).status is ThreadStatus.REPLIED


@pytest.mark.asyncio
async def test_pending_is_rejected_as_terminal(store):
    with pytest.raises(ThreadStateStoreError):
        await store.upsert_terminal("studio-1", "thread-1", ThreadStatus.PENDING)


@pytest.mark.asyncio
async def test_transient_failures_accumulate_on_pending(store):
    assert await store.record_transient_failure("studio-1", "thread-1", "m1", "timeout") == 1
    assert await store.record_transient_failure("studio-1", "thread-1", "m1", "503") == 2

    state = await store.get("studio-1", "thread-1")
    assert state.status is ThreadStatus.PENDING
    assert state.failure_reason == "503"


@pytest.mark.asyncio
async def test_transient_failure_does_not_touch_terminal(store):
    await store.upsert_terminal("studio-1", "thread-1", ThreadStatus.SKIPPED)

    count = await store.record_transient_failure("studio-1", "thread-1", "m1", "timeout")

    assert count == 0
    assert (await store.get("studio-1", "thread-1")).status is ThreadStatus.SKIPPED


@pytest.mark.asyncio
async def test_threads_are_scoped_per_tenant(store):
    await store.upsert_terminal("studio-1", "thread-1", ThreadStatus.REPLIED)

    assert await store.get("studio-2", "thread-1") is None


@pytest.mark.asyncio
async def test_concurrent_terminal_writes_keep_first(store):
    results = await asyncio.gather(
        store.upsert_terminal("studio-1", "thread-1", ThreadStatus.REPLIED),
        store.upsert_terminal("studio-1", "thread-1", ThreadStatus.FAILED),
    )

    assert results[0].status is results[1].status is ThreadStatus.REPLIED


def _row(status: str, **extra) -> dict:
    row = {
        "tenant_id": "studio-1",
        "thread_id": "thread-1",
        "status": status,
        "last_message_id": "m1",
        "calendar_event_id": None,
        "transient_failures": 0,
        "reply_confidence": None,
        "failure_reason": None,
        "updated_at": datetime(2025, 3, 10, 9, 0, tzinfo=UTC),
    }
    row.update(extra)
    return row


@pytest.mark.asyncio
async def test_postgres_upsert_returns_written_row(monkeypatch):
    fetch_one = AsyncMock(return_value=_row("replied", calendar_event_id="evt-1", reply_confidence=90))
    monkeypatch.setattr(thread_state_repository, "fetch_one", fetch_one)

    state = await PostgresThreadStateStore().upsert_terminal(
        "studio-1", "thread-1", ThreadStatus.REPLIED, message_id="m1", calendar_event_id="evt-1"
    )

    assert state.status is ThreadStatus.REPLIED
    assert state.calendar_event_id == "evt-1"
    query, params = fetch_one.await_args.args
    assert "ON CONFLICT (tenant_id, thread_id)" in query
    assert "WHERE auto_reply_threads.status = 'pending'" in query
    assert params[2] == "replied"


@pytest.mark.asyncio
async def test_postgres_upsert_on_terminal_row_returns_stored(monkeypatch):
    fetch_one = AsyncMock(side_effect=[None, _row("skipped")])
    monkeypatch.setattr(thread_state_repository, "fetch_one", fetch_one)

    state = await PostgresThreadStateStore().upsert_terminal(
        "studio-1", "thread-1", ThreadStatus.FAILED, failure_reason="x"
    )

    assert state.status is ThreadStatus.SKIPPED
    assert fetch_one.await_count == 2


@pytest.mark.asyncio
async def test_postgres_transient_failure_returns_count(monkeypatch):
    monkeypatch.setattr(
        thread_state_repository, "fetch_one", AsyncMock(return_value={"transient_failures": 2})
    )

    count = await PostgresThreadStateStore().record_transient_failure("studio-1", "thread-1", "m1", "503")

    assert count == 2


@pytest.mark.asyncio
async def test_postgres_errors_are_wrapped(monkeypatch):
    monkeypatch.setattr(
        thread_state_repository,
        "fetch_one",
        AsyncMock(side_effect=DatabaseError("connection refused", operation="fetch_one")),
    )

    with pytest.raises(ThreadStateStoreError):
        await PostgresThreadStateStore().get("studio-1", "thread-1")


def test_in_memory_store_starts_empty():
    assert InMemoryThreadStateStore()._states == {}
