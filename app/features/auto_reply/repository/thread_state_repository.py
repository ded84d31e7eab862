"""
Thread State Store: durable per-thread idempotency ledger.

A thread reaches at most one terminal status (replied, skipped, failed) and
never leaves it. Pending rows only count transient failures. Both stores
enforce that in a single atomic step per (tenant_id, thread_id).
"""

import asyncio
from collections import defaultdict
from datetime import UTC, datetime
from typing import Protocol

from app.db.helpers import DatabaseError, fetch_one
from app.features.auto_reply.domain import TERMINAL_STATUSES, ThreadState, ThreadStatus
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

THREAD_COLUMNS = """
    tenant_id, thread_id, status, last_message_id, calendar_event_id,
    transient_failures, reply_confidence, failure_reason, updated_at
"""


class ThreadStateStoreError(Exception):
    """Raised when thread state cannot be read or written."""

    def __init__(self, message: str, recoverable: bool = True):
        super().__init__(message)
        self.recoverable = recoverable


class ThreadStateStore(Protocol):
    async def get(self, tenant_id: str, thread_id: str) -> ThreadState | None: ...

    async def upsert_terminal(
        self,
        tenant_id: str,
        thread_id: str,
        status: ThreadStatus,
        *,
        message_id: str | None = None,
        calendar_event_id: str | None = None,
        reply_confidence: int | None = None,
        failure_reason: str | None = None,
    ) -> ThreadState: ...

    async def record_transient_failure(
        self, tenant_id: str, thread_id: str, message_id: str | None, reason: str
    ) -> int: ...


def _require_terminal(status: ThreadStatus) -> None:
    if status not in TERMINAL_STATUSES:
        raise ThreadStateStoreError(f"{status.value} is not a terminal status", recoverable=False)


class PostgresThreadStateStore:
    """auto_reply_threads table, unique on (tenant_id, thread_id)."""

    async def get(self, tenant_id: str, thread_id: str) -> ThreadState | None:
        query = f"""
            SELECT {THREAD_COLUMNS}
            FROM auto_reply_threads
            WHERE tenant_id = %s AND thread_id = %s
        """
        try:
            row = await fetch_one(query, (tenant_id, thread_id))
        except DatabaseError as e:
            raise ThreadStateStoreError(f"Failed to read thread state: {e}") from e
        return self._row_to_state(row) if row else None

    async def upsert_terminal(
        self,
        tenant_id: str,
        thread_id: str,
        status: ThreadStatus,
        *,
        message_id: str | None = None,
        calendar_event_id: str | None = None,
        reply_confidence: int | None = None,
        failure_reason: str | None = None,
    ) -> ThreadState:
        """
        Insert a terminal record, or promote a pending one.

        A row that is already terminal is left untouched and returned as stored.
        """
        _require_terminal(status)

        # The WHERE on the conflict branch is what keeps terminal rows immutable
        query = f"""
            INSERT INTO auto_reply_threads (
                tenant_id, thread_id, status, last_message_id, calendar_event_id,
                transient_failures, reply_confidence, failure_reason, updated_at
            )
            VALUES (%s, %s, %s, %s, %s, 0, %s, %s, NOW())
            ON CONFLICT (tenant_id, thread_id)
            DO UPDATE SET
                status = EXCLUDED.status,
                last_message_id = COALESCE(EXCLUDED.last_message_id, auto_reply_threads.last_message_id),
                calendar_event_id = EXCLUDED.calendar_event_id,
                reply_confidence = EXCLUDED.reply_confidence,
                failure_reason = EXCLUDED.failure_reason,
                updated_at = NOW()
            WHERE auto_reply_threads.status = 'pending'
            RETURNING {THREAD_COLUMNS}
        """
        params = (
            tenant_id,
            thread_id,
            status.value,
            message_id,
            calendar_event_id,
            reply_confidence,
            failure_reason,
        )

        try:
            row = await fetch_one(query, params)
        except DatabaseError as e:
            raise ThreadStateStoreError(f"Failed to record terminal state: {e}") from e

        if row:
            return self._row_to_state(row)

        stored = await self.get(tenant_id, thread_id)
        if stored is None:
            raise ThreadStateStoreError("Thread state vanished during terminal upsert")

        logger.info(
            "Terminal upsert ignored, thread already terminal",
            tenant_id=tenant_id,
            thread_id=thread_id,
            stored_status=stored.status.value,
            requested_status=status.value,
        )
        return stored

    async def record_transient_failure(
        self, tenant_id: str, thread_id: str, message_id: str | None, reason: str
    ) -> int:
        """Count one transient failure on a pending thread and return the new total."""
        query = """
            INSERT INTO auto_reply_threads (
                tenant_id, thread_id, status, last_message_id,
                transient_failures, failure_reason, updated_at
            )
            VALUES (%s, %s, 'pending', %s, 1, %s, NOW())
            ON CONFLICT (tenant_id, thread_id)
            DO UPDATE SET
                transient_failures = auto_reply_threads.transient_failures + 1,
                last_message_id = COALESCE(EXCLUDED.last_message_id, auto_reply_threads.last_message_id),
                failure_reason = EXCLUDED.failure_reason,
                updated_at = NOW()
            WHERE auto_reply_threads.status = 'pending'
            RETURNING transient_failures
        """
        try:
            row = await fetch_one(query, (tenant_id, thread_id, message_id, reason))
        except DatabaseError as e:
            raise ThreadStateStoreError(f"Failed to record transient failure: {e}") from e

        if row:
            return int(row["transient_failures"])

        stored = await self.get(tenant_id, thread_id)
        return stored.transient_failures if stored else 0

    @staticmethod
    def _row_to_state(row: dict) -> ThreadState:
        return ThreadState(
            tenant_id=str(row["tenant_id"]),
            thread_id=row["thread_id"],
            status=ThreadStatus(row["status"]),
            last_message_id=row.get("last_message_id"),
            updated_at=row["updated_at"],
            calendar_event_id=row.get("calendar_event_id"),
            transient_failures=int(row.get("transient_failures") or 0),
            reply_confidence=row.get("reply_confidence"),
            failure_reason=row.get("failure_reason"),
        )


class InMemoryThreadStateStore:
    """Process-local store for tests and single-process development runs."""

    def __init__(self):
        self._states: dict[tuple[str, str], ThreadState] = {}
        self._locks: defaultdict[tuple[str, str], asyncio.Lock] = defaultdict(asyncio.Lock)

    async def get(self, tenant_id: str, thread_id: str) -> ThreadState | None:
        return self._states.get((tenant_id, thread_id))

    async def upsert_terminal(
        self,
        tenant_id: str,
        thread_id: str,
        status: ThreadStatus,
        *,
        message_id: str | None = None,
        calendar_event_id: str | None = None,
        reply_confidence: int | None = None,
        failure_reason: str | None = None,
    ) -> ThreadState:
        _require_terminal(status)
        key = (tenant_id, thread_id)

        async with self._locks[key]:
            current = self._states.get(key)
            if current is not None and current.is_terminal:
                return current

            state = ThreadState(
                tenant_id=tenant_id,
                thread_id=thread_id,
                status=status,
                last_message_id=message_id or (current.last_message_id if current else None),
                updated_at=datetime.now(UTC),
                calendar_event_id=calendar_event_id,
                transient_failures=current.transient_failures if current else 0,
                reply_confidence=reply_confidence,
                failure_reason=failure_reason,
            )
            self._states[key] = state
            return state

    async def record_transient_failure(
        self, tenant_id: str, thread_id: str, message_id: str | None, reason: str
    ) -> int:
        key = (tenant_id, thread_id)

        async with self._locks[key]:
            current = self._states.get(key)
            if current is not None and current.is_terminal:
                return current.transient_failures

            failures = (current.transient_failures if current else 0) + 1
            self._states[key] = ThreadState(
                tenant_id=tenant_id,
                thread_id=thread_id,
                status=ThreadStatus.PENDING,
                last_message_id=message_id or (current.last_message_id if current else None),
                updated_at=datetime.now(UTC),
                transient_failures=failures,
                failure_reason=reason,
            )
            return failures
