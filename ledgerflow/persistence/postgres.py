"""PostgreSQL implementation of the execution log."""

from __future__ import annotations

import json
from datetime import timedelta
from typing import Any

import asyncpg

from ..contracts import ErrorInfo, StepAction, StepStatus, TransactionState
from ..serialization import ValueDeserializer, ValueSerializer
from .log import ExecutionLog
from .models import StepRecord, TransactionRecord, utcnow

_TERMINAL = [s.value for s in StepStatus if s.is_terminal]
_FINISHED = [s.value for s in TransactionState if s.is_terminal]


def _dump(value: Any) -> str | None:
    stored = ValueSerializer.serialize(value)
    return json.dumps(stored) if stored is not None else None


def _load(raw: Any) -> Any:
    if raw is None:
        return None
    if isinstance(raw, str):
        raw = json.loads(raw)
    return ValueDeserializer.deserialize(raw)


def _dump_error(error: ErrorInfo | None) -> str | None:
    return error.model_dump_json() if error else None


def _load_error(raw: Any) -> ErrorInfo | None:
    if raw is None:
        return None
    if isinstance(raw, str):
        return ErrorInfo.model_validate_json(raw)
    return ErrorInfo.model_validate(raw)


class PostgresExecutionLog(ExecutionLog):
    """Persist transaction state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS transactions (
                transaction_id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                status TEXT NOT NULL,
                input JSONB,
                result JSONB,
                error JSONB,
                hook_errors JSONB,
                frozen BOOLEAN NOT NULL DEFAULT FALSE,
                parent_transaction_id TEXT,
                parent_step_id TEXT,
                deadline TIMESTAMPTZ,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS step_records (
                id SERIAL,
                transaction_id TEXT NOT NULL,
                step_id TEXT NOT NULL,
                action TEXT NOT NULL,
                status TEXT NOT NULL,
                input JSONB,
                response JSONB,
                compensate_input JSONB,
                error JSONB,
                attempts INTEGER NOT NULL DEFAULT 0,
                completion_index INTEGER,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL,
                PRIMARY KEY (transaction_id, step_id, action)
            )
            """
        )

    @staticmethod
    def _transaction_from_row(row: Any) -> TransactionRecord:
        hook_errors = row["hook_errors"]
        if isinstance(hook_errors, str):
            hook_errors = json.loads(hook_errors)
        return TransactionRecord(
            transaction_id=row["transaction_id"],
            workflow_id=row["workflow_id"],
            status=TransactionState(row["status"]),
            input=_load(row["input"]),
            result=_load(row["result"]),
            error=_load_error(row["error"]),
            hook_errors=[ErrorInfo.model_validate(e) for e in hook_errors or []],
            frozen=row["frozen"],
            parent_transaction_id=row["parent_transaction_id"],
            parent_step_id=row["parent_step_id"],
            deadline=row["deadline"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _step_from_row(row: Any) -> StepRecord:
        return StepRecord(
            transaction_id=row["transaction_id"],
            step_id=row["step_id"],
            action=StepAction(row["action"]),
            status=StepStatus(row["status"]),
            input=_load(row["input"]),
            response=_load(row["response"]),
            compensate_input=_load(row["compensate_input"]),
            error=_load_error(row["error"]),
            attempts=row["attempts"],
            completion_index=row["completion_index"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    # ------------------------------------------------------------------
    async def create_transaction(self, record: TransactionRecord) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO transactions (
                    transaction_id, workflow_id, status, input, result, error,
                    hook_errors, frozen, parent_transaction_id, parent_step_id,
                    deadline, created_at, updated_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13)
                """,
                record.transaction_id,
                record.workflow_id,
                record.status.value,
                _dump(record.input),
                _dump(record.result),
                _dump_error(record.error),
                json.dumps([e.model_dump() for e in record.hook_errors]),
                record.frozen,
                record.parent_transaction_id,
                record.parent_step_id,
                record.deadline,
                record.created_at,
                record.updated_at,
            )
        finally:
            await conn.close()

    async def update_transaction(self, record: TransactionRecord) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                UPDATE transactions
                SET status = $1, result = $2, error = $3, hook_errors = $4,
                    frozen = $5, deadline = $6, updated_at = $7
                WHERE transaction_id = $8
                """,
                record.status.value,
                _dump(record.result),
                _dump_error(record.error),
                json.dumps([e.model_dump() for e in record.hook_errors]),
                record.frozen,
                record.deadline,
                utcnow(),
                record.transaction_id,
            )
        finally:
            await conn.close()

    async def get_transaction(self, transaction_id: str) -> TransactionRecord | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT * FROM transactions WHERE transaction_id = $1", transaction_id
            )
        finally:
            await conn.close()
        return self._transaction_from_row(row) if row else None

    async def append(self, record: StepRecord) -> bool:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                """
                INSERT INTO step_records (
                    transaction_id, step_id, action, status, input, response,
                    compensate_input, error, attempts, completion_index,
                    created_at, updated_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
                ON CONFLICT (transaction_id, step_id, action) DO UPDATE SET
                    status = EXCLUDED.status,
                    input = EXCLUDED.input,
                    response = EXCLUDED.response,
                    compensate_input = EXCLUDED.compensate_input,
                    error = EXCLUDED.error,
                    attempts = EXCLUDED.attempts,
                    completion_index = EXCLUDED.completion_index,
                    updated_at = EXCLUDED.updated_at
                WHERE step_records.status <> ALL($13::text[])
                RETURNING step_id
                """,
                record.transaction_id,
                record.step_id,
                record.action.value,
                record.status.value,
                _dump(record.input),
                _dump(record.response),
                _dump(record.compensate_input),
                _dump_error(record.error),
                record.attempts,
                record.completion_index,
                record.created_at,
                utcnow(),
                _TERMINAL,
            )
        finally:
            await conn.close()
        return row is not None

    async def load(self, transaction_id: str) -> list[StepRecord]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT * FROM step_records WHERE transaction_id = $1 ORDER BY id",
                transaction_id,
            )
        finally:
            await conn.close()
        return [self._step_from_row(r) for r in rows]

    async def list_pending(self) -> list[TransactionRecord]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT * FROM transactions WHERE status <> ALL($1::text[]) ORDER BY created_at",
                _FINISHED,
            )
        finally:
            await conn.close()
        return [self._transaction_from_row(r) for r in rows]

    async def list_transactions(self) -> list[TransactionRecord]:
        conn = await self._connect()
        try:
            rows = await conn.fetch("SELECT * FROM transactions ORDER BY created_at")
        finally:
            await conn.close()
        return [self._transaction_from_row(r) for r in rows]

    async def delete_transaction(self, transaction_id: str) -> None:
        conn = await self._connect()
        try:
            async with conn.transaction():
                await conn.execute(
                    "DELETE FROM step_records WHERE transaction_id = $1", transaction_id
                )
                await conn.execute(
                    "DELETE FROM transactions WHERE transaction_id = $1", transaction_id
                )
        finally:
            await conn.close()

    async def purge_finished(self, older_than: timedelta) -> int:
        cutoff = utcnow() - older_than
        conn = await self._connect()
        try:
            async with conn.transaction():
                rows = await conn.fetch(
                    """
                    DELETE FROM transactions
                    WHERE status = ANY($1::text[]) AND updated_at < $2
                    RETURNING transaction_id
                    """,
                    _FINISHED,
                    cutoff,
                )
                expired = [r["transaction_id"] for r in rows]
                if expired:
                    await conn.execute(
                        "DELETE FROM step_records WHERE transaction_id = ANY($1::text[])",
                        expired,
                    )
        finally:
            await conn.close()
        return len(expired)
