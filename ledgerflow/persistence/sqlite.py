"""SQLite implementation of the execution log."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from ..contracts import ErrorInfo, StepAction, StepStatus, TransactionState
from ..serialization import ValueDeserializer, ValueSerializer
from .log import ExecutionLog
from .models import StepRecord, TransactionRecord, utcnow

_TERMINAL = tuple(s.value for s in StepStatus if s.is_terminal)
_FINISHED = tuple(s.value for s in TransactionState if s.is_terminal)


def _dump(value: Any) -> str | None:
    stored = ValueSerializer.serialize(value)
    return json.dumps(stored) if stored is not None else None


def _load(raw: str | None) -> Any:
    return ValueDeserializer.deserialize(json.loads(raw)) if raw else None


def _dump_error(error: ErrorInfo | None) -> str | None:
    return error.model_dump_json() if error else None


def _load_error(raw: str | None) -> ErrorInfo | None:
    return ErrorInfo.model_validate_json(raw) if raw else None


def _ts(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_ts(raw: str | None) -> datetime | None:
    return datetime.fromisoformat(raw) if raw else None


class SQLiteExecutionLog(ExecutionLog):
    """Persist transaction state using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._write_lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS transactions (
                transaction_id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                status TEXT NOT NULL,
                input TEXT,
                result TEXT,
                error TEXT,
                hook_errors TEXT,
                frozen INTEGER NOT NULL DEFAULT 0,
                parent_transaction_id TEXT,
                parent_step_id TEXT,
                deadline TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS step_records (
                transaction_id TEXT NOT NULL,
                step_id TEXT NOT NULL,
                action TEXT NOT NULL,
                status TEXT NOT NULL,
                input TEXT,
                response TEXT,
                compensate_input TEXT,
                error TEXT,
                attempts INTEGER NOT NULL DEFAULT 0,
                completion_index INTEGER,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (transaction_id, step_id, action)
            )
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> None:
        with self._write_lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchall()

    def _upsert_step(self, params: tuple) -> bool:
        with self._write_lock:
            cur = self._conn.cursor()
            cur.execute(
                "SELECT status FROM step_records WHERE transaction_id = ? AND step_id = ? AND action = ?",
                params[:3],
            )
            row = cur.fetchone()
            if row is not None and row["status"] in _TERMINAL:
                return False
            cur.execute(
                """
                INSERT INTO step_records (
                    transaction_id, step_id, action, status, input, response,
                    compensate_input, error, attempts, completion_index,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (transaction_id, step_id, action) DO UPDATE SET
                    status = excluded.status,
                    input = excluded.input,
                    response = excluded.response,
                    compensate_input = excluded.compensate_input,
                    error = excluded.error,
                    attempts = excluded.attempts,
                    completion_index = excluded.completion_index,
                    updated_at = excluded.updated_at
                """,
                params,
            )
            self._conn.commit()
            return True

    def _delete(self, transaction_ids: list[str]) -> None:
        with self._write_lock:
            cur = self._conn.cursor()
            for tx_id in transaction_ids:
                cur.execute("DELETE FROM step_records WHERE transaction_id = ?", (tx_id,))
                cur.execute("DELETE FROM transactions WHERE transaction_id = ?", (tx_id,))
            self._conn.commit()

    @staticmethod
    def _transaction_from_row(row: sqlite3.Row) -> TransactionRecord:
        return TransactionRecord(
            transaction_id=row["transaction_id"],
            workflow_id=row["workflow_id"],
            status=TransactionState(row["status"]),
            input=_load(row["input"]),
            result=_load(row["result"]),
            error=_load_error(row["error"]),
            hook_errors=[ErrorInfo.model_validate(e) for e in json.loads(row["hook_errors"] or "[]")],
            frozen=bool(row["frozen"]),
            parent_transaction_id=row["parent_transaction_id"],
            parent_step_id=row["parent_step_id"],
            deadline=_parse_ts(row["deadline"]),
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
        )

    @staticmethod
    def _step_from_row(row: sqlite3.Row) -> StepRecord:
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
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
        )

    # ------------------------------------------------------------------
    # Execution log API
    async def create_transaction(self, record: TransactionRecord) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO transactions (
                transaction_id, workflow_id, status, input, result, error,
                hook_errors, frozen, parent_transaction_id, parent_step_id,
                deadline, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            record.transaction_id,
            record.workflow_id,
            record.status.value,
            _dump(record.input),
            _dump(record.result),
            _dump_error(record.error),
            json.dumps([e.model_dump() for e in record.hook_errors]),
            int(record.frozen),
            record.parent_transaction_id,
            record.parent_step_id,
            _ts(record.deadline),
            _ts(record.created_at),
            _ts(record.updated_at),
        )

    async def update_transaction(self, record: TransactionRecord) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            UPDATE transactions
            SET status = ?, result = ?, error = ?, hook_errors = ?, frozen = ?,
                deadline = ?, updated_at = ?
            WHERE transaction_id = ?
            """,
            record.status.value,
            _dump(record.result),
            _dump_error(record.error),
            json.dumps([e.model_dump() for e in record.hook_errors]),
            int(record.frozen),
            _ts(record.deadline),
            _ts(utcnow()),
            record.transaction_id,
        )

    async def get_transaction(self, transaction_id: str) -> TransactionRecord | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT * FROM transactions WHERE transaction_id = ?",
            transaction_id,
        )
        return self._transaction_from_row(row) if row else None

    async def append(self, record: StepRecord) -> bool:
        params = (
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
            _ts(record.created_at),
            _ts(utcnow()),
        )
        return await asyncio.to_thread(self._upsert_step, params)

    async def load(self, transaction_id: str) -> list[StepRecord]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM step_records WHERE transaction_id = ? ORDER BY rowid",
            transaction_id,
        )
        return [self._step_from_row(r) for r in rows]

    async def list_pending(self) -> list[TransactionRecord]:
        placeholders = ", ".join("?" for _ in _FINISHED)
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT * FROM transactions WHERE status NOT IN ({placeholders}) ORDER BY created_at",
            *_FINISHED,
        )
        return [self._transaction_from_row(r) for r in rows]

    async def list_transactions(self) -> list[TransactionRecord]:
        rows = await asyncio.to_thread(
            self._fetchall, "SELECT * FROM transactions ORDER BY created_at"
        )
        return [self._transaction_from_row(r) for r in rows]

    async def delete_transaction(self, transaction_id: str) -> None:
        await asyncio.to_thread(self._delete, [transaction_id])

    async def purge_finished(self, older_than: timedelta) -> int:
        cutoff = _ts(utcnow() - older_than)
        placeholders = ", ".join("?" for _ in _FINISHED)
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT transaction_id FROM transactions WHERE status IN ({placeholders}) AND updated_at < ?",
            *_FINISHED,
            cutoff,
        )
        expired = [r["transaction_id"] for r in rows]
        if expired:
            await asyncio.to_thread(self._delete, expired)
        return len(expired)
