"""In-memory implementation of the execution log."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Dict, Tuple

from .log import ExecutionLog
from .models import StepRecord, TransactionRecord, utcnow


class InMemoryExecutionLog(ExecutionLog):
    """Store transaction state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._transactions: Dict[str, TransactionRecord] = {}
        self._steps: Dict[str, Dict[Tuple[str, str], StepRecord]] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    async def create_transaction(self, record: TransactionRecord) -> None:
        async with self._lock:
            if record.transaction_id in self._transactions:
                raise ValueError(f"Transaction {record.transaction_id} already exists")
            self._transactions[record.transaction_id] = record.model_copy()
            self._steps[record.transaction_id] = {}

    async def update_transaction(self, record: TransactionRecord) -> None:
        async with self._lock:
            if record.transaction_id not in self._transactions:
                return
            self._transactions[record.transaction_id] = record.model_copy(
                update={"updated_at": utcnow()}
            )

    async def get_transaction(self, transaction_id: str) -> TransactionRecord | None:
        record = self._transactions.get(transaction_id)
        return record.model_copy() if record else None

    async def append(self, record: StepRecord) -> bool:
        async with self._lock:
            steps = self._steps.setdefault(record.transaction_id, {})
            key = (record.step_id, record.action.value)
            existing = steps.get(key)
            if existing is not None and existing.status.is_terminal:
                return False
            stored = record.model_copy(update={"updated_at": utcnow()})
            if existing is not None:
                stored.created_at = existing.created_at
            steps[key] = stored
            return True

    async def load(self, transaction_id: str) -> list[StepRecord]:
        return [r.model_copy() for r in self._steps.get(transaction_id, {}).values()]

    async def list_pending(self) -> list[TransactionRecord]:
        return [
            r.model_copy()
            for r in self._transactions.values()
            if not r.status.is_terminal
        ]

    async def list_transactions(self) -> list[TransactionRecord]:
        return [r.model_copy() for r in self._transactions.values()]

    async def delete_transaction(self, transaction_id: str) -> None:
        async with self._lock:
            self._transactions.pop(transaction_id, None)
            self._steps.pop(transaction_id, None)

    async def purge_finished(self, older_than: timedelta) -> int:
        cutoff = utcnow() - older_than
        async with self._lock:
            expired = [
                tx_id
                for tx_id, r in self._transactions.items()
                if r.status.is_terminal and r.updated_at < cutoff
            ]
            for tx_id in expired:
                self._transactions.pop(tx_id, None)
                self._steps.pop(tx_id, None)
        return len(expired)
