"""Execution log abstraction for transaction state persistence."""

from __future__ import annotations

from datetime import timedelta
from typing import Protocol

from .models import StepRecord, TransactionRecord


class ExecutionLog(Protocol):
    """Protocol for execution log backends.

    Step records are keyed by ``(transaction_id, step_id, action)``. Once a
    record reaches a terminal status later writes for the same key are
    ignored and ``append`` returns ``False``.
    """

    async def create_transaction(self, record: TransactionRecord) -> None:
        """Persist a new transaction."""

    async def update_transaction(self, record: TransactionRecord) -> None:
        """Persist the current state of an existing transaction."""

    async def get_transaction(self, transaction_id: str) -> TransactionRecord | None:
        """Retrieve a transaction by id."""

    async def append(self, record: StepRecord) -> bool:
        """Upsert a step record unless the stored one is already terminal."""

    async def load(self, transaction_id: str) -> list[StepRecord]:
        """Return the step records of a transaction in write order."""

    async def list_pending(self) -> list[TransactionRecord]:
        """Return transactions that have not reached a terminal status."""

    async def list_transactions(self) -> list[TransactionRecord]:
        """Return all persisted transactions."""

    async def delete_transaction(self, transaction_id: str) -> None:
        """Remove a transaction and its step records."""

    async def purge_finished(self, older_than: timedelta) -> int:
        """Delete terminal transactions last updated before ``older_than`` ago."""
