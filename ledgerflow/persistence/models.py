"""Data models for persisted transaction state."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field

from ..contracts import ErrorInfo, StepAction, StepStatus, TransactionState


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StepRecord(BaseModel):
    """State of one action (invoke or compensate) of one step in a transaction."""

    transaction_id: str
    step_id: str
    action: StepAction = StepAction.INVOKE
    status: StepStatus = StepStatus.PENDING
    input: Any = None
    response: Any = None
    compensate_input: Any = None
    error: Optional[ErrorInfo] = None
    attempts: int = 0
    completion_index: Optional[int] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.transaction_id, self.step_id, self.action.value)


class TransactionRecord(BaseModel):
    """Persisted transaction data."""

    transaction_id: str
    workflow_id: str
    status: TransactionState = TransactionState.PENDING
    input: Any = None
    result: Any = None
    error: Optional[ErrorInfo] = None
    hook_errors: list[ErrorInfo] = Field(default_factory=list)
    frozen: bool = False
    parent_transaction_id: Optional[str] = None
    parent_step_id: Optional[str] = None
    deadline: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
