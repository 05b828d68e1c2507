"""Core message contracts and status vocabularies for ledgerflow."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


_UNSET: Any = object()


class TransactionState(str, Enum):
    PENDING = "pending"
    INVOKING = "invoking"
    DONE = "done"
    COMPENSATING = "compensating"
    FAILED = "failed"
    REVERTED = "reverted"

    @property
    def is_terminal(self) -> bool:
        return self in (TransactionState.DONE, TransactionState.FAILED, TransactionState.REVERTED)


class StepAction(str, Enum):
    INVOKE = "invoke"
    COMPENSATE = "compensate"


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    WAITING = "waiting"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    COMPENSATED = "compensated"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STEP_STATUSES


TERMINAL_STEP_STATUSES = frozenset(
    {StepStatus.SUCCESS, StepStatus.FAILED, StepStatus.SKIPPED, StepStatus.COMPENSATED}
)


@dataclass
class StepResponse:
    """Value returned by a step's invoke function.

    ``compensate_input`` is what the compensate action receives later; when it
    is omitted the output itself is passed.
    """

    output: Any = None
    compensate_input: Any = _UNSET

    def resolved_compensate_input(self) -> Any:
        if self.compensate_input is _UNSET:
            return self.output
        return self.compensate_input


class ErrorInfo(BaseModel):
    """Serializable description of a classified error."""

    type: str
    message: str
    retryable: bool = False
    step_id: Optional[str] = None


class StepSignal(BaseModel):
    """Externally reported outcome of an asynchronous step action."""

    workflow_id: str
    transaction_id: str
    step_id: str
    action: StepAction = StepAction.INVOKE
    outcome: Literal["success", "failure"] = "success"
    response: Any = None
    compensate_input: Any = None
    error: Optional[ErrorInfo] = None


class CompensationOutcome(BaseModel):
    step_id: str
    status: StepStatus
    error: Optional[ErrorInfo] = None


class StepSummary(BaseModel):
    step_id: str
    action: StepAction
    status: StepStatus
    attempts: int = 0


class TransactionReport(BaseModel):
    """What the caller gets back after driving a transaction."""

    transaction_id: str
    workflow_id: str
    status: TransactionState
    result: Any = None
    error: Optional[ErrorInfo] = None
    compensations: List[CompensationOutcome] = Field(default_factory=list)
    hook_errors: List[ErrorInfo] = Field(default_factory=list)
    steps: List[StepSummary] = Field(default_factory=list)
    frozen: bool = False

    @property
    def partially_compensated(self) -> bool:
        """``True`` when at least one compensation was attempted and failed."""
        return any(c.status == StepStatus.FAILED for c in self.compensations)

    @property
    def succeeded(self) -> bool:
        return self.status == TransactionState.DONE


class Envelope(BaseModel):
    """
    Unit exchanged over a transport. Carries either a step signal or a domain event.
    """

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    correlation_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    kind: Literal["step_signal", "event"] = "event"
    name: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    attempt: int = 1
    spec_version: str = "1.0"

    def to_json(self) -> str:
        """Serialize envelope to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "Envelope":
        """Deserialize envelope from JSON."""
        return cls.model_validate_json(data)

    @classmethod
    def for_signal(cls, signal: StepSignal) -> "Envelope":
        return cls(
            correlation_id=signal.transaction_id,
            kind="step_signal",
            name=signal.step_id,
            payload=signal.model_dump(mode="json"),
        )

    def to_signal(self) -> StepSignal:
        if self.kind != "step_signal":
            raise ValueError(f"Envelope {self.message_id} does not carry a step signal")
        return StepSignal.model_validate(self.payload)

    def bump_attempt(self) -> "Envelope":
        """Return a copy scheduled for redelivery."""
        return self.model_copy(
            update={"attempt": self.attempt + 1, "message_id": str(uuid.uuid4())}
        )
