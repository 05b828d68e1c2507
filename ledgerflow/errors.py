"""Error taxonomy shared by the engine, the execution log and the HTTP layer."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .contracts import ErrorInfo, TransactionReport


class WorkflowError(Exception):
    """Base class for every classified workflow error.

    ``retryable`` tells the engine whether the step's retry policy applies.
    """

    retryable: bool = False

    def __init__(
        self,
        message: str = "",
        *,
        retryable: Optional[bool] = None,
        step_id: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.step_id = step_id
        if retryable is not None:
            self.retryable = retryable

    def to_info(self) -> "ErrorInfo":
        from .contracts import ErrorInfo

        return ErrorInfo(
            type=type(self).__name__,
            message=self.message,
            retryable=self.retryable,
            step_id=self.step_id,
        )


class ValidationError(WorkflowError):
    """Malformed or missing input. Never retried."""


class NotFoundError(WorkflowError):
    """A referenced entity does not exist."""


class TransientError(WorkflowError):
    """Network hiccups, lock timeouts and other conditions worth retrying."""

    retryable = True


class StepTimeoutError(TransientError):
    """A step exceeded its deadline."""


class TransactionTimeoutError(WorkflowError):
    """The whole transaction exceeded its deadline."""


class StepFailedError(WorkflowError):
    """Wrapper for exceptions raised by step bodies that carry no classification."""

    retryable = True


class TransformError(WorkflowError):
    """A pure transform raised. Transforms are deterministic so never retried."""


class CompensationError(WorkflowError):
    """A compensate action failed or could not be attempted."""


class EngineConsistencyError(WorkflowError):
    """The execution log and the workflow definition disagree.

    The transaction is frozen instead of being advanced.
    """


class TransactionAbortedError(WorkflowError):
    """An external abort was requested."""


class WorkflowDefinitionError(WorkflowError):
    """The workflow graph could not be built."""


class WorkflowNotFoundError(NotFoundError):
    """No workflow with the given id is registered."""


class TransactionNotFoundError(NotFoundError):
    """No transaction with the given id is known to the execution log."""


class StepNotFoundError(NotFoundError):
    """The step id is not part of the transaction's workflow."""


class StepConflictError(WorkflowError):
    """The step record is already terminal; late or duplicate signals are rejected."""


class InvalidSignalError(WorkflowError):
    """The signal is well formed but cannot apply to the step in its current state."""


class TransactionFailedError(WorkflowError):
    """Raised by ``run(throw_on_error=True)`` when a transaction does not finish."""

    def __init__(self, report: "TransactionReport") -> None:
        message = report.error.message if report.error else report.status.value
        super().__init__(
            f"Transaction {report.transaction_id} ended {report.status.value}: {message}"
        )
        self.report = report


def classify_error(exc: BaseException, step_id: Optional[str] = None) -> WorkflowError:
    """Map any exception raised by a step body onto the taxonomy.

    ``ValueError`` and ``TypeError`` mean the step rejected its input and are
    never retried. Everything else, ``KeyError`` included, is a retryable
    :class:`StepFailedError`.
    """
    if isinstance(exc, WorkflowError):
        if step_id and exc.step_id is None:
            exc.step_id = step_id
        return exc
    if isinstance(exc, asyncio.TimeoutError):
        error: WorkflowError = StepTimeoutError(str(exc) or "step timed out")
    elif isinstance(exc, (ValueError, TypeError)):
        error = ValidationError(f"{type(exc).__name__}: {exc}")
    else:
        error = StepFailedError(f"{type(exc).__name__}: {exc}")
    error.step_id = step_id
    error.__cause__ = exc
    return error


ERROR_TYPES = {
    cls.__name__: cls
    for cls in (
        ValidationError,
        NotFoundError,
        TransientError,
        StepTimeoutError,
        TransactionTimeoutError,
        StepFailedError,
        TransformError,
        CompensationError,
        EngineConsistencyError,
        TransactionAbortedError,
    )
}


def error_from_info(info: "ErrorInfo") -> WorkflowError:
    """Rebuild an exception from its persisted form."""
    cls = ERROR_TYPES.get(info.type, StepFailedError)
    return cls(info.message, retryable=info.retryable, step_id=info.step_id)
