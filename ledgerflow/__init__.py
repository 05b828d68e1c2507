"""ledgerflow: durable, compensating workflow transactions."""

from .composer import (
    ABSENT,
    RetryPolicy,
    StepDefinition,
    WorkflowDefinition,
    WorkflowResponse,
    create_hook,
    create_step,
    create_workflow,
    is_absent,
    parallelize,
    transform,
    when,
)
from .context import StepContext
from .contracts import (
    Envelope,
    ErrorInfo,
    StepAction,
    StepResponse,
    StepSignal,
    StepStatus,
    TransactionReport,
    TransactionState,
)
from .engine import WorkflowEngine
from .persistence import get_execution_log
from .registry import WorkflowRegistry
from .transports import get_transport

__version__ = "0.1.0"
__all__ = [
    "ABSENT",
    "Envelope",
    "ErrorInfo",
    "RetryPolicy",
    "StepAction",
    "StepContext",
    "StepDefinition",
    "StepResponse",
    "StepSignal",
    "StepStatus",
    "TransactionReport",
    "TransactionState",
    "WorkflowDefinition",
    "WorkflowEngine",
    "WorkflowRegistry",
    "WorkflowResponse",
    "create_hook",
    "create_step",
    "create_workflow",
    "get_execution_log",
    "get_transport",
    "is_absent",
    "parallelize",
    "transform",
    "when",
]
