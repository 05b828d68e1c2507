from .engine import WorkflowEngine, child_transaction_id
from .state import ExecutionState, NodeState

__all__ = [
    "WorkflowEngine",
    "ExecutionState",
    "NodeState",
    "child_transaction_id",
]
