"""In-memory view of a transaction rebuilt from its execution log."""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from ..composer.nodes import Node, StepNode
from ..composer.refs import ABSENT
from ..composer.workflow import WorkflowDefinition
from ..constants import INPUT_NODE_ID
from ..contracts import StepAction, StepStatus
from ..errors import EngineConsistencyError, WorkflowError, error_from_info
from ..persistence.models import StepRecord, TransactionRecord


class NodeState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    WAITING = "waiting"
    DONE = "done"
    SKIPPED = "skipped"
    FAILED = "failed"


RESOLVED = (NodeState.DONE, NodeState.SKIPPED)


class ExecutionState:
    """Per-drive bookkeeping: node states, resolved outputs and step records.

    Only step records come from the log; transforms and conditionals are
    recomputed from them on every drive.
    """

    def __init__(self, record: TransactionRecord, definition: WorkflowDefinition) -> None:
        self.record = record
        self.definition = definition
        self.outputs: Dict[str, Any] = {INPUT_NODE_ID: record.input}
        self.nodes: Dict[str, NodeState] = {n.id: NodeState.PENDING for n in definition.nodes}
        self.invoke_records: Dict[str, StepRecord] = {}
        self.compensate_records: Dict[str, StepRecord] = {}
        self.failure: Optional[WorkflowError] = None
        self._completion_counter = 0

    @classmethod
    def from_log(
        cls,
        record: TransactionRecord,
        definition: WorkflowDefinition,
        step_records: Iterable[StepRecord],
    ) -> "ExecutionState":
        state = cls(record, definition)
        for step in step_records:
            node = definition.node(step.step_id)
            if not isinstance(node, StepNode):
                raise EngineConsistencyError(
                    f"Execution log of {record.transaction_id} holds a record for "
                    f"'{step.step_id}', which workflow '{definition.workflow_id}' does not define",
                    step_id=step.step_id,
                )
            if step.action == StepAction.INVOKE:
                state._restore_invoke(step)
            else:
                state.compensate_records[step.step_id] = step

        for step_id, comp in state.compensate_records.items():
            invoked = state.invoke_records.get(step_id)
            if invoked is None or invoked.status != StepStatus.SUCCESS:
                raise EngineConsistencyError(
                    f"Step '{step_id}' of {record.transaction_id} has a compensation "
                    "record without a successful invocation",
                    step_id=step_id,
                )
        return state

    def _restore_invoke(self, step: StepRecord) -> None:
        self.invoke_records[step.step_id] = step
        if step.completion_index:
            self._completion_counter = max(self._completion_counter, step.completion_index)
        if step.status == StepStatus.SUCCESS:
            self.nodes[step.step_id] = NodeState.DONE
            self.outputs[step.step_id] = step.response
        elif step.status == StepStatus.SKIPPED:
            self.nodes[step.step_id] = NodeState.SKIPPED
            self.outputs[step.step_id] = ABSENT
        elif step.status == StepStatus.WAITING:
            self.nodes[step.step_id] = NodeState.WAITING
        elif step.status == StepStatus.FAILED:
            self.nodes[step.step_id] = NodeState.FAILED
            if self.failure is None and step.error is not None:
                self.failure = error_from_info(step.error)
        # PENDING and RUNNING records stay pending and are invoked again.

    # ------------------------------------------------------------------
    def next_completion_index(self) -> int:
        self._completion_counter += 1
        return self._completion_counter

    def is_ready(self, node: Node) -> bool:
        return all(
            upstream == INPUT_NODE_ID or self.nodes.get(upstream) in RESOLVED
            for upstream in node.upstream
        )

    def is_guarded_off(self, node: Node) -> bool:
        guard = node.guard
        if guard is None:
            return False
        if self.nodes[guard] == NodeState.SKIPPED:
            return True
        return self.outputs.get(guard) is False

    def mark_done(self, node_id: str, output: Any) -> None:
        self.nodes[node_id] = NodeState.DONE
        self.outputs[node_id] = output

    def mark_skipped(self, node_id: str) -> None:
        self.nodes[node_id] = NodeState.SKIPPED
        self.outputs[node_id] = ABSENT

    def pending_nodes(self) -> List[Node]:
        return [
            self.definition.node(node_id)
            for node_id in self.definition.topological_order()
            if self.nodes[node_id] == NodeState.PENDING
        ]

    def waiting_steps(self) -> List[str]:
        return [n for n, s in self.nodes.items() if s == NodeState.WAITING]

    def all_resolved(self) -> bool:
        return all(s in RESOLVED for s in self.nodes.values())

    def succeeded_steps(self) -> List[StepRecord]:
        """Successful invocations, most recently completed first."""
        done = [
            r for r in self.invoke_records.values() if r.status == StepStatus.SUCCESS
        ]
        return sorted(done, key=lambda r: r.completion_index or 0, reverse=True)
