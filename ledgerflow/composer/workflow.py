"""Immutable, inspectable workflow definitions."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Tuple

from ..constants import INPUT_NODE_ID
from ..errors import WorkflowDefinitionError
from .nodes import HookDeclaration, Node, StepNode
from .refs import Ref


@dataclass(frozen=True, eq=False)
class WorkflowDefinition:
    """Frozen result of composing a workflow body.

    Built once at startup and shared read-only by every transaction.

    Structure::

        input ─▶ [step A] ─▶ [step B] ──┬─▶ [step C] ─┬─▶ (parallel) ─▶ [step E]
                     │                  └─▶ [step D] ─┘
                     └──▶ (transform) ───────────────────────────────────▲
    """

    workflow_id: str
    nodes: Tuple[Node, ...]
    hooks: Tuple[HookDeclaration, ...] = ()
    result: Any = None
    timeout: Optional[float] = None

    def __post_init__(self) -> None:
        index = {node.id: node for node in self.nodes}
        object.__setattr__(self, "_index", index)
        object.__setattr__(self, "_order", self._sort())

    # ------------------------------------------------------------------
    # Inspection
    def node(self, node_id: str) -> Optional[Node]:
        return self._index.get(node_id)

    def __contains__(self, node_id: str) -> bool:
        return node_id in self._index

    def __iter__(self) -> Iterator[Node]:
        return iter(self.nodes)

    def step_nodes(self) -> List[StepNode]:
        return [n for n in self.nodes if isinstance(n, StepNode)]

    def hook(self, name: str) -> Optional[HookDeclaration]:
        return next((h for h in self.hooks if h.name == name), None)

    def edges(self) -> List[Tuple[str, str]]:
        """``(upstream, downstream)`` pairs, workflow input excluded."""
        return [
            (upstream, node.id)
            for node in self.nodes
            for upstream in node.upstream
            if upstream != INPUT_NODE_ID
        ]

    def topological_order(self) -> List[str]:
        return list(self._order)

    def describe(self) -> Dict[str, Any]:
        """Plain-data view of the graph, handy for logging and the CLI."""
        return {
            "workflow_id": self.workflow_id,
            "nodes": [
                {"id": n.id, "kind": n.kind, "upstream": list(n.upstream)}
                for n in self.nodes
            ],
            "hooks": [h.name for h in self.hooks],
        }

    # ------------------------------------------------------------------
    # Composition
    def run_as_step(self, input: Any = None, *, name: Optional[str] = None) -> Ref:
        """Embed this workflow in the workflow currently being composed."""
        from .builder import current_builder

        return current_builder().add_sub_workflow(self, input, name=name)

    # ------------------------------------------------------------------
    def _sort(self) -> Tuple[str, ...]:
        in_degree: Dict[str, int] = {}
        downstream: Dict[str, List[str]] = {n.id: [] for n in self.nodes}
        for node in self.nodes:
            upstream = [u for u in node.upstream if u != INPUT_NODE_ID]
            for u in upstream:
                if u not in downstream:
                    raise WorkflowDefinitionError(
                        f"Node '{node.id}' of workflow '{self.workflow_id}' "
                        f"depends on unknown node '{u}'"
                    )
                downstream[u].append(node.id)
            in_degree[node.id] = len(upstream)

        queue = deque(n.id for n in self.nodes if in_degree[n.id] == 0)
        order: List[str] = []
        while queue:
            node_id = queue.popleft()
            order.append(node_id)
            for target in downstream[node_id]:
                in_degree[target] -= 1
                if in_degree[target] == 0:
                    queue.append(target)

        if len(order) != len(self.nodes):
            stuck = sorted(set(downstream) - set(order))
            raise WorkflowDefinitionError(
                f"Workflow '{self.workflow_id}' contains a cycle through {stuck}"
            )
        return tuple(order)
