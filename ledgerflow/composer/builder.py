"""Graph construction pass turning a workflow body into a static node list."""

from __future__ import annotations

import logging
from collections import defaultdict
from contextvars import ContextVar
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..constants import INPUT_NODE_ID, SUB_WORKFLOW_SUFFIX
from ..errors import WorkflowDefinitionError
from .nodes import ConditionalNode, HookDeclaration, Node, ParallelNode, StepNode, TransformNode
from .refs import Ref, collect_refs
from .step import StepDefinition
from .workflow import WorkflowDefinition

logger = logging.getLogger(__name__)

_active_builder: ContextVar[Optional["GraphBuilder"]] = ContextVar(
    "ledgerflow_active_builder", default=None
)


def current_builder() -> "GraphBuilder":
    builder = _active_builder.get()
    if builder is None:
        raise WorkflowDefinitionError(
            "Steps, transforms and branches can only be composed inside create_workflow()"
        )
    return builder


class WorkflowResponse:
    """Explicit wrapper for the value a workflow body returns."""

    def __init__(self, value: Any = None) -> None:
        self.value = value


class Hook:
    """Handle returned by :func:`create_hook`."""

    def __init__(self, workflow_id: str, name: str) -> None:
        self.workflow_id = workflow_id
        self.name = name

    def __repr__(self) -> str:
        return f"Hook({self.workflow_id}.{self.name})"


class GraphBuilder:
    """Collects nodes while a workflow body runs once at definition time."""

    def __init__(self, workflow_id: str) -> None:
        self.workflow_id = workflow_id
        self._nodes: Dict[str, Node] = {}
        self._hooks: Dict[str, HookDeclaration] = {}
        self._counters: Dict[str, int] = defaultdict(int)
        self._last_sequence: Optional[str] = None
        self._guards: Tuple[str, ...] = ()

    # ------------------------------------------------------------------
    def _next_id(self, prefix: str) -> str:
        while True:
            self._counters[prefix] += 1
            node_id = f"{prefix}-{self._counters[prefix]}"
            if node_id not in self._nodes:
                return node_id

    def _dependencies(self, value: Any) -> Tuple[str, ...]:
        ids: List[str] = []
        for ref in collect_refs(value):
            if ref.node_id != INPUT_NODE_ID and ref.node_id not in self._nodes:
                raise WorkflowDefinitionError(
                    f"Workflow '{self.workflow_id}' references '{ref.node_id}', "
                    "which was not composed in this workflow"
                )
            ids.append(ref.node_id)
        return tuple(dict.fromkeys(ids))

    def _claim_step_id(self, step_id: str) -> str:
        if step_id in self._nodes:
            raise WorkflowDefinitionError(
                f"Step '{step_id}' is already used in workflow '{self.workflow_id}'; "
                "pass name= to add it again under another id"
            )
        return step_id

    def _add_sequenced(self, node: StepNode) -> Ref:
        self._nodes[node.id] = node
        self._last_sequence = node.id
        logger.debug(f"Composed step {node.id} in workflow {self.workflow_id}")
        return Ref(node.id)

    # ------------------------------------------------------------------
    def add_step(
        self,
        definition: StepDefinition,
        input: Any,
        name: Optional[str] = None,
        overrides: Optional[Dict[str, Any]] = None,
    ) -> Ref:
        step_id = self._claim_step_id(name or definition.name)
        node = StepNode(
            id=step_id,
            step_name=definition.name,
            step=definition,
            input=input,
            depends_on=self._dependencies(input),
            after=self._last_sequence,
            guards=self._guards,
            overrides=dict(overrides or {}),
        )
        return self._add_sequenced(node)

    def add_sub_workflow(
        self, child: WorkflowDefinition, input: Any, name: Optional[str] = None
    ) -> Ref:
        if child.workflow_id == self.workflow_id:
            raise WorkflowDefinitionError(
                f"Workflow '{self.workflow_id}' cannot run itself as a step"
            )
        step_id = self._claim_step_id(name or f"{child.workflow_id}{SUB_WORKFLOW_SUFFIX}")
        node = StepNode(
            id=step_id,
            step_name=child.workflow_id,
            workflow=child,
            input=input,
            depends_on=self._dependencies(input),
            after=self._last_sequence,
            guards=self._guards,
        )
        return self._add_sequenced(node)

    def add_transform(self, deps: Any, fn: Callable[[Any], Any]) -> Ref:
        if not callable(fn):
            raise WorkflowDefinitionError("transform() expects a callable")
        prefix = getattr(fn, "__name__", "transform")
        if prefix == "<lambda>":
            prefix = "transform"
        node = TransformNode(
            id=self._next_id(prefix),
            deps=deps,
            fn=fn,
            depends_on=self._dependencies(deps),
            guards=self._guards,
        )
        self._nodes[node.id] = node
        return Ref(node.id)

    def parallelize(self, refs: Tuple[Ref, ...]) -> Tuple[Ref, ...]:
        if not refs:
            raise WorkflowDefinitionError("parallelize() needs at least one step")
        members: List[str] = []
        for ref in refs:
            if not isinstance(ref, Ref) or ref.path:
                raise WorkflowDefinitionError(
                    "parallelize() accepts the direct outputs of steps"
                )
            node = self._nodes.get(ref.node_id)
            if not isinstance(node, StepNode):
                raise WorkflowDefinitionError(
                    f"'{ref.node_id}' is not a step and cannot be parallelized"
                )
            members.append(node.id)

        for previous, current in zip(members, members[1:]):
            if self._nodes[current].after != previous:
                raise WorkflowDefinitionError(
                    "parallelize() members must be steps composed one after another "
                    f"(got {members})"
                )
        if self._last_sequence != members[-1]:
            raise WorkflowDefinitionError(
                "parallelize() must wrap the most recently composed steps"
            )
        for member in members:
            overlap = set(self._nodes[member].depends_on) & set(members)
            if overlap:
                raise WorkflowDefinitionError(
                    f"Parallel step '{member}' reads the output of sibling(s) {sorted(overlap)}"
                )

        base = self._nodes[members[0]].after
        for member in members:
            self._nodes[member] = replace(self._nodes[member], after=base)

        node = ParallelNode(
            id=self._next_id("parallel"),
            members=tuple(members),
            depends_on=tuple(members),
            guards=self._guards,
        )
        self._nodes[node.id] = node
        self._last_sequence = node.id
        return tuple(refs)

    def open_branch(self, deps: Any, predicate: Optional[Callable[[Any], Any]]) -> str:
        node = ConditionalNode(
            id=self._next_id("when"),
            deps=deps,
            predicate=predicate,
            depends_on=self._dependencies(deps),
            after=self._last_sequence,
            guards=self._guards,
        )
        self._nodes[node.id] = node
        self._last_sequence = node.id
        self._guards = self._guards + (node.id,)
        return node.id

    def close_branch(self, condition_id: str, known_before: set) -> None:
        self._guards = self._guards[:-1]
        branch = tuple(
            node_id
            for node_id in self._nodes
            if node_id not in known_before and node_id != condition_id
        )
        self._nodes[condition_id] = replace(self._nodes[condition_id], branch=branch)

    def add_hook(self, name: str, data: Any) -> Hook:
        if name in self._hooks:
            raise WorkflowDefinitionError(
                f"Hook '{name}' is declared twice in workflow '{self.workflow_id}'"
            )
        self._dependencies(data)
        self._hooks[name] = HookDeclaration(name=name, data=data, guards=self._guards)
        return Hook(self.workflow_id, name)

    def build(self, result: Any, timeout: Optional[float] = None) -> WorkflowDefinition:
        if isinstance(result, WorkflowResponse):
            result = result.value
        self._dependencies(result)
        return WorkflowDefinition(
            workflow_id=self.workflow_id,
            nodes=tuple(self._nodes.values()),
            hooks=tuple(self._hooks.values()),
            result=result,
            timeout=timeout,
        )


class _When:
    def __init__(self, deps: Any, predicate: Optional[Callable[[Any], Any]]) -> None:
        self._deps = deps
        self._predicate = predicate

    def then(self, fn: Callable[[], Any]) -> Optional[Ref]:
        """Compose ``fn``'s nodes so they only run when the condition holds.

        Returns a reference to whatever ``fn`` returned; it resolves to
        ``ABSENT`` when the branch is skipped.
        """
        builder = current_builder()
        known_before = set(builder._nodes)
        condition_id = builder.open_branch(self._deps, self._predicate)
        try:
            returned = fn()
            if isinstance(returned, WorkflowResponse):
                returned = returned.value
            out: Optional[Ref] = None
            if returned is not None:
                out = builder.add_transform(returned, _identity)
        finally:
            builder.close_branch(condition_id, known_before)
        return out


def _identity(value: Any) -> Any:
    return value


# ----------------------------------------------------------------------
# Public composition helpers
def transform(deps: Any, fn: Callable[[Any], Any]) -> Ref:
    """Add a pure data reshaping node. ``fn`` receives ``deps`` resolved."""
    return current_builder().add_transform(deps, fn)


def parallelize(*refs: Ref) -> Tuple[Ref, ...]:
    """Let the given, just-composed steps run concurrently."""
    return current_builder().parallelize(refs)


def when(deps: Any, predicate: Optional[Callable[[Any], Any]] = None) -> _When:
    """Start a conditional branch; finish it with ``.then(fn)``.

    Without ``predicate`` the truthiness of the resolved ``deps`` decides.
    """
    return _When(deps, predicate)


def create_hook(name: str, data: Any = None) -> Hook:
    """Declare an extension point fed with ``data`` once the transaction is done."""
    return current_builder().add_hook(name, data)


def create_workflow(
    workflow_id: str,
    body: Optional[Callable[[Ref], Any]] = None,
    *,
    timeout: Optional[float] = None,
):
    """Run ``body`` once against a placeholder input and freeze the graph.

    Usable directly or as a decorator::

        @create_workflow("create-cart")
        def create_cart(input):
            ...
    """
    if not workflow_id:
        raise WorkflowDefinitionError("Workflow id must be a non-empty string")

    def build(fn: Callable[[Ref], Any]) -> WorkflowDefinition:
        builder = GraphBuilder(workflow_id)
        token = _active_builder.set(builder)
        try:
            result = fn(Ref(INPUT_NODE_ID))
        finally:
            _active_builder.reset(token)
        definition = builder.build(result, timeout=timeout)
        logger.debug(
            f"Built workflow {workflow_id} with {len(definition.nodes)} nodes"
        )
        return definition

    if body is None:
        return build
    return build(body)
