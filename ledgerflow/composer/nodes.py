"""Tagged node variants making up a workflow's execution graph."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Dict, Literal, Optional, Tuple

if TYPE_CHECKING:
    from .step import StepDefinition
    from .workflow import WorkflowDefinition


@dataclass(frozen=True, eq=False, kw_only=True)
class Node:
    """Common shape of every graph node.

    ``depends_on`` holds data dependencies, ``after`` the sequence predecessor
    and ``guards`` the enclosing conditionals, innermost last.
    """

    id: str
    depends_on: Tuple[str, ...] = ()
    after: Optional[str] = None
    guards: Tuple[str, ...] = ()

    kind: str = field(default="node", init=False)

    @property
    def upstream(self) -> Tuple[str, ...]:
        ids = list(self.depends_on)
        if self.after:
            ids.append(self.after)
        if self.guards:
            ids.append(self.guards[-1])
        return tuple(dict.fromkeys(ids))

    @property
    def guard(self) -> Optional[str]:
        return self.guards[-1] if self.guards else None


@dataclass(frozen=True, eq=False, kw_only=True)
class StepNode(Node):
    """Invocation of a registered step, or of a whole workflow run as one step."""

    step_name: str
    input: Any = None
    step: Optional["StepDefinition"] = None
    workflow: Optional["WorkflowDefinition"] = None
    overrides: Dict[str, Any] = field(default_factory=dict)

    kind: Literal["step", "workflow"] = field(default="step", init=False)

    def __post_init__(self) -> None:
        if self.workflow is not None:
            object.__setattr__(self, "kind", "workflow")


@dataclass(frozen=True, eq=False, kw_only=True)
class TransformNode(Node):
    """Pure function over resolved dependency values."""

    deps: Any = None
    fn: Optional[Callable[[Any], Any]] = None

    kind: Literal["transform"] = field(default="transform", init=False)


@dataclass(frozen=True, eq=False, kw_only=True)
class ParallelNode(Node):
    """Fan-in over sibling steps that share one predecessor."""

    members: Tuple[str, ...] = ()

    kind: Literal["parallel"] = field(default="parallel", init=False)


@dataclass(frozen=True, eq=False, kw_only=True)
class ConditionalNode(Node):
    """Gate deciding at run time whether the nodes in ``branch`` execute."""

    deps: Any = None
    predicate: Optional[Callable[[Any], Any]] = None
    branch: Tuple[str, ...] = ()

    kind: Literal["conditional"] = field(default="conditional", init=False)


@dataclass(frozen=True, eq=False)
class HookDeclaration:
    """Named extension point fed with resolved data once a transaction is done."""

    name: str
    data: Any = None
    guards: Tuple[str, ...] = ()
