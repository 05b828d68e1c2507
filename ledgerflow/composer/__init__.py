"""Composition primitives: steps, transforms, parallel and conditional branches."""

from .builder import (
    GraphBuilder,
    Hook,
    WorkflowResponse,
    create_hook,
    create_workflow,
    parallelize,
    transform,
    when,
)
from .nodes import (
    ConditionalNode,
    HookDeclaration,
    Node,
    ParallelNode,
    StepNode,
    TransformNode,
)
from .refs import ABSENT, Ref, is_absent, resolve
from .step import RetryPolicy, StepDefinition, create_step
from .workflow import WorkflowDefinition

__all__ = [
    "ABSENT",
    "ConditionalNode",
    "GraphBuilder",
    "Hook",
    "HookDeclaration",
    "Node",
    "ParallelNode",
    "Ref",
    "RetryPolicy",
    "StepDefinition",
    "StepNode",
    "TransformNode",
    "WorkflowDefinition",
    "WorkflowResponse",
    "create_hook",
    "create_step",
    "create_workflow",
    "is_absent",
    "parallelize",
    "resolve",
    "transform",
    "when",
]
