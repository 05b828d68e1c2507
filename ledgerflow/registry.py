"""Explicit registry of step and workflow definitions."""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional, Tuple

from .composer.step import StepDefinition
from .composer.workflow import WorkflowDefinition
from .errors import WorkflowDefinitionError, WorkflowNotFoundError

logger = logging.getLogger(__name__)

HookHandler = Callable[[Any, Any], Any]


class WorkflowRegistry:
    """Holds the definitions an engine can execute.

    Create one at process startup, register workflows (their steps and child
    workflows come along), hand it to the engine and call :meth:`clear` on
    teardown. Registration has no side effects beyond bookkeeping.
    """

    def __init__(self) -> None:
        self._steps: Dict[str, StepDefinition] = {}
        self._workflows: Dict[str, WorkflowDefinition] = {}
        self._hook_handlers: Dict[Tuple[str, str], List[HookHandler]] = defaultdict(list)

    # ------------------------------------------------------------------
    def register_step(self, definition: StepDefinition) -> StepDefinition:
        existing = self._steps.get(definition.name)
        if existing is not None and existing is not definition:
            raise WorkflowDefinitionError(
                f"A different step named '{definition.name}' is already registered"
            )
        self._steps[definition.name] = definition
        return definition

    def register_workflow(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        existing = self._workflows.get(definition.workflow_id)
        if existing is definition:
            return definition
        if existing is not None:
            raise WorkflowDefinitionError(
                f"A different workflow with id '{definition.workflow_id}' is already registered"
            )
        for node in definition.step_nodes():
            if node.workflow is not None:
                self.register_workflow(node.workflow)
            elif node.step is not None:
                self.register_step(node.step)
        self._workflows[definition.workflow_id] = definition
        logger.info(
            f"Registered workflow {definition.workflow_id} "
            f"({len(definition.step_nodes())} steps, {len(definition.hooks)} hooks)"
        )
        return definition

    def register_hook_handler(
        self, workflow_id: str, hook_name: str, handler: HookHandler
    ) -> None:
        """Attach ``handler(data, context)`` to a hook declared by a workflow."""
        definition = self.get_workflow(workflow_id)
        if definition.hook(hook_name) is None:
            raise WorkflowDefinitionError(
                f"Workflow '{workflow_id}' declares no hook named '{hook_name}'"
            )
        self._hook_handlers[(workflow_id, hook_name)].append(handler)

    # ------------------------------------------------------------------
    def get_step(self, name: str) -> Optional[StepDefinition]:
        return self._steps.get(name)

    def get_workflow(self, workflow_id: str) -> WorkflowDefinition:
        definition = self._workflows.get(workflow_id)
        if definition is None:
            raise WorkflowNotFoundError(f"Workflow '{workflow_id}' is not registered")
        return definition

    def has_workflow(self, workflow_id: str) -> bool:
        return workflow_id in self._workflows

    def hook_handlers(self, workflow_id: str, hook_name: str) -> List[HookHandler]:
        return list(self._hook_handlers.get((workflow_id, hook_name), ()))

    def workflows(self) -> List[WorkflowDefinition]:
        return list(self._workflows.values())

    def steps(self) -> List[StepDefinition]:
        return list(self._steps.values())

    def clear(self) -> None:
        self._steps.clear()
        self._workflows.clear()
        self._hook_handlers.clear()
