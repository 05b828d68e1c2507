"""Context handed to step, compensate and hook functions."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .contracts import StepAction
from .errors import NotFoundError


@dataclass
class StepContext:
    """Where a step runs and which collaborators it may use.

    ``services`` is the injected container; ``query``, ``events`` and
    ``entities`` are shortcuts for the remote query, event bus and entity
    store collaborators.
    """

    transaction_id: str
    workflow_id: str
    step_id: Optional[str] = None
    action: StepAction = StepAction.INVOKE
    attempt: int = 1
    services: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def resolve(self, name: str) -> Any:
        try:
            return self.services[name]
        except KeyError:
            raise NotFoundError(
                f"Service '{name}' is not available to step '{self.step_id}'"
            ) from None

    @property
    def query(self) -> Any:
        return self.resolve("query")

    @property
    def events(self) -> Any:
        return self.resolve("events")

    @property
    def entities(self) -> Any:
        return self.resolve("entities")

    @property
    def idempotency_key(self) -> str:
        return f"{self.transaction_id}:{self.step_id}:{self.action.value}"
