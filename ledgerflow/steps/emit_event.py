from __future__ import annotations

from typing import Any, Dict

from ..composer.step import create_step
from ..context import StepContext


@create_step("emit-event", compensable=False)
async def emit_event_step(data: Dict[str, Any], context: StepContext) -> None:
    """Emit ``data["event_name"]`` with ``data["data"]`` on the event bus."""
    await context.events.emit(
        data["event_name"], data.get("data"), correlation_id=context.transaction_id
    )
