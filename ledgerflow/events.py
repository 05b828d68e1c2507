"""Domain event emission for workflow steps."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Protocol, Tuple

from .constants import EVENT_TOPIC_PREFIX
from .contracts import Envelope
from .transports.base import BaseTransport

logger = logging.getLogger(__name__)


class EventBus(Protocol):
    async def emit(
        self, name: str, data: Any, *, correlation_id: Optional[str] = None
    ) -> None:
        ...


class InMemoryEventBus:
    """Records emitted events; handy for tests and local runs."""

    def __init__(self) -> None:
        self.emitted: List[Tuple[str, Any]] = []

    async def emit(
        self, name: str, data: Any, *, correlation_id: Optional[str] = None
    ) -> None:
        self.emitted.append((name, data))
        logger.debug(f"Emitted event {name}")

    def names(self) -> List[str]:
        return [name for name, _ in self.emitted]


class TransportEventBus:
    """Publishes each event as an envelope on ``events.<name>``."""

    def __init__(self, transport: BaseTransport, prefix: str = EVENT_TOPIC_PREFIX) -> None:
        self.transport = transport
        self.prefix = prefix

    async def emit(
        self, name: str, data: Any, *, correlation_id: Optional[str] = None
    ) -> None:
        payload: Dict[str, Any] = data if isinstance(data, dict) else {"data": data}
        envelope = Envelope(
            kind="event", name=name, payload=payload, correlation_id=correlation_id
        )
        await self.transport.publish(f"{self.prefix}{name}", envelope)
        logger.info(f"Published event {name} ({envelope.message_id})")
