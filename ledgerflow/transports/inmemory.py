"""In-process transport used by tests and single-process deployments."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, List, Optional, Tuple

from ..contracts import Envelope
from .base import BaseTransport, lifespan_expired

RawInMemory = Tuple[str, Envelope]


class InMemoryTransport(BaseTransport[RawInMemory]):
    """Per-topic FIFO queues living in the current event loop."""

    def __init__(self, poll_interval: float = 0.05) -> None:
        self._queues: Dict[str, Deque[RawInMemory]] = defaultdict(deque)
        self._lock = asyncio.Lock()
        self.poll_interval = poll_interval
        self.acked: List[str] = []

    async def publish(self, topic: str, envelope: Envelope) -> None:
        async with self._lock:
            self._queues[topic].append((topic, envelope))

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawInMemory, Envelope]]:
        loop = asyncio.get_running_loop()
        start = loop.time() if lifespan else None
        while not lifespan_expired(start, lifespan, loop.time()):
            async with self._lock:
                raw = self._queues[topic].popleft() if self._queues[topic] else None
            if raw is None:
                await asyncio.sleep(self.poll_interval)
                continue
            yield raw, raw[1]

    async def ack(self, raw_message: RawInMemory) -> None:
        self.acked.append(raw_message[1].message_id)

    async def nack(self, raw_message: RawInMemory, requeue: bool = True) -> None:
        if requeue:
            topic, envelope = raw_message
            async with self._lock:
                self._queues[topic].append((topic, envelope.bump_attempt()))
        else:
            await self.ack(raw_message)

    def pending(self, topic: str) -> List[Envelope]:
        """Envelopes queued on ``topic`` and not yet consumed."""
        return [envelope for _, envelope in self._queues[topic]]
