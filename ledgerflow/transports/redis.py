"""Redis list-backed transport."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Optional, Tuple

try:
    import redis.asyncio as redis
except ImportError:
    redis = None

from pydantic import ValidationError

from ..contracts import Envelope
from .base import BaseTransport, lifespan_expired

logger = logging.getLogger(__name__)


class RedisTransport(BaseTransport[Tuple[str, str]]):
    """Uses one Redis list per topic; LPUSH to publish, BRPOP to consume."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        prefix: str = "ledgerflow",
    ) -> None:
        if redis is None:
            raise ImportError("redis package is required for RedisTransport")

        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.prefix = prefix
        self._redis: Optional[Any] = None

    def _queue(self, topic: str) -> str:
        return f"{self.prefix}:{topic}"

    async def connect(self) -> None:
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def publish(self, topic: str, envelope: Envelope) -> None:
        if not self._redis:
            await self.connect()
        await self._redis.lpush(self._queue(topic), envelope.to_json())

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[Tuple[str, str], Envelope]]:
        if not self._redis:
            await self.connect()

        queue = self._queue(topic)
        loop = asyncio.get_running_loop()
        start = loop.time() if lifespan else None
        while not lifespan_expired(start, lifespan, loop.time()):
            result = await self._redis.brpop(queue, timeout=1)
            if not result:
                continue
            _, raw = result
            try:
                envelope = Envelope.from_json(raw)
            except ValidationError as exc:
                logger.warning(f"Dropping malformed message on {queue}: {exc}")
                continue
            yield (queue, raw), envelope

    async def ack(self, raw_message: Tuple[str, str]) -> None:
        """BRPOP already removed the message."""

    async def nack(self, raw_message: Tuple[str, str], requeue: bool = True) -> None:
        if requeue and self._redis:
            queue, raw = raw_message
            envelope = Envelope.from_json(raw).bump_attempt()
            await self._redis.lpush(queue, envelope.to_json())
