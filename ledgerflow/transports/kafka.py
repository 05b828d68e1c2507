"""Kafka transport implementation using aiokafka."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Iterable, Optional, Tuple

try:
    from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
    from aiokafka.structs import TopicPartition
except ImportError:  # pragma: no cover - aiokafka not installed
    AIOKafkaConsumer = None  # type: ignore
    AIOKafkaProducer = None  # type: ignore
    TopicPartition = None  # type: ignore

from pydantic import ValidationError

from ..contracts import Envelope
from .base import BaseTransport, lifespan_expired

logger = logging.getLogger(__name__)


class KafkaTransport(BaseTransport[Any]):
    """Consumer-group transport; offsets are committed on ack."""

    def __init__(
        self,
        brokers: Iterable[str] | str = "localhost:9092",
        group_id: str = "ledgerflow",
        dlq_topic: str = "ledgerflow.deadletter",
    ) -> None:
        if AIOKafkaProducer is None or AIOKafkaConsumer is None:
            raise ImportError("aiokafka package is required for KafkaTransport")

        self.brokers = [brokers] if isinstance(brokers, str) else list(brokers)
        self.group_id = group_id
        self.dlq_topic = dlq_topic
        self._producer: Optional[AIOKafkaProducer] = None
        self._consumer: Optional[AIOKafkaConsumer] = None

    async def connect(self) -> None:
        self._producer = AIOKafkaProducer(bootstrap_servers=self.brokers)
        self._consumer = AIOKafkaConsumer(
            bootstrap_servers=self.brokers,
            group_id=self.group_id,
            enable_auto_commit=False,
            auto_offset_reset="earliest",
        )
        await self._producer.start()
        await self._consumer.start()

    async def disconnect(self) -> None:
        if self._consumer:
            await self._consumer.stop()
            self._consumer = None
        if self._producer:
            await self._producer.stop()
            self._producer = None

    async def publish(self, topic: str, envelope: Envelope) -> None:
        if not self._producer:
            raise RuntimeError("KafkaTransport not connected")
        await self._producer.send_and_wait(
            topic,
            value=envelope.to_json().encode(),
            key=(envelope.correlation_id or envelope.message_id).encode(),
        )

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[Any, Envelope]]:
        if not self._consumer:
            raise RuntimeError("KafkaTransport not connected")
        self._consumer.subscribe([topic])
        loop = asyncio.get_running_loop()
        start = loop.time() if lifespan else None

        while not lifespan_expired(start, lifespan, loop.time()):
            batch = await self._consumer.getmany(timeout_ms=1000)
            for messages in batch.values():
                for msg in messages:
                    try:
                        envelope = Envelope.from_json(msg.value.decode())
                    except (ValidationError, UnicodeDecodeError) as exc:
                        logger.warning(f"Dead-lettering malformed message at offset {msg.offset}: {exc}")
                        await self.nack(msg, requeue=False)
                        continue
                    yield msg, envelope

    async def ack(self, raw_message: Any) -> None:
        if not self._consumer:
            raise RuntimeError("KafkaTransport not connected")
        tp = TopicPartition(raw_message.topic, raw_message.partition)
        await self._consumer.commit({tp: raw_message.offset + 1})

    async def nack(self, raw_message: Any, requeue: bool = True) -> None:
        if not self._consumer:
            raise RuntimeError("KafkaTransport not connected")
        if requeue:
            tp = TopicPartition(raw_message.topic, raw_message.partition)
            self._consumer.seek(tp, raw_message.offset)
            return
        if self._producer:
            await self._producer.send_and_wait(self.dlq_topic, value=raw_message.value)
        await self.ack(raw_message)
