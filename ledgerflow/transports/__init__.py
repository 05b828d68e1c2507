"""Transport factory and initialization."""

from __future__ import annotations

import os
from typing import Optional

from ..config import LedgerflowConfig, load_config
from .base import BaseTransport
from .inmemory import InMemoryTransport

_transport_instance: BaseTransport | None = None


def get_transport(
    backend: Optional[str] = None, config: Optional[LedgerflowConfig] = None
) -> BaseTransport:
    """Factory function to get the configured transport.

    The in-memory transport is cached so publishers and consumers in the same
    process share its queues.
    """

    global _transport_instance
    config = config or load_config()
    backend = (
        backend or os.getenv("LEDGERFLOW_TRANSPORT") or config.transport.backend
    ).lower()

    if backend == "inmemory":
        if not isinstance(_transport_instance, InMemoryTransport):
            _transport_instance = InMemoryTransport()
        return _transport_instance
    elif backend == "redis":
        from .redis import RedisTransport

        redis_conf = config.transport.redis
        return RedisTransport(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
        )
    elif backend == "kafka":
        from .kafka import KafkaTransport

        kafka_conf = config.transport.kafka
        return KafkaTransport(
            brokers=kafka_conf.brokers,
            group_id=kafka_conf.group_id,
            dlq_topic=kafka_conf.dlq_topic,
        )
    elif backend == "rabbitmq":
        from .rabbitmq import RabbitMQTransport

        return RabbitMQTransport(url=config.transport.rabbitmq.url)
    else:
        raise ValueError(f"Unsupported transport backend: {backend}")


__all__ = ["BaseTransport", "InMemoryTransport", "get_transport"]
