"""Message-passing ingress: applies step signals published on a transport."""

from __future__ import annotations

import logging
from typing import Any, Optional

from pydantic import ValidationError as PydanticValidationError

from .constants import SIGNAL_TOPIC
from .contracts import Envelope, StepSignal
from .engine import WorkflowEngine
from .errors import (
    EngineConsistencyError,
    InvalidSignalError,
    NotFoundError,
    StepConflictError,
)
from .transports import BaseTransport

logger = logging.getLogger(__name__)


async def publish_signal(
    transport: BaseTransport, signal: StepSignal, topic: str = SIGNAL_TOPIC
) -> Envelope:
    """Wrap ``signal`` in an envelope and publish it for a :class:`SignalConsumer`."""
    envelope = Envelope.for_signal(signal)
    await transport.publish(topic, envelope)
    logger.debug(f"Published signal {envelope.message_id} for {signal.transaction_id}")
    return envelope


class SignalConsumer:
    """Listens on the signal topic and feeds each signal to the engine."""

    def __init__(
        self,
        engine: WorkflowEngine,
        transport: BaseTransport,
        topic: str = SIGNAL_TOPIC,
        max_attempts: int = 5,
    ) -> None:
        self._engine = engine
        self._transport = transport
        self._topic = topic
        self.max_attempts = max_attempts
        self.processed = 0

    async def start(self, lifespan: Optional[float] = None) -> None:
        logger.info(f"Consuming step signals from {self._topic}")
        async for raw_message, envelope in self._transport.subscribe(
            self._topic, lifespan=lifespan
        ):
            await self._handle(raw_message, envelope)

    async def _handle(self, raw_message: Any, envelope: Envelope) -> None:
        if envelope.kind != "step_signal":
            logger.warning(f"Ignoring {envelope.kind} envelope {envelope.message_id} on {self._topic}")
            await self._transport.ack(raw_message)
            return
        try:
            signal = envelope.to_signal()
        except (ValueError, PydanticValidationError) as exc:
            logger.error(f"Rejecting malformed signal {envelope.message_id}: {exc}")
            await self._transport.nack(raw_message, requeue=False)
            return

        try:
            report = await self._engine.signal(signal)
        except StepConflictError:
            logger.info(
                f"Duplicate signal {envelope.message_id} for step {signal.step_id} "
                f"of {signal.transaction_id}; already applied"
            )
            await self._transport.ack(raw_message)
        except (NotFoundError, InvalidSignalError, EngineConsistencyError) as exc:
            logger.error(f"Dropping signal {envelope.message_id}: {exc}")
            await self._transport.nack(raw_message, requeue=False)
        except Exception as exc:
            requeue = envelope.attempt < self.max_attempts
            logger.error(
                f"Signal {envelope.message_id} failed on attempt {envelope.attempt}: {exc}"
                + ("; requeueing" if requeue else "; giving up")
            )
            await self._transport.nack(raw_message, requeue=requeue)
        else:
            self.processed += 1
            logger.info(
                f"Signal {envelope.message_id} applied; {signal.transaction_id} is {report.status.value}"
            )
            await self._transport.ack(raw_message)
