"""Transport interface carrying ledgerflow envelopes between processes."""

from __future__ import annotations

import abc
from typing import AsyncIterator, Generic, Optional, Tuple, TypeVar

from ..contracts import Envelope

RawMessageT = TypeVar("RawMessageT")


class BaseTransport(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """Abstract broker connection used for step signals and domain events."""

    async def connect(self) -> None:
        """Open the broker connection (no-op by default)."""

    async def disconnect(self) -> None:
        """Close the broker connection (no-op by default)."""

    @abc.abstractmethod
    async def publish(self, topic: str, envelope: Envelope) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessageT, Envelope]]:
        """Yield ``(raw_message, envelope)`` pairs from ``topic``.

        Args:
            topic: Queue or topic name.
            lifespan: Seconds to keep consuming. ``None`` consumes forever.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def ack(self, raw_message: RawMessageT) -> None:
        raise NotImplementedError

    async def nack(self, raw_message: RawMessageT, requeue: bool = True) -> None:
        """Reject a message. Backends without redelivery just acknowledge."""
        await self.ack(raw_message)


def lifespan_expired(start: Optional[float], lifespan: Optional[float], now: float) -> bool:
    return bool(lifespan) and start is not None and now - start >= lifespan
