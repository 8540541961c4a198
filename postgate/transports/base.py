"""Transport contract for handing transition events to notification workers."""

from __future__ import annotations

import abc
from typing import AsyncIterator, Generic, Optional, Tuple, TypeVar

from ..contracts import TransitionEvent

RawMessageT = TypeVar("RawMessageT")


class BaseTransport(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """Queue of :class:`TransitionEvent` per topic.

    Delivery is at-least-once. A consumer acks an event after handling it
    and nacks it to have it delivered again.
    """

    async def connect(self) -> None:
        pass

    async def disconnect(self) -> None:
        pass

    async def __aenter__(self) -> "BaseTransport[RawMessageT]":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.disconnect()

    @abc.abstractmethod
    async def publish(self, topic: str, event: TransitionEvent) -> None:
        """Append ``event`` to ``topic``."""
        raise NotImplementedError

    @abc.abstractmethod
    def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessageT, TransitionEvent]]:
        """Yield ``(raw, event)`` pairs from ``topic``.

        Stops after ``lifespan`` seconds, or never when it is ``None``.
        The raw value is what :meth:`ack` and :meth:`nack` expect.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def ack(self, raw_message: RawMessageT) -> None:
        raise NotImplementedError

    async def nack(self, raw_message: RawMessageT, requeue: bool = True) -> None:
        """Reject an event. Transports that cannot requeue drop it."""
        await self.ack(raw_message)
