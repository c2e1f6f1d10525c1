"""Lifecycle event transport interface."""

from __future__ import annotations

import abc
from typing import AsyncIterator, Collection, Generic, Optional, Tuple, TypeVar

from ..events import LifecycleEvent

RawMessageT = TypeVar("RawMessageT")


class BaseTransport(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """Carry lifecycle events from the engine to outside observers.

    The engine only publishes, through :class:`~sagaflow.events.EventEmitter`.
    Observers such as ``sagaflow events tail`` consume with :meth:`tail`.
    Backends that hold a connection open it in :meth:`connect`; using the
    transport as an async context manager pairs it with :meth:`disconnect`.
    """

    async def connect(self) -> None:
        pass

    async def disconnect(self) -> None:
        pass

    async def __aenter__(self) -> "BaseTransport[RawMessageT]":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.disconnect()

    @abc.abstractmethod
    async def publish(self, topic: str, event: LifecycleEvent) -> None:
        """Deliver one event. Errors propagate; the emitter logs and drops them."""
        raise NotImplementedError

    @abc.abstractmethod
    def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessageT, LifecycleEvent]]:
        """Yield ``(raw message, event)`` pairs from ``topic``.

        Stops after ``lifespan`` seconds, or runs until cancelled when it is
        ``None``.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def ack(self, raw_message: RawMessageT) -> None:
        """Confirm that ``raw_message`` was handled."""
        raise NotImplementedError

    async def tail(
        self,
        topic: str,
        lifespan: Optional[float] = None,
        event_types: Optional[Collection[str]] = None,
        execution_id: Optional[str] = None,
    ) -> AsyncIterator[LifecycleEvent]:
        """Consume ``topic``, acknowledging every message and yielding matching events."""
        async for raw, event in self.subscribe(topic, lifespan):
            await self.ack(raw)
            if event_types and event.type not in event_types:
                continue
            if execution_id is not None and event.execution_id != execution_id:
                continue
            yield event
