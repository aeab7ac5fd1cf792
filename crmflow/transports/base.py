"""Event queue interface shared by the worker and the publishers."""

from __future__ import annotations

import abc
from dataclasses import dataclass
from typing import AsyncIterator, Optional

from ..events import DomainEvent


@dataclass(frozen=True)
class Delivery:
    """One event handed to a consumer, pending acknowledgement.

    ``payload`` is the serialized form the queue stored, used to find the
    in-flight copy again on ``ack``.
    """

    event: DomainEvent
    payload: str


class EventQueue(abc.ABC):
    """A named queue of domain events with at-least-once delivery.

    ``receive`` moves each event to an in-flight area owned by this
    consumer; it stays there until ``ack``. ``recover`` puts whatever a
    previous run of the same consumer left in flight back on the queue.
    """

    def __init__(self, name: str = "crm.events", consumer: str = "default") -> None:
        self.name = name
        self.consumer = consumer

    async def close(self) -> None:
        """Release connections held by the queue."""

    @abc.abstractmethod
    async def push(self, event: DomainEvent) -> None:
        """Append an event to the queue."""

    @abc.abstractmethod
    def receive(self, lifespan: Optional[float] = None) -> AsyncIterator[Delivery]:
        """Yield deliveries until ``lifespan`` seconds elapse (forever if None)."""

    @abc.abstractmethod
    async def ack(self, delivery: Delivery) -> None:
        """Drop a handled delivery from the in-flight area."""

    @abc.abstractmethod
    async def recover(self) -> int:
        """Requeue this consumer's unacknowledged deliveries; return how many."""
