"""Process-local event queue for tests and single-process runs."""

from __future__ import annotations

import asyncio
from collections import deque
from typing import AsyncIterator, Deque, List, Optional

from ..events import DomainEvent
from .base import Delivery, EventQueue


class InMemoryEventQueue(EventQueue):
    def __init__(
        self,
        name: str = "crm.events",
        consumer: str = "default",
        poll_interval: float = 0.1,
    ) -> None:
        super().__init__(name, consumer)
        self._pending: Deque[Delivery] = deque()
        self._in_flight: List[Delivery] = []
        self._poll_interval = poll_interval

    async def push(self, event: DomainEvent) -> None:
        self._pending.append(Delivery(event=event, payload=event.to_json()))

    async def receive(self, lifespan: Optional[float] = None) -> AsyncIterator[Delivery]:
        loop = asyncio.get_running_loop()
        deadline = None if lifespan is None else loop.time() + lifespan
        while deadline is None or loop.time() < deadline:
            if not self._pending:
                await asyncio.sleep(self._poll_interval)
                continue
            delivery = self._pending.popleft()
            self._in_flight.append(delivery)
            yield delivery

    async def ack(self, delivery: Delivery) -> None:
        if delivery in self._in_flight:
            self._in_flight.remove(delivery)

    async def recover(self) -> int:
        recovered = len(self._in_flight)
        self._pending.extendleft(reversed(self._in_flight))
        self._in_flight.clear()
        return recovered

    @property
    def pending(self) -> int:
        return len(self._pending)

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)
