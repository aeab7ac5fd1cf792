"""Redis-backed event queue shared by workers in different processes.

Layout, for a queue named ``crm.events`` and consumer ``worker-1``::

    crmflow:crm.events                       pending events, LPUSH in, oldest on the right
    crmflow:crm.events:processing:worker-1   taken by worker-1, not yet acked
    crmflow:crm.events:dead                  payloads that failed to parse

``BLMOVE`` takes an event and records it as in flight in one step, so an
event popped by a worker that dies before ``ack`` is still in its
processing list and comes back on the next ``recover``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Optional

import redis.asyncio as redis
from pydantic import ValidationError

from ..events import DomainEvent
from .base import Delivery, EventQueue

logger = logging.getLogger(__name__)

# Upper bound on a single BLMOVE wait so lifespans are honoured.
BLOCK_SECONDS = 1.0


class RedisEventQueue(EventQueue):
    def __init__(
        self,
        name: str = "crm.events",
        consumer: str = "default",
        url: Optional[str] = None,
        client: Optional[Any] = None,
        **connection: Any,
    ) -> None:
        super().__init__(name, consumer)
        if client is None:
            if url:
                client = redis.Redis.from_url(url, decode_responses=True)
            else:
                client = redis.Redis(decode_responses=True, **connection)
        self._redis = client
        self.pending_key = f"crmflow:{name}"
        self.processing_key = f"crmflow:{name}:processing:{consumer}"
        self.dead_key = f"crmflow:{name}:dead"

    async def close(self) -> None:
        await self._redis.aclose()

    async def push(self, event: DomainEvent) -> None:
        await self._redis.lpush(self.pending_key, event.to_json())

    async def receive(self, lifespan: Optional[float] = None) -> AsyncIterator[Delivery]:
        loop = asyncio.get_running_loop()
        deadline = None if lifespan is None else loop.time() + lifespan
        while True:
            if deadline is None:
                wait = BLOCK_SECONDS
            else:
                wait = min(BLOCK_SECONDS, deadline - loop.time())
                if wait <= 0:
                    return
            payload = await self._redis.blmove(
                self.pending_key, self.processing_key, wait, src="RIGHT", dest="LEFT"
            )
            if payload is None:
                continue
            try:
                event = DomainEvent.from_json(payload)
            except ValidationError as e:
                logger.warning(f"Moving unreadable payload on {self.name} to {self.dead_key}: {e}")
                await self._redis.lpush(self.dead_key, payload)
                await self._redis.lrem(self.processing_key, 1, payload)
                continue
            yield Delivery(event=event, payload=payload)

    async def ack(self, delivery: Delivery) -> None:
        removed = await self._redis.lrem(self.processing_key, 1, delivery.payload)
        if not removed:
            logger.warning(
                f"Event {delivery.event.event_id} was not in flight for {self.consumer}"
            )

    async def recover(self) -> int:
        # Newest in-flight first onto the consuming end, so the oldest is read next.
        recovered = 0
        while await self._redis.lmove(
            self.processing_key, self.pending_key, src="LEFT", dest="RIGHT"
        ):
            recovered += 1
        if recovered:
            logger.info(f"Requeued {recovered} unacknowledged events for {self.consumer}")
        return recovered
