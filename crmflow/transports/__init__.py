"""Event queues connecting CRM publishers to crmflow workers."""

from __future__ import annotations

import os
from typing import Optional

from ..config import CrmFlowConfig, load_config
from .base import Delivery, EventQueue
from .inmemory import InMemoryEventQueue


def get_event_queue(
    backend: Optional[str] = None,
    config: Optional[CrmFlowConfig] = None,
    consumer: Optional[str] = None,
) -> EventQueue:
    """Build the configured event queue.

    ``backend`` falls back to ``CRMFLOW_TRANSPORT`` and then to the
    ``transport.backend`` config value.
    """

    config = config or load_config()
    settings = config.transport
    backend = (backend or os.getenv("CRMFLOW_TRANSPORT") or settings.backend).lower()
    consumer = consumer or settings.consumer

    if backend == "inmemory":
        return InMemoryEventQueue(settings.topic, consumer)
    if backend == "redis":
        from .redis import RedisEventQueue

        return RedisEventQueue(
            settings.topic,
            consumer,
            url=settings.redis.url,
            host=settings.redis.host,
            port=settings.redis.port,
            db=settings.redis.db,
            password=settings.redis.password,
        )
    raise ValueError(f"Unsupported transport backend: {backend}")


__all__ = ["Delivery", "EventQueue", "InMemoryEventQueue", "get_event_queue"]
