"""Domain events carried over an event queue into the trigger service."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, Literal, Optional

from pydantic import BaseModel, Field

from .contracts import new_id, utcnow

if TYPE_CHECKING:
    from .transports import EventQueue
    from .triggers import WorkflowTriggerService

logger = logging.getLogger(__name__)

EventType = Literal[
    "contact_created",
    "tag_added",
    "form_submitted",
    "deal_stage_changed",
    "contact_deleted",
]


class DomainEvent(BaseModel):
    """Envelope for a CRM business event that may start workflows."""

    event_id: str = Field(default_factory=new_id)
    type: EventType
    timestamp: datetime = Field(default_factory=utcnow)
    contact: Optional[Dict[str, Any]] = None
    contact_id: Optional[str] = None
    tag: Optional[str] = None
    form_id: Optional[str] = None
    previous_stage: Optional[str] = None
    new_stage: Optional[str] = None

    def to_json(self) -> str:
        """Serialize event to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "DomainEvent":
        """Deserialize event from JSON."""
        return cls.model_validate_json(data)


class EventPublisher:
    """Push domain events onto an event queue."""

    def __init__(self, queue: "EventQueue") -> None:
        self._queue = queue

    async def publish(self, event: DomainEvent) -> None:
        await self._queue.push(event)
        logger.debug(f"Published {event.type} event {event.event_id} to {self._queue.name}")


class EventConsumer:
    """Consume domain events and hand them to the trigger service.

    An event is acknowledged only after its handler returned, so events
    taken by a worker that died mid-handling are requeued by ``recover``
    when the same consumer starts again.
    """

    def __init__(self, queue: "EventQueue", triggers: "WorkflowTriggerService") -> None:
        self._queue = queue
        self._triggers = triggers
        self.handled = 0

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Listen for events until ``lifespan`` seconds elapse (forever if None)."""
        recovered = await self._queue.recover()
        if recovered:
            logger.info(f"Redelivering {recovered} events left in flight on {self._queue.name}")
        async for delivery in self._queue.receive(lifespan=lifespan):
            await self.handle(delivery.event)
            await self._queue.ack(delivery)

    async def handle(self, event: DomainEvent) -> None:
        try:
            await self._dispatch(event)
        except Exception:
            logger.exception(f"Error handling {event.type} event {event.event_id}")
        self.handled += 1

    async def _dispatch(self, event: DomainEvent) -> None:
        if event.type == "deal_stage_changed":
            contact_id = event.contact_id or (event.contact or {}).get("id")
            if not contact_id or event.previous_stage is None or event.new_stage is None:
                logger.warning(f"Incomplete deal_stage_changed event {event.event_id}")
                return
            await self._triggers.on_deal_stage_changed(
                contact_id, event.previous_stage, event.new_stage
            )
            return

        if event.type == "contact_deleted":
            contact_id = event.contact_id or (event.contact or {}).get("id")
            if not contact_id:
                logger.warning(f"contact_deleted event {event.event_id} has no contact id")
                return
            await self._triggers.on_contact_deleted(contact_id)
            return

        if event.contact is None:
            logger.warning(f"{event.type} event {event.event_id} carries no contact")
            return
        if event.type == "contact_created":
            await self._triggers.on_contact_created(event.contact)
        elif event.type == "tag_added":
            if not event.tag:
                logger.warning(f"tag_added event {event.event_id} has no tag")
                return
            await self._triggers.on_tag_added(event.contact, event.tag)
        elif event.type == "form_submitted":
            if not event.form_id:
                logger.warning(f"form_submitted event {event.event_id} has no form id")
                return
            await self._triggers.on_form_submitted(event.contact, event.form_id)
