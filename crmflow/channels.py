"""Channel dispatcher contract and the implementations shipped with crmflow."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Protocol

from .contracts import ContactOperation, utcnow
from .errors import RecordNotFound
from .persistence import CONTACTS, DataStore
from .utils.retry import retry_async

logger = logging.getLogger(__name__)


class ChannelDispatcher(Protocol):
    """Sends messages and mutates contacts on behalf of action steps."""

    async def send(
        self,
        channel: str,
        target: str,
        template: Optional[str],
        variables: Dict[str, Any],
    ) -> bool:
        """Deliver a rendered message. Returns ``False`` on delivery failure."""

    async def mutate_contact(self, contact_id: str, operation: ContactOperation) -> bool:
        """Apply ``operation`` to the contact. Returns ``False`` on failure."""


class StoreChannelDispatcher:
    """Log outbound messages and apply contact mutations to the store.

    No provider is contacted: messages are only recorded in the log and in
    ``sent``. Useful for local runs and as the default CLI dispatcher.
    """

    def __init__(self, store: DataStore) -> None:
        self._store = store
        self.sent: list[Dict[str, Any]] = []

    async def send(
        self,
        channel: str,
        target: str,
        template: Optional[str],
        variables: Dict[str, Any],
    ) -> bool:
        logger.info(f"Sending {channel} to {target}: {template!r}")
        self.sent.append(
            {
                "channel": channel,
                "target": target,
                "body": template,
                "subject": variables.get("subject"),
            }
        )
        return True

    async def mutate_contact(self, contact_id: str, operation: ContactOperation) -> bool:
        contact = await self._store.find_by_id(CONTACTS, contact_id)
        if contact is None:
            logger.warning(f"Contact {contact_id} not found for {operation.type}")
            return False

        patch: Dict[str, Any] = {"updated_at": utcnow().isoformat()}
        if operation.type == "add_tag":
            tags = list(contact.get("tags") or [])
            if operation.tag not in tags:
                tags.append(operation.tag)
            patch["tags"] = tags
        elif operation.type == "remove_tag":
            patch["tags"] = [t for t in contact.get("tags") or [] if t != operation.tag]
        elif operation.type == "set_field":
            custom_fields = dict(contact.get("custom_fields") or {})
            custom_fields[operation.field] = operation.value
            patch["custom_fields"] = custom_fields
        elif operation.type == "move_stage":
            patch["deal_stage"] = operation.stage

        try:
            await self._store.update(CONTACTS, contact_id, patch)
        except RecordNotFound:
            logger.warning(f"Contact {contact_id} disappeared during {operation.type}")
            return False
        logger.info(f"Applied {operation.type} to contact {contact_id}")
        return True


class RetryingDispatcher:
    """Retry a wrapped dispatcher with exponential backoff.

    A ``False`` result or an exception counts as a failed attempt. After
    ``max_attempts`` the last exception is re-raised, or ``False`` returned.
    """

    def __init__(
        self,
        inner: ChannelDispatcher,
        max_attempts: int = 3,
        backoff_base: float = 1.5,
        jitter: float = 0.5,
    ) -> None:
        self._inner = inner
        self._max_attempts = max(1, max_attempts)
        self._backoff_base = backoff_base
        self._jitter = jitter

    async def _attempt(self, label: str, call) -> bool:
        return await retry_async(
            call,
            label,
            self._max_attempts,
            base=self._backoff_base,
            jitter=self._jitter,
        )

    async def send(
        self,
        channel: str,
        target: str,
        template: Optional[str],
        variables: Dict[str, Any],
    ) -> bool:
        return await self._attempt(
            f"send {channel} to {target}",
            lambda: self._inner.send(channel, target, template, variables),
        )

    async def mutate_contact(self, contact_id: str, operation: ContactOperation) -> bool:
        return await self._attempt(
            f"{operation.type} on {contact_id}",
            lambda: self._inner.mutate_contact(contact_id, operation),
        )
