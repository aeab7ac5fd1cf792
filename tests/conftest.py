"""Shared fakes and factories for crmflow tests."""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import pytest

import crmflow.persistence as persistence
from crmflow.channels import StoreChannelDispatcher
from crmflow.contracts import Workflow
from crmflow.engine import WorkflowExecutionEngine
from crmflow.persistence import CONTACTS, WORKFLOWS, InMemoryDataStore
from crmflow.triggers import WorkflowTriggerService
from crmflow.workflows import WorkflowCatalog


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, now: Optional[datetime] = None) -> None:
        self.now = now or datetime(2024, 3, 15, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingDispatcher(StoreChannelDispatcher):
    """Store dispatcher that can be told to reject or blow up on a channel."""

    def __init__(self, store) -> None:
        super().__init__(store)
        self.fail_channels: set[str] = set()
        self.raise_channels: set[str] = set()
        self.variables: list[Dict[str, Any]] = []

    async def send(self, channel, target, template, variables):
        if channel in self.raise_channels:
            raise RuntimeError(f"{channel} provider unavailable")
        self.variables.append(variables)
        if channel in self.fail_channels:
            return False
        return await super().send(channel, target, template, variables)


@pytest.fixture(autouse=True)
def reset_store_singleton(monkeypatch):
    monkeypatch.delenv("CRMFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("CRMFLOW_TRANSPORT", raising=False)
    persistence._store_instance = None
    yield
    persistence._store_instance = None


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryDataStore()


@pytest.fixture
def dispatcher(store):
    return RecordingDispatcher(store)


@pytest.fixture
def engine(store, dispatcher, clock):
    return WorkflowExecutionEngine(store, dispatcher, clock=clock)


@pytest.fixture
def triggers(store, engine):
    return WorkflowTriggerService(store, engine)


@pytest.fixture
def catalog(store, engine):
    return WorkflowCatalog(store, engine)


@pytest.fixture
def make_workflow(store):
    """Persist an active workflow definition and return its record."""

    async def _make(steps, trigger=None, status="active", **fields) -> Dict[str, Any]:
        record = {
            "name": fields.pop("name", "test-workflow"),
            "status": status,
            "trigger": trigger or {"type": "contact_created"},
            "steps": steps,
            **fields,
        }
        workflow = Workflow.model_validate(record)
        return await store.create(WORKFLOWS, workflow.model_dump(mode="json"))

    return _make


@pytest.fixture
def add_contact(store):
    """Persist a contact and return its record."""

    async def _add(contact_id: str = "contact-1", **fields) -> Dict[str, Any]:
        record = {
            "id": contact_id,
            "first_name": "Ada",
            "last_name": "Lovelace",
            "email": f"{contact_id}@example.com",
            "phone": "+15550100",
            "tags": [],
            "custom_fields": {},
            "deal_stage": "lead",
            **fields,
        }
        return await store.create(CONTACTS, record)

    return _add
