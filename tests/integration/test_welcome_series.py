from datetime import timedelta

import pytest

from crmflow import (
    DomainEvent,
    EventConsumer,
    EventPublisher,
    ExecutionStatus,
    WorkflowCatalog,
    WorkflowExecutionEngine,
    WorkflowScheduler,
    WorkflowTriggerService,
)
from crmflow.channels import StoreChannelDispatcher
from crmflow.persistence import CONTACTS, SQLiteDataStore
from crmflow.transports.inmemory import InMemoryEventQueue

WELCOME_SERIES = {
    "name": "WelcomeSeries",
    "trigger": {"type": "contact_created"},
    "steps": [
        {"id": "welcome", "kind": "action", "channel": "email", "subject": "Welcome", "template": "welcome"},
        {"id": "wait", "kind": "delay", "duration": 2, "unit": "days"},
        {"id": "tips", "kind": "action", "channel": "email", "subject": "Tips", "template": "tips"},
    ],
}


@pytest.mark.asyncio
async def test_welcome_series_end_to_end(store, engine, triggers, catalog, dispatcher, clock):
    workflow = await catalog.create(WELCOME_SERIES)
    await catalog.activate(workflow.id)
    contact = await store.create(CONTACTS, {"id": "C1", "first_name": "Cleo", "email": "c1@example.com"})

    [e1] = await triggers.on_contact_created(contact)

    assert e1.status == ExecutionStatus.WAITING_DELAY
    assert e1.resume_at == clock.now + timedelta(days=2)
    assert [m["body"] for m in dispatcher.sent] == ["welcome"]

    clock.advance(days=2)
    e1 = await engine.resume(e1.id)

    assert e1.status == ExecutionStatus.COMPLETED
    assert [(m["subject"], m["body"]) for m in dispatcher.sent] == [("Welcome", "welcome"), ("Tips", "tips")]
    metrics = (await catalog.get(workflow.id)).metrics
    assert (metrics.total_entered, metrics.completed, metrics.active) == (1, 1, 0)


@pytest.mark.asyncio
async def test_welcome_series_survives_restart(tmp_path, clock):
    """Events arrive over a queue; a fresh process finishes the delay."""
    db_path = tmp_path / "crmflow.db"
    queue = InMemoryEventQueue(poll_interval=0.01)

    store = SQLiteDataStore(db_path)
    dispatcher = StoreChannelDispatcher(store)
    engine = WorkflowExecutionEngine(store, dispatcher, clock=clock)
    triggers = WorkflowTriggerService(store, engine)
    catalog = WorkflowCatalog(store, engine)

    workflow = await catalog.create(WELCOME_SERIES)
    await catalog.activate(workflow.id)
    contact = await store.create(CONTACTS, {"id": "C1", "email": "c1@example.com"})
    await EventPublisher(queue).publish(DomainEvent(type="contact_created", contact=contact))
    await EventConsumer(queue, triggers).start(lifespan=0.05)

    [execution] = await engine.list_executions(workflow_id=workflow.id)
    assert execution.status == ExecutionStatus.WAITING_DELAY
    assert [m["body"] for m in dispatcher.sent] == ["welcome"]
    store.close()

    restarted = SQLiteDataStore(db_path)
    dispatcher = StoreChannelDispatcher(restarted)
    engine = WorkflowExecutionEngine(restarted, dispatcher, clock=clock)
    scheduler = WorkflowScheduler(engine, WorkflowTriggerService(restarted, engine))

    clock.advance(days=2, seconds=1)
    assert await scheduler.tick_executions() == 1

    execution = await engine.get_execution(execution.id)
    assert execution.status == ExecutionStatus.COMPLETED
    assert [m["body"] for m in dispatcher.sent] == ["tips"]
    assert [s.status for s in await engine.list_steps(execution.id)] == ["completed", "completed", "completed"]
    restarted.close()
