"""Run the welcome series end to end against the in-memory store."""

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path

import yaml

from crmflow import (
    StoreChannelDispatcher,
    WorkflowCatalog,
    WorkflowExecutionEngine,
    WorkflowTriggerService,
)
from crmflow.persistence import CONTACTS, InMemoryDataStore


async def main():
    """Create a contact, fire the trigger and fast-forward past the delay."""
    now = datetime.now(timezone.utc)
    clock = {"now": now}

    store = InMemoryDataStore()
    dispatcher = StoreChannelDispatcher(store)
    engine = WorkflowExecutionEngine(store, dispatcher, clock=lambda: clock["now"])
    catalog = WorkflowCatalog(store, engine)
    triggers = WorkflowTriggerService(store, engine)

    definition = yaml.safe_load((Path(__file__).parent / "welcome_series.yaml").read_text())
    workflow = await catalog.create(definition)
    await catalog.activate(workflow.id)

    contact = await store.create(
        CONTACTS,
        {
            "id": "contact-1",
            "first_name": "Ada",
            "email": "ada@example.com",
            "phone": "+15550100",
            "deal_stage": "lead",
        },
    )
    [execution] = await triggers.on_contact_created(contact)
    print(f"Execution {execution.id}: {execution.status.value} until {execution.resume_at}")

    clock["now"] = now + timedelta(days=1, minutes=1)
    await engine.process_due_executions()

    execution = await engine.get_execution(execution.id)
    print(f"Execution {execution.id}: {execution.status.value}")
    for message in dispatcher.sent:
        print(f"  {message['channel']} -> {message['target']}: {message['body']}")
    print(f"Tags now: {(await store.find_by_id(CONTACTS, 'contact-1'))['tags']}")


if __name__ == "__main__":
    asyncio.run(main())
