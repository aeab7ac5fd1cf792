"""Tests for the workflow execution state machine."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from crmflow.channels import StoreChannelDispatcher
from crmflow.contracts import ExecutionStatus
from crmflow.persistence import CONTACTS, RUN_CLAIMS, WORKFLOWS

THREE_STEP = [
    {"id": "a", "kind": "action", "channel": "email", "subject": "Hello", "template": "A for {{ contact.first_name }}"},
    {"id": "wait", "kind": "delay", "duration": 2, "unit": "days"},
    {"id": "b", "kind": "action", "channel": "email", "template": "B"},
]


async def _start(engine, make_workflow, add_contact, steps, **contact_fields):
    workflow = await make_workflow(steps)
    contact = await add_contact(**contact_fields)
    return workflow, await engine.start(workflow, contact, {"type": "contact_created"})


@pytest.mark.asyncio
async def test_steps_run_in_order_and_pause_on_delay(engine, dispatcher, clock, make_workflow, add_contact):
    _, execution = await _start(engine, make_workflow, add_contact, THREE_STEP)

    assert execution.status == ExecutionStatus.WAITING_DELAY
    assert execution.current_step_id == "wait"
    assert execution.resume_at == clock.now + timedelta(days=2)
    assert [m["body"] for m in dispatcher.sent] == ["A for Ada"]
    assert dispatcher.sent[0]["target"] == "contact-1@example.com"
    assert dispatcher.sent[0]["subject"] == "Hello"

    clock.advance(days=2)
    execution = await engine.resume(execution.id)

    assert execution.status == ExecutionStatus.COMPLETED
    assert execution.completed_at == clock.now
    assert execution.resume_at is None
    assert [m["body"] for m in dispatcher.sent] == ["A for Ada", "B"]


@pytest.mark.asyncio
async def test_resume_before_due_is_a_noop(engine, dispatcher, clock, make_workflow, add_contact):
    _, execution = await _start(engine, make_workflow, add_contact, THREE_STEP)

    clock.advance(days=1, hours=23)
    early = await engine.resume(execution.id)

    assert early.status == ExecutionStatus.WAITING_DELAY
    assert early.current_step_id == "wait"
    assert early.version == execution.version
    assert len(dispatcher.sent) == 1


@pytest.mark.asyncio
async def test_resume_on_terminal_executions_is_a_noop(engine, dispatcher, clock, make_workflow, add_contact):
    _, done = await _start(engine, make_workflow, add_contact, [THREE_STEP[0]])
    assert done.status == ExecutionStatus.COMPLETED

    _, waiting = await _start(
        engine, make_workflow, add_contact, THREE_STEP, contact_id="contact-2"
    )
    cancelled = await engine.cancel(waiting.id)
    assert cancelled.status == ExecutionStatus.CANCELLED

    dispatcher.fail_channels.add("email")
    _, failed = await _start(engine, make_workflow, add_contact, THREE_STEP, contact_id="contact-3")
    assert failed.status == ExecutionStatus.FAILED

    clock.advance(days=3)
    sent_before = len(dispatcher.sent)
    for execution in (done, cancelled, failed):
        again = await engine.resume(execution.id)
        assert again.status == execution.status
        assert again.version == execution.version
    assert len(dispatcher.sent) == sent_before
    assert await engine.resume("missing") is None


@pytest.mark.asyncio
@pytest.mark.parametrize("stage, expected", [("lead", "T"), ("customer", "F")])
async def test_condition_picks_one_branch(engine, dispatcher, make_workflow, add_contact, stage, expected):
    steps = [
        {"id": "check", "kind": "condition", "field": "contact.deal_stage", "op": "eq", "value": "lead", "true_next": "t", "false_next": "f"},
        {"id": "t", "kind": "action", "channel": "sms", "template": "T", "next": "end"},
        {"id": "f", "kind": "action", "channel": "sms", "template": "F"},
    ]
    _, execution = await _start(engine, make_workflow, add_contact, steps, deal_stage=stage)

    assert execution.status == ExecutionStatus.COMPLETED
    assert [m["body"] for m in dispatcher.sent] == [expected]
    assert dispatcher.sent[0]["target"] == "+15550100"


@pytest.mark.asyncio
async def test_condition_sees_contact_changes_made_by_earlier_steps(engine, dispatcher, store, make_workflow, add_contact):
    steps = [
        {"id": "tag", "kind": "action", "channel": "add_tag", "config": {"tag": "{{ trigger.type }}"}},
        {"id": "check", "kind": "condition", "field": "contact.tags", "op": "contains", "value": "contact_created", "true_next": "mail"},
        {"id": "mail", "kind": "action", "channel": "email", "template": "tagged"},
    ]
    _, execution = await _start(engine, make_workflow, add_contact, steps)

    assert execution.status == ExecutionStatus.COMPLETED
    assert (await store.find_by_id(CONTACTS, "contact-1"))["tags"] == ["contact_created"]
    assert [m["body"] for m in dispatcher.sent] == ["tagged"]


@pytest.mark.asyncio
async def test_contact_operations_update_the_contact(engine, store, make_workflow, add_contact):
    steps = [
        {"kind": "action", "channel": "set_field", "config": {"field": "source", "value": "webinar"}},
        {"kind": "action", "channel": "move_stage", "config": {"stage": "qualified"}},
        {"kind": "action", "channel": "remove_tag", "config": {"tag": "cold"}},
    ]
    _, execution = await _start(engine, make_workflow, add_contact, steps, tags=["cold", "vip"])

    assert execution.status == ExecutionStatus.COMPLETED
    contact = await store.find_by_id(CONTACTS, "contact-1")
    assert contact["custom_fields"] == {"source": "webinar"}
    assert contact["deal_stage"] == "qualified"
    assert contact["tags"] == ["vip"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "step, contact_fields, message",
    [
        ({"kind": "action", "channel": "email", "template": "{{ contact.nickname }}"}, {}, "cannot render"),
        ({"kind": "action", "channel": "whatsapp", "template": "hi"}, {"phone": None}, "whatsapp_number or phone"),
        ({"kind": "action", "channel": "add_tag", "config": {}}, {}, "needs a 'tag'"),
        ({"kind": "condition", "field": "contact.custom_fields.plan", "value": "pro"}, {}, "not available"),
    ],
)
async def test_step_errors_fail_the_execution(engine, store, make_workflow, add_contact, step, contact_fields, message):
    workflow, execution = await _start(engine, make_workflow, add_contact, [step], **contact_fields)

    assert execution.status == ExecutionStatus.FAILED
    assert message in execution.error_message
    assert execution.completed_at is not None

    [record] = await engine.list_steps(execution.id)
    assert record.status == "failed"
    assert message in record.error_message

    metrics = (await store.find_by_id(WORKFLOWS, workflow["id"]))["metrics"]
    assert metrics == {"total_entered": 1, "completed": 0, "active": 0, "dropped": 1}


@pytest.mark.asyncio
async def test_dispatcher_rejection_and_exception_fail_the_execution(engine, dispatcher, make_workflow, add_contact):
    dispatcher.fail_channels.add("sms")
    dispatcher.raise_channels.add("whatsapp")

    _, rejected = await _start(
        engine, make_workflow, add_contact, [{"kind": "action", "channel": "sms", "template": "x"}]
    )
    _, raised = await _start(
        engine,
        make_workflow,
        add_contact,
        [{"kind": "action", "channel": "whatsapp", "template": "x"}],
        contact_id="contact-2",
    )

    assert rejected.status == ExecutionStatus.FAILED
    assert "not delivered" in rejected.error_message
    assert raised.status == ExecutionStatus.FAILED
    assert "provider unavailable" in raised.error_message


@pytest.mark.asyncio
async def test_start_is_skipped_for_inactive_workflow_or_running_contact(engine, make_workflow, add_contact):
    paused = await make_workflow(THREE_STEP, status="paused")
    contact = await add_contact()
    assert await engine.start(paused, contact) is None

    active = await make_workflow(THREE_STEP)
    first = await engine.start(active, contact)
    assert first.status == ExecutionStatus.WAITING_DELAY
    assert await engine.start(active, contact) is None
    assert len(await engine.list_executions(workflow_id=active["id"])) == 1

    await engine.cancel(first.id)
    second = await engine.start(active, contact)
    assert second is not None and second.id != first.id


@pytest.mark.asyncio
async def test_execution_keeps_steps_it_started_with(engine, catalog, dispatcher, clock, make_workflow, add_contact):
    workflow, execution = await _start(engine, make_workflow, add_contact, THREE_STEP)

    await catalog.update(
        workflow["id"],
        {"steps": [THREE_STEP[0], THREE_STEP[1], {"id": "b", "kind": "action", "channel": "email", "template": "B2"}]},
    )
    clock.advance(days=2)
    execution = await engine.resume(execution.id)

    assert execution.status == ExecutionStatus.COMPLETED
    assert dispatcher.sent[-1]["body"] == "B"


@pytest.mark.asyncio
async def test_relative_delay_uses_contact_field(engine, clock, make_workflow, add_contact):
    renewal = datetime(2024, 6, 1, tzinfo=timezone.utc)
    steps = [
        {"kind": "delay", "duration": 1, "unit": "weeks", "relative_to": "custom_fields.renewal"},
        {"kind": "action", "channel": "email", "template": "renew"},
    ]
    _, execution = await _start(
        engine, make_workflow, add_contact, steps, custom_fields={"renewal": renewal.isoformat()}
    )
    assert execution.resume_at == renewal + timedelta(weeks=1)

    _, broken = await _start(engine, make_workflow, add_contact, steps, contact_id="contact-2")
    assert broken.status == ExecutionStatus.FAILED
    assert "custom_fields.renewal" in broken.error_message


@pytest.mark.asyncio
async def test_cancel_closes_waiting_step(engine, make_workflow, add_contact):
    _, execution = await _start(engine, make_workflow, add_contact, THREE_STEP)

    cancelled = await engine.cancel(execution.id, "unsubscribed")

    assert cancelled.status == ExecutionStatus.CANCELLED
    assert cancelled.error_message == "unsubscribed"
    assert cancelled.resume_at is None
    statuses = {r.step_id: r.status for r in await engine.list_steps(execution.id)}
    assert statuses == {"a": "completed", "wait": "cancelled"}
    assert await engine.cancel("missing") is None


@pytest.mark.asyncio
async def test_cancel_during_a_step_stops_further_steps(store, clock, make_workflow, add_contact):
    from crmflow.engine import WorkflowExecutionEngine

    class CancellingDispatcher(StoreChannelDispatcher):
        async def send(self, channel, target, template, variables):
            await engine.cancel_for_contact(variables["contact"]["id"], "unsubscribed")
            return await super().send(channel, target, template, variables)

    dispatcher = CancellingDispatcher(store)
    engine = WorkflowExecutionEngine(store, dispatcher, clock=clock)
    steps = [
        {"kind": "action", "channel": "email", "template": "first"},
        {"kind": "action", "channel": "email", "template": "second"},
    ]
    _, execution = await _start(engine, make_workflow, add_contact, steps)

    assert execution.status == ExecutionStatus.CANCELLED
    assert [m["body"] for m in dispatcher.sent] == ["first"]


@pytest.mark.asyncio
async def test_deleted_contact_cancels_on_next_step(engine, store, clock, make_workflow, add_contact):
    _, execution = await _start(engine, make_workflow, add_contact, THREE_STEP)
    store._collections[CONTACTS].pop("contact-1")

    clock.advance(days=2)
    execution = await engine.resume(execution.id)

    assert execution.status == ExecutionStatus.CANCELLED
    assert execution.error_message == "contact no longer exists"


@pytest.mark.asyncio
async def test_archived_workflow_cancels_waiting_execution_on_resume(engine, store, clock, make_workflow, add_contact):
    workflow, execution = await _start(engine, make_workflow, add_contact, THREE_STEP)
    await store.update(WORKFLOWS, workflow["id"], {"status": "archived"})

    clock.advance(days=2)
    execution = await engine.resume(execution.id)

    assert execution.status == ExecutionStatus.CANCELLED
    assert execution.error_message == "workflow archived"


@pytest.mark.asyncio
async def test_process_due_executions_resumes_only_due_runs(engine, dispatcher, clock, make_workflow, add_contact):
    _, first = await _start(engine, make_workflow, add_contact, THREE_STEP)
    clock.advance(days=1)
    _, second = await _start(engine, make_workflow, add_contact, THREE_STEP, contact_id="contact-2")

    clock.advance(days=1)
    assert await engine.process_due_executions() == 1
    assert (await engine.get_execution(first.id)).status == ExecutionStatus.COMPLETED
    assert (await engine.get_execution(second.id)).status == ExecutionStatus.WAITING_DELAY

    clock.advance(days=1)
    assert await engine.process_due_executions() == 1
    assert await engine.process_due_executions() == 0


@pytest.mark.asyncio
async def test_zero_delay_still_waits_for_the_scheduler(engine, dispatcher, make_workflow, add_contact):
    steps = [
        {"kind": "delay", "duration": 0},
        {"kind": "action", "channel": "email", "template": "later"},
    ]
    _, execution = await _start(engine, make_workflow, add_contact, steps)
    assert execution.status == ExecutionStatus.WAITING_DELAY
    assert dispatcher.sent == []

    assert await engine.process_due_executions() == 1
    assert (await engine.get_execution(execution.id)).status == ExecutionStatus.COMPLETED


@pytest.mark.asyncio
async def test_metrics_track_entered_active_and_completed(engine, store, clock, make_workflow, add_contact):
    workflow, execution = await _start(engine, make_workflow, add_contact, THREE_STEP)
    metrics = (await store.find_by_id(WORKFLOWS, workflow["id"]))["metrics"]
    assert metrics == {"total_entered": 1, "completed": 0, "active": 1, "dropped": 0}

    clock.advance(days=2)
    await engine.resume(execution.id)
    metrics = (await store.find_by_id(WORKFLOWS, workflow["id"]))["metrics"]
    assert metrics == {"total_entered": 1, "completed": 1, "active": 0, "dropped": 0}


@pytest.mark.asyncio
async def test_context_and_step_history(engine, dispatcher, make_workflow, add_contact):
    workflow, execution = await _start(engine, make_workflow, add_contact, THREE_STEP)

    assert execution.context["trigger"] == {"type": "contact_created"}
    assert execution.context["workflow"] == {"id": workflow["id"], "name": "test-workflow"}
    assert execution.context["contact"]["first_name"] == "Ada"
    assert dispatcher.variables[0]["subject"] == "Hello"

    steps = await engine.list_steps(execution.id)
    assert [(s.step_id, s.kind, s.status) for s in steps] == [
        ("a", "action", "completed"),
        ("wait", "delay", "waiting"),
    ]
    assert set(steps[1].output_data) == {"resume_at"}

    listed = await engine.list_executions(contact_id="contact-1", status="waiting_delay")
    assert [e.id for e in listed] == [execution.id]


@pytest.mark.asyncio
async def test_workflow_without_steps_completes_immediately(engine, make_workflow, add_contact):
    _, execution = await _start(engine, make_workflow, add_contact, [])
    assert execution.status == ExecutionStatus.COMPLETED
    assert execution.current_step_id is None


@pytest.mark.asyncio
async def test_concurrent_starts_for_one_contact_create_one_run(engine, dispatcher, make_workflow, add_contact):
    workflow = await make_workflow(THREE_STEP)
    contact = await add_contact()

    results = await asyncio.gather(*(engine.start(workflow, contact) for _ in range(5)))

    assert len([r for r in results if r is not None]) == 1
    assert len(await engine.list_executions(workflow_id=workflow["id"])) == 1
    assert [m["body"] for m in dispatcher.sent] == ["A for Ada"]


@pytest.mark.asyncio
async def test_run_claims_are_released_when_runs_end(engine, store, make_workflow, add_contact):
    one_shot = await make_workflow([THREE_STEP[0]])
    for n in range(5):
        contact = await add_contact(f"contact-{n}")
        assert (await engine.start(one_shot, contact)).status == ExecutionStatus.COMPLETED
    assert await store.find_many(RUN_CLAIMS) == []

    waiting = await engine.start(await make_workflow(THREE_STEP), contact)
    [claim] = await store.find_many(RUN_CLAIMS)
    assert claim["execution_id"] == waiting.id

    await engine.cancel(waiting.id)
    assert await store.find_many(RUN_CLAIMS) == []


@pytest.mark.asyncio
async def test_abandoned_claim_is_taken_over(engine, store, clock, make_workflow, add_contact):
    workflow = await make_workflow(THREE_STEP)
    contact = await add_contact()
    await store.create(
        RUN_CLAIMS,
        {
            "id": f"{workflow['id']}:contact-1",
            "execution_id": "never-created",
            "claimed_at": clock.now.isoformat(),
        },
    )

    assert await engine.start(workflow, contact) is None

    clock.advance(minutes=10)
    execution = await engine.start(workflow, contact)
    assert execution is not None
    assert (await store.find_many(RUN_CLAIMS))[0]["execution_id"] == execution.id


@pytest.mark.asyncio
async def test_claim_of_finished_run_does_not_block_new_runs(engine, store, make_workflow, add_contact):
    workflow = await make_workflow([THREE_STEP[0]])
    contact = await add_contact()
    first = await engine.start(workflow, contact)
    await store.create(
        RUN_CLAIMS,
        {"id": f"{workflow['id']}:contact-1", "execution_id": first.id, "claimed_at": first.started_at.isoformat()},
    )

    second = await engine.start(workflow, contact)

    assert second is not None and second.status == ExecutionStatus.COMPLETED


@pytest.mark.asyncio
async def test_run_started_from_outdated_definition_stops_once_archived(engine, catalog, dispatcher, make_workflow, add_contact):
    workflow = await make_workflow(THREE_STEP)
    contact = await add_contact()
    await catalog.archive(workflow["id"])

    execution = await engine.start(workflow, contact)

    assert execution.status == ExecutionStatus.CANCELLED
    assert execution.error_message == "workflow archived"
    assert dispatcher.sent == []
