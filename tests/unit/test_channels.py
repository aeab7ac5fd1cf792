import pytest

from crmflow.channels import RetryingDispatcher, StoreChannelDispatcher
from crmflow.contracts import ContactOperation
from crmflow.persistence import CONTACTS
from crmflow.utils import compute_backoff, retry_async


class FlakyDispatcher:
    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.calls = 0

    async def _next(self):
        self.calls += 1
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def send(self, channel, target, template, variables):
        return await self._next()

    async def mutate_contact(self, contact_id, operation):
        return await self._next()


def _retrying(inner, attempts=3):
    return RetryingDispatcher(inner, max_attempts=attempts, backoff_base=0, jitter=0)


@pytest.mark.asyncio
async def test_retrying_dispatcher_retries_until_success():
    inner = FlakyDispatcher([False, RuntimeError("timeout"), True])
    assert await _retrying(inner).send("email", "a@example.com", "hi", {}) is True
    assert inner.calls == 3


@pytest.mark.asyncio
async def test_retrying_dispatcher_gives_up():
    inner = FlakyDispatcher([False, False])
    assert await _retrying(inner, attempts=2).send("sms", "+1", "hi", {}) is False
    assert inner.calls == 2

    inner = FlakyDispatcher([False, RuntimeError("down")])
    with pytest.raises(RuntimeError):
        await _retrying(inner, attempts=2).mutate_contact(
            "contact-1", ContactOperation(type="add_tag", tag="vip")
        )


@pytest.mark.asyncio
async def test_store_dispatcher_records_messages(store):
    dispatcher = StoreChannelDispatcher(store)
    assert await dispatcher.send("email", "a@example.com", "body", {"subject": "Hi"})
    assert dispatcher.sent == [
        {"channel": "email", "target": "a@example.com", "body": "body", "subject": "Hi"}
    ]


@pytest.mark.asyncio
async def test_store_dispatcher_mutations(store, add_contact):
    dispatcher = StoreChannelDispatcher(store)
    await add_contact(tags=["vip"])

    assert await dispatcher.mutate_contact("contact-1", ContactOperation(type="add_tag", tag="vip"))
    assert await dispatcher.mutate_contact("contact-1", ContactOperation(type="add_tag", tag="new"))
    assert await dispatcher.mutate_contact(
        "contact-1", ContactOperation(type="set_field", field="plan", value="pro")
    )
    contact = await store.find_by_id(CONTACTS, "contact-1")
    assert contact["tags"] == ["vip", "new"]
    assert contact["custom_fields"] == {"plan": "pro"}

    assert not await dispatcher.mutate_contact(
        "missing", ContactOperation(type="move_stage", stage="won")
    )


def test_compute_backoff_grows_exponentially():
    assert compute_backoff(1, base=2, jitter=0) == 2
    assert compute_backoff(3, base=2, jitter=0) == 8
    assert 4 <= compute_backoff(2, base=2, jitter=0.5) <= 4.5


def test_compute_backoff_is_capped():
    assert compute_backoff(20, base=2, jitter=0, max_delay=30) == 30


@pytest.mark.asyncio
async def test_retry_async_stops_after_first_success():
    outcomes = [False, True, True]

    async def call():
        return outcomes.pop(0)

    assert await retry_async(call, "probe", 3, base=0, jitter=0) is True
    assert outcomes == [True]
