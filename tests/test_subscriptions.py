import asyncio

import pytest

from dvmpay.client import DVMClient
from dvmpay.events import Event, sign_event
from dvmpay.jobs import build_feedback_event, build_result_event, create_job_request
from dvmpay.schema import FeedbackStatus, JobFeedback, JobResult
from dvmpay.subscriptions import JobSubscriptions, SubscriptionHandle


async def _settle():
    for _ in range(5):
        await asyncio.sleep(0)


def _request(requester, dvm_keys, encrypted=False):
    return create_job_request(
        5050,
        [("x", "text")],
        requester=requester,
        target_provider=dvm_keys.public_key,
        requires_encryption=encrypted,
    )


@pytest.mark.asyncio
async def test_updates_are_classified_and_decrypted(relay, requester, dvm_keys):
    client = DVMClient(relay)
    req = _request(requester, dvm_keys, encrypted=True)
    updates = []
    await client.subscribe_to_job_updates(req.id, dvm_keys.public_key, requester, updates.append)
    await relay.publish(build_feedback_event(dvm_keys, req.event, FeedbackStatus.PARTIAL, content="Hel", encrypt=True))
    await relay.publish(build_result_event(dvm_keys, req.event, "Hello", encrypt=True, amount_msats=2000))
    await _settle()
    assert isinstance(updates[0], JobFeedback) and updates[0].content == "Hel"
    assert isinstance(updates[1], JobResult) and updates[1].content == "Hello"
    assert updates[1].amount_msats == 2000


@pytest.mark.asyncio
async def test_undecryptable_event_is_dropped_and_subscription_continues(relay, requester, dvm_keys):
    client = DVMClient(relay)
    req = _request(requester, dvm_keys, encrypted=True)
    updates = []
    await client.subscribe_to_job_updates(req.id, dvm_keys.public_key, requester, updates.append)
    broken = sign_event(
        dvm_keys, 7000, [["e", req.id], ["p", requester.public_key], ["status", "partial"], ["encrypted"]], "junk?iv=xx"
    )
    await relay.publish(broken)
    await relay.publish(build_feedback_event(dvm_keys, req.event, FeedbackStatus.PARTIAL, content="ok", encrypt=True))
    await _settle()
    assert [u.content for u in updates] == ["ok"]


@pytest.mark.asyncio
async def test_duplicates_and_forgeries_are_dropped(relay, requester, dvm_keys):
    client = DVMClient(relay)
    req = _request(requester, dvm_keys)
    updates = []
    await client.subscribe_to_job_updates(req.id, dvm_keys.public_key, None, updates.append)
    ev = build_feedback_event(dvm_keys, req.event, FeedbackStatus.PROCESSING)
    await relay.publish(ev)
    relay.redeliver(ev)
    forged = Event(**{**ev.model_dump(), "id": "00" * 32})
    relay.redeliver(forged)
    await _settle()
    assert [u.id for u in updates] == [ev.id]


@pytest.mark.asyncio
async def test_cancel_is_idempotent(relay, requester, dvm_keys):
    client = DVMClient(relay)
    req = _request(requester, dvm_keys)
    updates = []
    cancel = await client.subscribe_to_job_updates(req.id, dvm_keys.public_key, None, updates.append)
    assert req.id in client.subscriptions
    cancel()
    cancel()
    assert relay.close_count == 1
    assert req.id not in client.subscriptions
    await relay.publish(build_feedback_event(dvm_keys, req.event, FeedbackStatus.PROCESSING))
    await _settle()
    assert updates == []


def test_handle_teardown_happens_once_even_if_cancelled_before_attach():
    closes = []
    handle = SubscriptionHandle("job", None, None, lambda u: None)
    handle.cancel()
    handle.attach(lambda: closes.append(1))
    handle.cancel()
    assert closes == [1]
    assert handle.teardown_count == 1


class _BatchTransport:
    """Delivers every event to every subscriber, like a relay ignoring filters."""

    def __init__(self):
        self.callbacks = []
        self.closers = []

    async def subscribe(self, filters, on_event, relays=None, on_closed=None):
        self.callbacks.append(on_event)
        self.closers.append(on_closed)
        return lambda: None

    def deliver(self, events):
        for cb in self.callbacks:
            for ev in events:
                cb(ev)


@pytest.mark.asyncio
async def test_jobs_never_cross_deliver_within_one_batch(requester, dvm_keys):
    transport = _BatchTransport()
    subs = JobSubscriptions(transport)
    job_a = _request(requester, dvm_keys)
    job_b = _request(requester, dvm_keys)
    got_a, got_b = [], []
    await subs.subscribe(job_a.id, dvm_keys.public_key, None, got_a.append)
    await subs.subscribe(job_b.id, dvm_keys.public_key, None, got_b.append)
    batch = [
        build_feedback_event(dvm_keys, job_a.event, FeedbackStatus.PARTIAL, content="A1"),
        build_feedback_event(dvm_keys, job_b.event, FeedbackStatus.PARTIAL, content="B1"),
        build_feedback_event(dvm_keys, job_a.event, FeedbackStatus.PARTIAL, content="A2"),
        build_result_event(dvm_keys, job_b.event, "B-done"),
    ]
    transport.deliver(batch)
    assert [u.content for u in got_a] == ["A1", "A2"]
    assert [u.content for u in got_b] == ["B1", "B-done"]
    assert sorted(subs.active_jobs) == sorted([job_a.id, job_b.id])
    subs.cancel_all()
    assert subs.active_jobs == []


@pytest.mark.asyncio
async def test_failing_callback_does_not_affect_other_jobs(requester, dvm_keys):
    transport = _BatchTransport()
    subs = JobSubscriptions(transport)
    job_a = _request(requester, dvm_keys)
    job_b = _request(requester, dvm_keys)
    got_b = []

    def broken(update):
        raise RuntimeError("consumer bug")

    await subs.subscribe(job_a.id, dvm_keys.public_key, None, broken)
    await subs.subscribe(job_b.id, dvm_keys.public_key, None, got_b.append)
    transport.deliver(
        [
            build_feedback_event(dvm_keys, job_a.event, FeedbackStatus.PARTIAL, content="A1"),
            build_feedback_event(dvm_keys, job_b.event, FeedbackStatus.PARTIAL, content="B1"),
        ]
    )
    assert [u.content for u in got_b] == ["B1"]
    assert job_a.id in subs


@pytest.mark.asyncio
async def test_relay_side_close_tears_down_and_notifies_once(requester, dvm_keys):
    transport = _BatchTransport()
    subs = JobSubscriptions(transport)
    job = _request(requester, dvm_keys)
    reasons = []
    await subs.subscribe(job.id, dvm_keys.public_key, None, lambda u: None, on_closed=reasons.append)
    transport.closers[0]("wss://relay.example: connection closed")
    transport.closers[0]("wss://relay.example: connection closed")
    assert reasons == ["wss://relay.example: connection closed"]
    assert job.id not in subs
