import asyncio

import pytest
from fastapi.testclient import TestClient

from dvmpay.jobs import build_feedback_event, build_result_event, create_job_request
from dvmpay.keys import Keypair
from dvmpay.provider import DVMProvider, create_app
from dvmpay.schema import FeedbackStatus
from dvmpay.transport.memory import MemoryRelay
from tests.conftest import EchoModel, FakeWallet


@pytest.fixture
def setup():
    relay = MemoryRelay()
    keys = Keypair.generate()
    provider = DVMProvider(keys, relay, FakeWallet(), EchoModel())
    requester = Keypair.generate()
    events = []
    for i in range(3):
        request = create_job_request(
            5050, [(f"job {i}", "text")], requester=requester, target_provider=keys.public_key, created_at=1_700_000_000 + i
        ).event
        events.append(build_feedback_event(keys, request, FeedbackStatus.PAYMENT_REQUIRED, amount_msats=10000, invoice="lnbc100n1pabc", created_at=request.created_at))
        if i < 2:
            events.append(build_feedback_event(keys, request, FeedbackStatus.PROCESSING, created_at=request.created_at + 1))
            events.append(build_result_event(keys, request, f"out {i}", created_at=request.created_at + 2))

    async def load():
        for ev in events:
            await relay.publish(ev)

    asyncio.run(load())
    return relay, provider, TestClient(create_app(provider))


def test_health(setup):
    _, provider, client = setup
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok", "pubkey": provider.pubkey, "listening": False}


def test_jobs_paginates_and_filters(setup):
    _, _, client = setup
    body = client.get("/jobs", params={"page": 1, "page_size": 2}).json()
    assert body["total_count"] == 3
    assert len(body["entries"]) == 2
    assert body["page_size"] == 2

    pending = client.get("/jobs", params={"status": "pending_payment"}).json()
    assert pending["total_count"] == 1
    assert pending["entries"][0]["status"] == "pending_payment"


def test_jobs_rejects_bad_query(setup):
    _, _, client = setup
    assert client.get("/jobs", params={"page": 0}).status_code == 422
    assert client.get("/jobs", params={"page_size": 500}).status_code == 422
    assert client.get("/jobs", params={"status": "lost"}).status_code == 422


def test_stats(setup):
    _, _, client = setup
    body = client.get("/stats").json()
    assert body["total_jobs_processed"] == 3
    assert body["total_successful"] == 2
    assert body["total_revenue_sats"] == 20
    assert body["jobs_pending_payment"] == 1


def test_relay_outage_is_503(setup):
    relay, _, client = setup
    relay.fail_with = "down"
    assert client.get("/stats").status_code == 503
    assert client.get("/jobs").status_code == 503
