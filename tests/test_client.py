import pytest

from dvmpay.client import DVMClient
from dvmpay.errors import DecryptionError, NetworkError
from dvmpay.events import sign_event
from dvmpay.jobs import build_feedback_event, build_result_event, create_job_request
from dvmpay.schema import FeedbackStatus


def _encrypted_request(requester, dvm_keys, text="Summarize: hello world"):
    return create_job_request(
        5100,
        [(text, "text")],
        requester=requester,
        target_provider=dvm_keys.public_key,
        requires_encryption=True,
    )


@pytest.mark.asyncio
async def test_publish_failure_is_typed_and_retryable(relay, requester):
    client = DVMClient(relay)
    req = create_job_request(5050, [("x", "text")], requester=requester)
    relay.fail_with = "connection refused"
    with pytest.raises(NetworkError) as exc:
        await client.publish_job_request(req)
    assert exc.value.retryable
    relay.fail_with = None
    await client.publish_job_request(req)
    assert [e.id for e in relay.events] == [req.id]


@pytest.mark.asyncio
async def test_no_result_returns_none(relay, requester, dvm_keys):
    client = DVMClient(relay)
    assert await client.get_job_result("ab" * 32, dvm_keys.public_key, requester) is None


@pytest.mark.asyncio
@pytest.mark.parametrize("plaintext", ["Hello summary", "ünïcödé ✓", "line1\nline2", "x" * 3000])
async def test_encrypted_result_round_trip(relay, requester, dvm_keys, plaintext):
    client = DVMClient(relay)
    req = _encrypted_request(requester, dvm_keys)
    await client.publish_job_request(req)
    await relay.publish(build_result_event(dvm_keys, req.event, plaintext, encrypt=True))
    result = await client.get_job_result(req.id, dvm_keys.public_key, requester)
    assert result.content == plaintext
    assert result.encrypted and result.decrypted
    assert result.job_request_id == req.id


@pytest.mark.asyncio
async def test_most_recent_result_wins_regardless_of_arrival(relay, requester, dvm_keys):
    client = DVMClient(relay)
    req = create_job_request(5050, [("x", "text")], requester=requester)
    newer = build_result_event(dvm_keys, req.event, "newer", created_at=2000)
    older = build_result_event(dvm_keys, req.event, "older", created_at=1000)
    await relay.publish(newer)
    await relay.publish(older)
    result = await client.get_job_result(req.id, dvm_keys.public_key)
    assert result.content == "newer"


@pytest.mark.asyncio
async def test_corrupt_encrypted_result_is_not_reported_as_missing(relay, requester, dvm_keys):
    client = DVMClient(relay)
    req = _encrypted_request(requester, dvm_keys)
    corrupt = sign_event(dvm_keys, 6100, [["e", req.id], ["p", requester.public_key], ["encrypted"]], "garbage?iv=AAAA")
    await relay.publish(corrupt)
    with pytest.raises(DecryptionError):
        await client.get_job_result(req.id, dvm_keys.public_key, requester)


@pytest.mark.asyncio
async def test_encrypted_result_without_key_is_returned_raw(relay, requester, dvm_keys):
    client = DVMClient(relay)
    req = _encrypted_request(requester, dvm_keys)
    ev = build_result_event(dvm_keys, req.event, "secret", encrypt=True)
    await relay.publish(ev)
    result = await client.get_job_result(req.id, dvm_keys.public_key)
    assert result.content == ev.content
    assert result.encrypted and not result.decrypted


@pytest.mark.asyncio
async def test_results_from_other_authors_are_ignored(relay, requester, dvm_keys):
    from dvmpay.keys import Keypair

    client = DVMClient(relay)
    req = create_job_request(5050, [("x", "text")], requester=requester)
    await relay.publish(build_result_event(Keypair.generate(), req.event, "impostor", created_at=5000))
    await relay.publish(build_result_event(dvm_keys, req.event, "genuine", created_at=1000))
    result = await client.get_job_result(req.id, dvm_keys.public_key)
    assert result.content == "genuine"


@pytest.mark.asyncio
async def test_malformed_side_channel_is_dropped(relay, requester, dvm_keys):
    client = DVMClient(relay)
    req = create_job_request(5050, [("x", "text")], requester=requester)
    ev = sign_event(
        dvm_keys, 6050, [["e", req.id], ["amount", "NaN"], ["request", "{not json"]], "fine"
    )
    await relay.publish(ev)
    result = await client.get_job_result(req.id, dvm_keys.public_key)
    assert result.content == "fine"
    assert result.amount_msats is None and result.request is None


@pytest.mark.asyncio
async def test_list_job_feedback_newest_first(relay, requester, dvm_keys):
    client = DVMClient(relay)
    req = _encrypted_request(requester, dvm_keys)
    await relay.publish(build_feedback_event(dvm_keys, req.event, FeedbackStatus.PROCESSING, created_at=100))
    await relay.publish(
        build_feedback_event(dvm_keys, req.event, FeedbackStatus.PARTIAL, content="Hel", encrypt=True, created_at=200)
    )
    feedback = await client.list_job_feedback(req.id, dvm_keys.public_key, requester)
    assert [f.status for f in feedback] == [FeedbackStatus.PARTIAL, FeedbackStatus.PROCESSING]
    assert feedback[0].content == "Hel"
