from dvmpay.jobs import build_feedback_event, build_result_event, create_job_request
from dvmpay.keys import Keypair
from dvmpay.provider.history import INVOICE_EXPIRED, JobHistory, completion_info
from dvmpay.schema import FeedbackStatus, JobHistoryStatus

T0 = 1_700_000_000


def _request(requester, provider, text="hello", encrypt=False, at=T0):
    return create_job_request(
        5050,
        [(text, "text")],
        requester=requester,
        target_provider=provider.public_key,
        requires_encryption=encrypt,
        created_at=at,
    ).event


def _job(provider, request, *steps):
    """Build the provider's events for one job; steps are (offset, status or 'result', extra)."""
    events = []
    for offset, status, extra in steps:
        at = request.created_at + offset
        if status == "result":
            events.append(build_result_event(provider, request, extra, created_at=at))
        elif status is FeedbackStatus.PAYMENT_REQUIRED:
            events.append(
                build_feedback_event(provider, request, status, extra, amount_msats=10000, invoice="lnbc100n1pabc", created_at=at)
            )
        else:
            events.append(build_feedback_event(provider, request, status, extra, created_at=at))
    return events


def _history(provider, events):
    return JobHistory.from_events(events, provider.public_key)


def test_status_projection_covers_every_state():
    provider, requester = Keypair.generate(), Keypair.generate()
    pay = (0, FeedbackStatus.PAYMENT_REQUIRED, "Pay 10 sats")
    jobs = {
        JobHistoryStatus.PENDING_PAYMENT: [pay],
        JobHistoryStatus.PAID: [pay, (1, FeedbackStatus.PROCESSING, None)],
        JobHistoryStatus.PROCESSING: [pay, (1, FeedbackStatus.PROCESSING, None), (2, FeedbackStatus.PARTIAL, None)],
        JobHistoryStatus.COMPLETED: [pay, (1, FeedbackStatus.PROCESSING, None), (3, "result", "done")],
        JobHistoryStatus.CANCELLED: [pay, (5, FeedbackStatus.ERROR, INVOICE_EXPIRED)],
        JobHistoryStatus.ERROR: [(0, FeedbackStatus.ERROR, "No text input provided")],
    }
    events = []
    for i, (expected, steps) in enumerate(jobs.items()):
        request = _request(requester, provider, text=expected.value, at=T0 + i * 10)
        events += _job(provider, request, *steps)

    history = _history(provider, events)
    assert sorted(e.status.value for e in history.entries) == sorted(s.value for s in jobs)
    for status in jobs:
        assert history.page(status=status).total_count == 1


def test_completed_entry_details():
    provider, requester = Keypair.generate(), Keypair.generate()
    request = _request(requester, provider, text="Summarize this")
    events = _job(
        provider,
        request,
        (0, FeedbackStatus.PAYMENT_REQUIRED, None),
        (2, FeedbackStatus.PROCESSING, None),
        (5, "result", "A summary"),
        (5, FeedbackStatus.SUCCESS, "Job completed"),
    )
    entry = _history(provider, events).entries[0]
    assert entry.id == request.id
    assert entry.requester_pubkey == requester.public_key
    assert entry.kind == 5050
    assert entry.timestamp == T0 * 1000
    assert entry.input_summary == "Summarize this"
    assert entry.result_summary == "A summary"
    assert entry.invoice_amount_sats == 10
    assert entry.payment_received_sats == 10
    assert entry.processing_time_ms == 3000
    assert entry.model_used is None
    assert entry.tokens_processed is None


def test_encrypted_result_is_not_summarized():
    provider, requester = Keypair.generate(), Keypair.generate()
    request = _request(requester, provider, encrypt=True)
    result = build_result_event(provider, request, "secret", encrypt=True, created_at=T0 + 1)
    entry = _history(provider, [result]).entries[0]
    assert entry.result_summary == "(encrypted)"
    assert entry.input_summary is None


def test_other_authors_are_ignored():
    provider, requester, stranger = Keypair.generate(), Keypair.generate(), Keypair.generate()
    request = _request(requester, provider)
    forged = build_feedback_event(stranger, request, FeedbackStatus.SUCCESS, created_at=T0)
    assert _history(provider, [forged]).entries == []


def test_pagination_newest_first_and_statistics():
    provider, requester = Keypair.generate(), Keypair.generate()
    events = []
    for i in range(5):
        request = _request(requester, provider, text=f"job {i}", at=T0 + i * 60)
        events += _job(
            provider,
            request,
            (0, FeedbackStatus.PAYMENT_REQUIRED, None),
            (1, FeedbackStatus.PROCESSING, None),
            (3, "result", f"out {i}"),
        )
    failed = _request(requester, provider, text="bad", at=T0 + 1000)
    events += _job(provider, failed, (0, FeedbackStatus.ERROR, "Generation failed"))

    history = _history(provider, events)
    first = history.page(page=1, page_size=2)
    assert first.total_count == 6
    assert [e.input_summary for e in first.entries] == [None, "job 4"]
    assert [e.input_summary for e in history.page(page=3, page_size=2).entries] == ["job 1", "job 0"]
    assert history.page(page=4, page_size=2).entries == []

    stats = history.statistics()
    assert stats.total_jobs_processed == 6
    assert stats.total_successful == 5
    assert stats.total_failed == 1
    assert stats.total_revenue_sats == 50
    assert stats.jobs_pending_payment == 0
    assert stats.average_processing_time_ms == 2000


def test_requests_supply_kind_and_input_before_any_result():
    provider, requester = Keypair.generate(), Keypair.generate()
    pending = _request(requester, provider, text="Translate this", at=T0)
    failed = _request(requester, provider, text="Broken job", at=T0 + 10)
    secret = _request(requester, provider, encrypt=True, at=T0 + 20)
    events = (
        _job(provider, pending, (0, FeedbackStatus.PAYMENT_REQUIRED, None))
        + _job(provider, failed, (0, FeedbackStatus.ERROR, "Generation failed"))
        + _job(provider, secret, (0, FeedbackStatus.PAYMENT_REQUIRED, None))
    )

    without = {e.id: e for e in _history(provider, events).entries}
    assert without[pending.id].kind is None
    assert without[failed.id].input_summary is None

    history = JobHistory.from_events(events, provider.public_key, [pending, failed, secret])
    entries = {e.id: e for e in history.entries}
    assert entries[pending.id].kind == 5050
    assert entries[pending.id].input_summary == "Translate this"
    assert entries[pending.id].requester_pubkey == requester.public_key
    assert entries[failed.id].kind == 5050
    assert entries[failed.id].status == JobHistoryStatus.ERROR
    assert entries[failed.id].input_summary == "Broken job"
    assert entries[secret.id].kind == 5050
    assert entries[secret.id].input_summary is None


def test_success_feedback_records_model_and_tokens():
    provider, requester = Keypair.generate(), Keypair.generate()
    request = _request(requester, provider)
    events = _job(
        provider,
        request,
        (0, FeedbackStatus.PROCESSING, None),
        (4, "result", "done"),
        (4, FeedbackStatus.SUCCESS, completion_info(42, "llama3.2")),
    )
    entry = _history(provider, events).entries[0]
    assert entry.model_used == "llama3.2"
    assert entry.tokens_processed == 42
    assert completion_info(7, None) == "Job completed: 7 tokens, model unknown"
