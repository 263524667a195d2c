"""
Job history and statistics as a read projection over the provider's own
published events. Nothing is stored: every read groups result and feedback
events by the job they reference and derives each job's status. Referenced
request events, when the relays still hold them, supply the kind, requester
and public input.

  payment-required only                      → pending_payment
  processing after payment, nothing streamed → paid
  partial feedback seen                      → processing
  result or success                          → completed
  error "invoice expired"                    → cancelled
  any other error                            → error
"""

import re
from collections import defaultdict
from typing import Dict, List, Optional, Sequence

from dvmpay.events import JOB_FEEDBACK_KIND, RESULT_KIND_OFFSET, Event, is_request_kind, is_result_kind
from dvmpay.jobs import job_reference, parse_amount, parse_request_echo
from dvmpay.lifecycle import msats_to_sats
from dvmpay.schema import FeedbackStatus, JobHistoryEntry, JobHistoryPage, JobHistoryStatus, JobStatistics

INVOICE_EXPIRED = "Invoice expired before payment"
SUMMARY_LIMIT = 100

_COMPLETION = re.compile(r"^Job completed: (\d+) tokens, model (.+)$")


def completion_info(tokens: int, model: Optional[str]) -> str:
    """Success feedback text; the projection reads tokens and model back from it."""
    return f"Job completed: {tokens} tokens, model {model or 'unknown'}"


def _summary(text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    return text if len(text) <= SUMMARY_LIMIT else text[:SUMMARY_LIMIT] + "..."


def _input_summary(result: Optional[Event], request: Optional[Event] = None) -> Optional[str]:
    if request is not None and not request.is_encrypted:
        return _summary(request.tag_value("i"))
    if result is None:
        return None
    echo = parse_request_echo(result)
    if echo is not None:
        for tag in echo.get("tags", []):
            if isinstance(tag, list) and len(tag) > 2 and tag[0] == "i":
                return _summary(tag[1])
    value = result.tag_value("i")
    return _summary(value)


def _project(job_id: str, events: List[Event], request: Optional[Event] = None) -> JobHistoryEntry:
    events = sorted(events, key=lambda e: (e.created_at, e.id))
    status = JobHistoryStatus.PENDING_PAYMENT
    invoice_sats = None
    paid = False
    processing_at = completed_at = None
    result: Optional[Event] = None
    error = None
    kind = request.kind if request is not None else None
    streamed = False
    tokens = model_used = None

    for ev in events:
        if is_result_kind(ev.kind):
            result = ev
            kind = kind or ev.kind - RESULT_KIND_OFFSET
            completed_at = completed_at or ev.created_at
            continue
        status_tag = ev.first_tag("status") or []
        fb = FeedbackStatus.parse(status_tag[1] if len(status_tag) > 1 else None)
        extra = status_tag[2] if len(status_tag) > 2 else None
        if fb is FeedbackStatus.PAYMENT_REQUIRED:
            msats, _ = parse_amount(ev)
            if msats is not None:
                invoice_sats = msats_to_sats(msats)
        elif fb is FeedbackStatus.PROCESSING:
            paid = True
            processing_at = processing_at or ev.created_at
        elif fb is FeedbackStatus.PARTIAL:
            streamed = True
        elif fb is FeedbackStatus.SUCCESS:
            completed_at = completed_at or ev.created_at
            match = _COMPLETION.match(extra or "")
            if match:
                tokens, model_used = int(match.group(1)), match.group(2)
        elif fb is FeedbackStatus.ERROR:
            error = extra or ev.content or "error"

    if result is not None or completed_at is not None:
        status = JobHistoryStatus.COMPLETED
    elif error is not None:
        status = JobHistoryStatus.CANCELLED if error == INVOICE_EXPIRED else JobHistoryStatus.ERROR
    elif streamed:
        status = JobHistoryStatus.PROCESSING
    elif paid:
        status = JobHistoryStatus.PAID

    processing_time = None
    if processing_at is not None and completed_at is not None:
        processing_time = (completed_at - processing_at) * 1000

    result_summary = None
    if result is not None:
        result_summary = "(encrypted)" if result.is_encrypted else _summary(result.content)

    return JobHistoryEntry(
        id=job_id,
        timestamp=events[0].created_at * 1000,
        job_request_event_id=job_id,
        requester_pubkey=request.pubkey if request is not None else events[0].tag_value("p") or "",
        kind=kind,
        input_summary=_input_summary(result, request),
        status=status,
        invoice_amount_sats=invoice_sats,
        payment_received_sats=invoice_sats if paid else None,
        result_summary=result_summary,
        error_details=error,
        processing_time_ms=processing_time,
        model_used=model_used,
        tokens_processed=tokens,
    )


class JobHistory:
    def __init__(self, entries: List[JobHistoryEntry]):
        self.entries = sorted(entries, key=lambda e: (e.timestamp, e.id), reverse=True)

    @classmethod
    def from_events(
        cls, events: Sequence[Event], provider_pubkey: str, requests: Sequence[Event] = ()
    ) -> "JobHistory":
        """Group the provider's events by job; ``requests`` are the referenced job requests, if fetched."""
        by_job: Dict[str, Dict[str, Event]] = defaultdict(dict)
        for ev in events:
            if ev.pubkey != provider_pubkey:
                continue
            if ev.kind != JOB_FEEDBACK_KIND and not is_result_kind(ev.kind):
                continue
            job_id = job_reference(ev)
            if job_id:
                by_job[job_id][ev.id] = ev
        known = {r.id: r for r in requests if is_request_kind(r.kind)}
        return cls([_project(job_id, list(evs.values()), known.get(job_id)) for job_id, evs in by_job.items()])

    def page(self, page: int = 1, page_size: int = 20, status: Optional[JobHistoryStatus] = None) -> JobHistoryPage:
        page = max(page, 1)
        page_size = max(page_size, 1)
        selected = [e for e in self.entries if status is None or e.status == status]
        start = (page - 1) * page_size
        return JobHistoryPage(
            entries=selected[start:start + page_size],
            total_count=len(selected),
            page=page,
            page_size=page_size,
        )

    def statistics(self) -> JobStatistics:
        completed = [e for e in self.entries if e.status == JobHistoryStatus.COMPLETED]
        times = [e.processing_time_ms for e in completed if e.processing_time_ms is not None]
        return JobStatistics(
            total_jobs_processed=len(self.entries),
            total_successful=len(completed),
            total_failed=sum(1 for e in self.entries if e.status == JobHistoryStatus.ERROR),
            total_revenue_sats=sum(e.payment_received_sats or 0 for e in self.entries),
            jobs_pending_payment=sum(1 for e in self.entries if e.status == JobHistoryStatus.PENDING_PAYMENT),
            average_processing_time_ms=(sum(times) / len(times)) if times else None,
        )
