"""
Job lifecycle as a closed set of events folded by one pure reducer.

    Created → [PaymentRequired]? → Processing → [Partial]* → Succeeded | Failed
                                                 (Cancelled from anywhere)

reduce() never does I/O. It returns the next state plus what the caller should
do: chunks to emit, an invoice to hand to the payment handler, or the error
that ends the stream. Once a state is terminal every further event is a no-op,
so duplicate results and late feedback are ignored.
"""

import re
from dataclasses import dataclass, replace
from enum import Enum
from typing import FrozenSet, Optional, Tuple, Union

from dvmpay.errors import DVMError, PaymentError, ProtocolError
from dvmpay.schema import FeedbackStatus, JobFeedback, JobResult, JobUpdate, TextChunk

_BOLT11 = re.compile(r"^ln[a-z0-9]+1[a-z0-9]+$")


def msats_to_sats(msats: int) -> int:
    return -(-msats // 1000)


def looks_like_bolt11(invoice: Optional[str]) -> bool:
    return bool(invoice) and bool(_BOLT11.match(invoice.strip().lower()))


class Phase(str, Enum):
    CREATED = "created"
    PAYMENT_REQUIRED = "payment_required"
    PROCESSING = "processing"
    PARTIAL = "partial"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_PHASES = frozenset({Phase.SUCCEEDED, Phase.FAILED, Phase.CANCELLED})


@dataclass(frozen=True)
class PaymentRequested:
    amount_msats: Optional[int]
    invoice: Optional[str]
    extra_info: Optional[str] = None


@dataclass(frozen=True)
class ProcessingReported:
    extra_info: Optional[str] = None


@dataclass(frozen=True)
class PartialReceived:
    text: str


@dataclass(frozen=True)
class ResultReceived:
    text: str


@dataclass(frozen=True)
class SuccessReported:
    text: str = ""


@dataclass(frozen=True)
class ErrorReported:
    message: str


@dataclass(frozen=True)
class PaymentSettled:
    amount_sats: int
    payment_hash: Optional[str] = None


@dataclass(frozen=True)
class InvoiceSurfaced:
    amount_sats: int
    invoice: str


@dataclass(frozen=True)
class PaymentFailed:
    message: str


@dataclass(frozen=True)
class Cancelled:
    pass


@dataclass(frozen=True)
class LocalFailure:
    error: DVMError


LifecycleEvent = Union[
    PaymentRequested,
    ProcessingReported,
    PartialReceived,
    ResultReceived,
    SuccessReported,
    ErrorReported,
    PaymentSettled,
    InvoiceSurfaced,
    PaymentFailed,
    Cancelled,
    LocalFailure,
]


@dataclass(frozen=True)
class PaymentDue:
    """Instruction for the payment handler."""

    amount_msats: int
    invoice: str

    @property
    def amount_sats(self) -> int:
        return msats_to_sats(self.amount_msats)


@dataclass(frozen=True)
class JobState:
    phase: Phase = Phase.CREATED
    text: str = ""
    handled_invoices: FrozenSet[str] = frozenset()
    pending_notice: Optional[str] = None
    confirm_resume: bool = False

    @property
    def terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES


@dataclass(frozen=True)
class Transition:
    state: JobState
    chunks: Tuple[TextChunk, ...] = ()
    payment: Optional[PaymentDue] = None
    error: Optional[DVMError] = None

    @property
    def done(self) -> bool:
        return self.state.terminal


def from_update(update: JobUpdate) -> Optional[LifecycleEvent]:
    """Map a parsed result/feedback to a lifecycle event. Unknown statuses map to None."""
    if isinstance(update, JobResult):
        return ResultReceived(update.content)
    if not isinstance(update, JobFeedback):
        return None
    status = update.status
    if status is FeedbackStatus.PARTIAL:
        return PartialReceived(update.content)
    if status is FeedbackStatus.PAYMENT_REQUIRED:
        return PaymentRequested(update.amount_msats, update.invoice, update.status_extra_info)
    if status is FeedbackStatus.PROCESSING:
        return ProcessingReported(update.status_extra_info)
    if status is FeedbackStatus.SUCCESS:
        return SuccessReported(update.content)
    if status is FeedbackStatus.ERROR:
        return ErrorReported(update.status_extra_info or update.content or "unknown error")
    return None


def _info(text: str) -> TextChunk:
    return TextChunk(text=text, kind="info")


def _resume(state: JobState, phase: Phase) -> Tuple[JobState, Tuple[TextChunk, ...]]:
    """Provider activity confirms resumption: release a held payment notice."""
    chunks: Tuple[TextChunk, ...] = ()
    if state.pending_notice:
        chunks = (_info(state.pending_notice),)
    return replace(state, phase=phase, pending_notice=None), chunks


def _finish(state: JobState, text: str) -> Transition:
    state, chunks = _resume(state, Phase.SUCCEEDED)
    if text and text != state.text:
        chunks += (TextChunk(text=text, final=True),)
    return Transition(state, chunks)


def _fail(state: JobState, error: DVMError) -> Transition:
    return Transition(replace(state, phase=Phase.FAILED, pending_notice=None), error=error)


def reduce(state: JobState, event: LifecycleEvent) -> Transition:
    if state.terminal:
        return Transition(state)

    if isinstance(event, PartialReceived):
        new_state, chunks = _resume(state, Phase.PARTIAL)
        if event.text:
            chunks += (TextChunk(text=event.text),)
            new_state = replace(new_state, text=new_state.text + event.text)
        return Transition(new_state, chunks)

    if isinstance(event, (ResultReceived, SuccessReported)):
        return _finish(state, event.text)

    if isinstance(event, ProcessingReported):
        new_state, chunks = _resume(state, Phase.PROCESSING)
        return Transition(new_state, chunks)

    if isinstance(event, ErrorReported):
        return _fail(state, ProtocolError(f"DVM reported an error: {event.message}"))

    if isinstance(event, PaymentRequested):
        if event.amount_msats is None or not looks_like_bolt11(event.invoice):
            return _fail(
                state,
                ProtocolError(
                    "DVM requested payment without a usable amount and invoice",
                    context={"amount_msats": event.amount_msats, "invoice": event.invoice},
                ),
            )
        if event.invoice in state.handled_invoices:
            return Transition(state)
        new_state = replace(
            state,
            phase=Phase.PAYMENT_REQUIRED,
            handled_invoices=state.handled_invoices | {event.invoice},
        )
        return Transition(new_state, payment=PaymentDue(event.amount_msats, event.invoice))

    if isinstance(event, PaymentSettled):
        notice = f"Paid {event.amount_sats} sats to the DVM; waiting for it to continue."
        if state.confirm_resume and state.phase == Phase.PAYMENT_REQUIRED:
            return Transition(replace(state, pending_notice=notice))
        return Transition(state, (_info(notice),))

    if isinstance(event, InvoiceSurfaced):
        notice = f"Payment required: {event.amount_sats} sats. Pay this invoice to continue: {event.invoice}"
        return Transition(state, (_info(notice),))

    if isinstance(event, PaymentFailed):
        return _fail(state, PaymentError(f"Payment failed: {event.message}"))

    if isinstance(event, Cancelled):
        return Transition(replace(state, phase=Phase.CANCELLED, pending_notice=None))

    if isinstance(event, LocalFailure):
        return _fail(state, event.error)

    raise TypeError(f"Unhandled lifecycle event: {event!r}")
