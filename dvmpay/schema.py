"""
Job schema for the NIP-90 flow.

Contract: Requester publishes JobRequest (kind 5000-5999) → DVM replies with
JobFeedback (kind 7000; payment-required / processing / partial / error /
success) and finally a JobResult (request kind + 1000) → Requester pays any
invoice along the way and consumes the text.
"""

from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from dvmpay.events import Event
from dvmpay.keys import Keypair

InputType = Literal["url", "event", "job", "text"]
INPUT_TYPES = ("url", "event", "job", "text")


class JobInput(BaseModel):
    """One `i` tag: (value, type, relay hint?, marker?)."""

    model_config = ConfigDict(frozen=True)

    value: str
    type: InputType
    relay_hint: Optional[str] = None
    marker: Optional[str] = None

    def to_tag(self) -> List[str]:
        tag = ["i", self.value, self.type]
        if self.relay_hint or self.marker:
            tag.append(self.relay_hint or "")
        if self.marker:
            tag.append(self.marker)
        return tag


class JobParam(BaseModel):
    """One `param` tag: (name, value)."""

    model_config = ConfigDict(frozen=True)

    name: str
    value: str

    def to_tag(self) -> List[str]:
        return ["param", self.name, self.value]


class JobRequest(BaseModel):
    """
    A signed job request. Immutable once signed; `id` is the event id and is
    the job's identity for every later result and feedback event.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    event: Event
    kind: int
    inputs: List[JobInput]
    params: List[JobParam] = Field(default_factory=list)
    target_provider: Optional[str] = Field(None, description="DVM x-only pubkey (hex)")
    bid_msats: Optional[int] = None
    output: Optional[str] = Field(None, description="Requested output MIME type")
    correlation_tag: Optional[str] = Field(None, description="Client-generated `client` tag value")
    encrypted: bool = False
    requester: Keypair = Field(..., exclude=True, repr=False)

    @property
    def id(self) -> str:
        return self.event.id


class FeedbackStatus(str, Enum):
    PAYMENT_REQUIRED = "payment-required"
    PROCESSING = "processing"
    ERROR = "error"
    SUCCESS = "success"
    PARTIAL = "partial"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["FeedbackStatus"]:
        """Unknown or missing status maps to None (ignored by consumers)."""
        if not value:
            return None
        try:
            return cls(value)
        except ValueError:
            return None


class JobResult(BaseModel):
    """DVM result event, decrypted when the caller supplied the key."""

    id: str
    job_request_id: str
    kind: int
    pubkey: str
    created_at: int
    content: str = ""
    amount_msats: Optional[int] = None
    invoice: Optional[str] = None
    request: Optional[Dict[str, Any]] = Field(None, description="Echo of the request event, if sent")
    encrypted: bool = False
    decrypted: bool = Field(False, description="True when content was decrypted locally")
    raw: Event = Field(..., repr=False)


class JobFeedback(BaseModel):
    """DVM status update for a job."""

    id: str
    job_request_id: str
    pubkey: str
    created_at: int
    status: Optional[FeedbackStatus] = None
    status_extra_info: Optional[str] = None
    content: str = ""
    amount_msats: Optional[int] = None
    invoice: Optional[str] = None
    encrypted: bool = False
    decrypted: bool = False
    raw: Event = Field(..., repr=False)


JobUpdate = Union[JobResult, JobFeedback]


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


class TextChunk(BaseModel):
    """
    One item of a text stream. kind="info" marks out-of-band notices (payment
    made, invoice to pay) that are not part of the generated text.
    """

    model_config = ConfigDict(frozen=True)

    text: str
    kind: Literal["text", "info"] = "text"
    final: bool = Field(False, description="Authoritative full text from the result event")

    @property
    def is_info(self) -> bool:
        return self.kind == "info"


class StreamTextOptions(BaseModel):
    """Per-call overrides for a language-model request."""

    model: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    extra_params: Dict[str, str] = Field(default_factory=dict)


class JobHistoryStatus(str, Enum):
    PENDING_PAYMENT = "pending_payment"
    PROCESSING = "processing"
    PAID = "paid"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"


class JobHistoryEntry(BaseModel):
    """One job as seen from the provider's own published events."""

    id: str
    timestamp: int = Field(..., description="created_at of the first event about the job (ms)")
    job_request_event_id: str
    requester_pubkey: str
    kind: Optional[int] = None
    input_summary: Optional[str] = None
    status: JobHistoryStatus
    invoice_amount_sats: Optional[int] = None
    payment_received_sats: Optional[int] = None
    result_summary: Optional[str] = None
    error_details: Optional[str] = None
    processing_time_ms: Optional[int] = None
    model_used: Optional[str] = None
    tokens_processed: Optional[int] = None


class JobHistoryPage(BaseModel):
    entries: List[JobHistoryEntry]
    total_count: int
    page: int
    page_size: int


class JobStatistics(BaseModel):
    total_jobs_processed: int = 0
    total_successful: int = 0
    total_failed: int = 0
    total_revenue_sats: int = 0
    jobs_pending_payment: int = 0
    average_processing_time_ms: Optional[float] = None
