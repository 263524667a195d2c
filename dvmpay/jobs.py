"""
NIP-90 wire codec: build job requests, read results and feedback, and the
provider-side builders that answer them.

Request tags:  i=(value, type, relay?, marker?)  param=(name, value)  p  bid
               output  client  encrypted
Result tags:   e=request id  p=requester  amount=(msats, bolt11?)  request=JSON
               i (copied)  encrypted
Feedback tags: e  p  status=(status, extra info?)  amount  encrypted

Encrypted requests keep only `p` and `encrypted` public; every other tag is
JSON-encoded into the NIP-04 ciphertext.
"""

import json
import logging
import uuid
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from dvmpay.encryption import DEFAULT_CIPHER, ContentCipher
from dvmpay.errors import ValidationError
from dvmpay.events import (
    JOB_FEEDBACK_KIND,
    Event,
    is_request_kind,
    is_result_kind,
    result_kind_for,
    sign_event,
)
from dvmpay.keys import Keypair, is_hex_key
from dvmpay.schema import (
    INPUT_TYPES,
    FeedbackStatus,
    JobFeedback,
    JobInput,
    JobParam,
    JobRequest,
    JobResult,
    JobUpdate,
)

logger = logging.getLogger(__name__)

STATUS_INFO_LIMIT = 256
CORRELATION_TAG = "client"

InputLike = Union[JobInput, Sequence[str]]
ParamLike = Union[JobParam, Sequence[str]]


def _is_tag_like(raw: Any) -> bool:
    return isinstance(raw, (list, tuple))


def _coerce_input(raw: InputLike, index: int) -> JobInput:
    if isinstance(raw, JobInput):
        return raw
    if not _is_tag_like(raw) or len(raw) < 2:
        raise ValidationError(f"Input #{index} needs at least (value, type)", context={"input": raw})
    value, kind = raw[0], raw[1]
    if not isinstance(value, str):
        raise ValidationError(f"Input #{index} value must be a string", context={"input": raw})
    if kind not in INPUT_TYPES:
        raise ValidationError(
            f"Input #{index} has type {kind!r}; expected one of {', '.join(INPUT_TYPES)}",
            context={"input": raw},
        )
    relay = raw[2] if len(raw) > 2 and raw[2] else None
    marker = raw[3] if len(raw) > 3 and raw[3] else None
    try:
        return JobInput(value=value, type=kind, relay_hint=relay, marker=marker)
    except PydanticValidationError as e:
        raise ValidationError(f"Input #{index} is malformed: {e}", cause=e, context={"input": raw}) from e


def _coerce_param(raw: ParamLike, index: int) -> JobParam:
    if isinstance(raw, JobParam):
        return raw
    if not _is_tag_like(raw) or len(raw) != 3 or raw[0] != "param":
        raise ValidationError(
            f"Param #{index} must be exactly ('param', name, value)", context={"param": raw}
        )
    name, value = raw[1], raw[2]
    if not isinstance(name, str) or not name or value is None:
        raise ValidationError(f"Param #{index} needs a name and a value", context={"param": raw})
    try:
        return JobParam(name=name, value=str(value))
    except PydanticValidationError as e:
        raise ValidationError(f"Param #{index} is malformed: {e}", cause=e, context={"param": raw}) from e


def create_job_request(
    kind: int,
    inputs: Sequence[InputLike],
    params: Sequence[ParamLike] = (),
    *,
    requester: Keypair,
    target_provider: Optional[str] = None,
    requires_encryption: bool = False,
    bid_msats: Optional[int] = None,
    output: Optional[str] = None,
    correlation_tag: Optional[str] = None,
    cipher: ContentCipher = DEFAULT_CIPHER,
    created_at: Optional[int] = None,
) -> JobRequest:
    """
    Validate, optionally encrypt, and sign a job request. Does no network I/O;
    publishing is a separate step and may be retried with the same request.

    A `client` correlation tag (uuid4 hex unless given) is always attached so
    the caller can match its own request to what relays echo back.
    """
    if not isinstance(kind, int) or not is_request_kind(kind):
        raise ValidationError(f"Job request kind must be in 5000-5999, got {kind!r}")
    if not _is_tag_like(inputs) or not _is_tag_like(params):
        raise ValidationError("inputs and params must be lists of tags")
    job_inputs = [_coerce_input(raw, i) for i, raw in enumerate(inputs)]
    job_params = [_coerce_param(raw, i) for i, raw in enumerate(params)]
    if bid_msats is not None and (not isinstance(bid_msats, int) or bid_msats < 0):
        raise ValidationError(f"bid_msats must be an integer >= 0, got {bid_msats!r}")
    if target_provider is not None and not is_hex_key(target_provider):
        raise ValidationError("target_provider must be a 64-char hex pubkey")
    if requires_encryption and target_provider is None:
        raise ValidationError("Encrypted requests need a target_provider to encrypt to")

    tag = correlation_tag or uuid.uuid4().hex
    private_tags: List[List[str]] = [i.to_tag() for i in job_inputs]
    private_tags += [p.to_tag() for p in job_params]
    if output:
        private_tags.append(["output", output])
    if bid_msats:
        private_tags.append(["bid", str(bid_msats)])
    private_tags.append([CORRELATION_TAG, tag])

    if requires_encryption:
        content = cipher.encrypt(requester.secret, target_provider, json.dumps(private_tags))
        tags = [["p", target_provider], ["encrypted"]]
    else:
        content = ""
        tags = list(private_tags)
        if target_provider:
            tags.append(["p", target_provider])

    event = sign_event(requester, kind, tags, content, created_at=created_at)
    return JobRequest(
        event=event,
        kind=kind,
        inputs=job_inputs,
        params=job_params,
        target_provider=target_provider,
        bid_msats=bid_msats or None,
        output=output,
        correlation_tag=tag,
        encrypted=requires_encryption,
        requester=requester,
    )


def parse_amount(event: Event) -> Tuple[Optional[int], Optional[str]]:
    """(msats, bolt11) from the `amount` tag. Malformed values become None."""
    tag = event.first_tag("amount")
    if tag is None or len(tag) < 2:
        return None, None
    try:
        msats = int(tag[1])
    except (TypeError, ValueError):
        msats = None
    if msats is not None and msats < 0:
        msats = None
    invoice = tag[2] if len(tag) > 2 and tag[2] else None
    return msats, invoice


def parse_request_echo(event: Event) -> Optional[Dict[str, Any]]:
    raw = event.tag_value("request")
    if not raw:
        return None
    try:
        echo = json.loads(raw)
    except ValueError:
        logger.debug("malformed request echo on %s dropped", event.id[:12])
        return None
    return echo if isinstance(echo, dict) else None


def job_reference(event: Event) -> Optional[str]:
    return event.tag_value("e")


def _decrypt(event: Event, decryption_key: Keypair, cipher: ContentCipher) -> str:
    """Decrypt content from the event author to the holder of decryption_key."""
    return cipher.decrypt(decryption_key.secret, event.pubkey, event.content)


def parse_result_event(
    event: Event,
    decryption_key: Optional[Keypair] = None,
    cipher: ContentCipher = DEFAULT_CIPHER,
) -> JobResult:
    """Raises DecryptionError if the result is encrypted and the key cannot open it."""
    content = event.content
    decrypted = False
    if event.is_encrypted and decryption_key is not None:
        content = _decrypt(event, decryption_key, cipher)
        decrypted = True
    msats, invoice = parse_amount(event)
    return JobResult(
        id=event.id,
        job_request_id=job_reference(event) or "",
        kind=event.kind,
        pubkey=event.pubkey,
        created_at=event.created_at,
        content=content,
        amount_msats=msats,
        invoice=invoice,
        request=parse_request_echo(event),
        encrypted=event.is_encrypted,
        decrypted=decrypted,
        raw=event,
    )


def parse_feedback_event(
    event: Event,
    decryption_key: Optional[Keypair] = None,
    cipher: ContentCipher = DEFAULT_CIPHER,
) -> JobFeedback:
    content = event.content
    decrypted = False
    if event.is_encrypted and decryption_key is not None and content:
        content = _decrypt(event, decryption_key, cipher)
        decrypted = True
    status_tag = event.first_tag("status") or []
    msats, invoice = parse_amount(event)
    return JobFeedback(
        id=event.id,
        job_request_id=job_reference(event) or "",
        pubkey=event.pubkey,
        created_at=event.created_at,
        status=FeedbackStatus.parse(status_tag[1] if len(status_tag) > 1 else None),
        status_extra_info=status_tag[2] if len(status_tag) > 2 and status_tag[2] else None,
        content=content,
        amount_msats=msats,
        invoice=invoice,
        encrypted=event.is_encrypted,
        decrypted=decrypted,
        raw=event,
    )


def parse_job_update(
    event: Event,
    decryption_key: Optional[Keypair] = None,
    cipher: ContentCipher = DEFAULT_CIPHER,
) -> Optional[JobUpdate]:
    """Classify by kind. Returns None for kinds that are neither result nor feedback."""
    if is_result_kind(event.kind):
        return parse_result_event(event, decryption_key, cipher)
    if event.kind == JOB_FEEDBACK_KIND:
        return parse_feedback_event(event, decryption_key, cipher)
    return None


class DecodedJobRequest(BaseModel):
    """A job request as the provider sees it, after decryption."""

    event: Event
    inputs: List[JobInput] = Field(default_factory=list)
    params: Dict[str, str] = Field(default_factory=dict)
    output: Optional[str] = None
    bid_msats: Optional[int] = None
    correlation_tag: Optional[str] = None
    encrypted: bool = False

    @property
    def id(self) -> str:
        return self.event.id

    @property
    def requester(self) -> str:
        return self.event.pubkey

    def text_input(self) -> Optional[str]:
        for i in self.inputs:
            if i.type == "text":
                return i.value
        return None


def decode_job_request(
    event: Event,
    provider: Keypair,
    cipher: ContentCipher = DEFAULT_CIPHER,
) -> DecodedJobRequest:
    """
    Read inputs and params from a request event addressed to `provider`.
    Raises DecryptionError if encrypted content cannot be opened, and
    ValidationError if the decrypted payload is not a tag list.
    """
    tags: List[List[str]] = event.tags
    if event.is_encrypted:
        plaintext = cipher.decrypt(provider.secret, event.pubkey, event.content)
        try:
            tags = json.loads(plaintext)
        except ValueError as e:
            raise ValidationError("Encrypted request payload is not JSON", cause=e) from e
        if not isinstance(tags, list) or not all(isinstance(t, list) for t in tags):
            raise ValidationError("Encrypted request payload must be a list of tags")

    inputs: List[JobInput] = []
    params: Dict[str, str] = {}
    output = bid = correlation = None
    for t in tags:
        if not t:
            continue
        name = t[0]
        if name == "i" and len(t) >= 3 and t[2] in INPUT_TYPES:
            inputs.append(
                JobInput(
                    value=t[1],
                    type=t[2],
                    relay_hint=t[3] if len(t) > 3 and t[3] else None,
                    marker=t[4] if len(t) > 4 and t[4] else None,
                )
            )
        elif name == "param" and len(t) >= 3:
            params[t[1]] = t[2]
        elif name == "output" and len(t) >= 2:
            output = t[1]
        elif name == "bid" and len(t) >= 2 and t[1].isdigit():
            bid = int(t[1])
        elif name == CORRELATION_TAG and len(t) >= 2:
            correlation = t[1]
    return DecodedJobRequest(
        event=event,
        inputs=inputs,
        params=params,
        output=output,
        bid_msats=bid,
        correlation_tag=correlation,
        encrypted=event.is_encrypted,
    )


def _amount_tag(amount_msats: Optional[int], invoice: Optional[str]) -> Optional[List[str]]:
    if amount_msats is None:
        return None
    tag = ["amount", str(amount_msats)]
    if invoice:
        tag.append(invoice)
    return tag


def build_feedback_event(
    provider: Keypair,
    request_event: Event,
    status: FeedbackStatus,
    extra_info: Optional[str] = None,
    content: str = "",
    amount_msats: Optional[int] = None,
    invoice: Optional[str] = None,
    encrypt: bool = False,
    cipher: ContentCipher = DEFAULT_CIPHER,
    created_at: Optional[int] = None,
) -> Event:
    """Kind 7000 status update. Extra info is truncated to 256 characters."""
    status_tag = ["status", status.value]
    if extra_info:
        status_tag.append(extra_info[:STATUS_INFO_LIMIT])
    tags = [["e", request_event.id], ["p", request_event.pubkey], status_tag]
    amount = _amount_tag(amount_msats, invoice)
    if amount:
        tags.append(amount)
    if encrypt and content:
        content = cipher.encrypt(provider.secret, request_event.pubkey, content)
        tags.append(["encrypted"])
    return sign_event(provider, JOB_FEEDBACK_KIND, tags, content, created_at=created_at)


def build_result_event(
    provider: Keypair,
    request_event: Event,
    content: str,
    amount_msats: Optional[int] = None,
    invoice: Optional[str] = None,
    encrypt: bool = False,
    cipher: ContentCipher = DEFAULT_CIPHER,
    created_at: Optional[int] = None,
) -> Event:
    """Result kind (request kind + 1000). Public requests get their `i` tags and a JSON echo."""
    tags = [["e", request_event.id], ["p", request_event.pubkey]]
    amount = _amount_tag(amount_msats, invoice)
    if amount:
        tags.append(amount)
    if encrypt:
        content = cipher.encrypt(provider.secret, request_event.pubkey, content)
        tags.append(["encrypted"])
    else:
        tags.append(["request", json.dumps(request_event.to_wire(), separators=(",", ":"))])
        tags += [list(t) for t in request_event.tags_named("i")]
    return sign_event(provider, result_kind_for(request_event.kind), tags, content, created_at=created_at)


__all__ = [
    "CORRELATION_TAG",
    "DecodedJobRequest",
    "build_feedback_event",
    "build_result_event",
    "create_job_request",
    "decode_job_request",
    "job_reference",
    "parse_amount",
    "parse_feedback_event",
    "parse_job_update",
    "parse_request_echo",
    "parse_result_event",
]
