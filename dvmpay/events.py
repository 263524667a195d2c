"""
Signed, content-addressed Nostr events (NIP-01) and the NIP-90 kind ranges.

id  = sha256 of the canonical JSON array [0, pubkey, created_at, kind, tags, content]
sig = BIP-340 Schnorr signature over the id bytes
"""

import hashlib
import json
import logging
import time
from typing import Any, Dict, List, Optional, Sequence

from coincurve import PublicKeyXOnly
from pydantic import BaseModel, ConfigDict, Field

from dvmpay.keys import Keypair

logger = logging.getLogger(__name__)

JOB_REQUEST_KIND_MIN = 5000
JOB_REQUEST_KIND_MAX = 5999
JOB_RESULT_KIND_MIN = 6000
JOB_RESULT_KIND_MAX = 6999
JOB_FEEDBACK_KIND = 7000
RESULT_KIND_OFFSET = 1000

JOB_RESULT_KINDS = list(range(JOB_RESULT_KIND_MIN, JOB_RESULT_KIND_MAX + 1))


def is_request_kind(kind: int) -> bool:
    return JOB_REQUEST_KIND_MIN <= kind <= JOB_REQUEST_KIND_MAX


def is_result_kind(kind: int) -> bool:
    return JOB_RESULT_KIND_MIN <= kind <= JOB_RESULT_KIND_MAX


def result_kind_for(request_kind: int) -> int:
    return request_kind + RESULT_KIND_OFFSET


class Event(BaseModel):
    """A signed event exactly as it travels on the wire."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="sha256 of the canonical serialization, hex")
    pubkey: str = Field(..., description="Author x-only public key, hex")
    created_at: int = Field(..., description="Unix seconds, as stated by the author")
    kind: int
    tags: List[List[str]] = Field(default_factory=list)
    content: str = ""
    sig: str = Field(..., description="BIP-340 signature over id, hex")

    def tags_named(self, name: str) -> List[List[str]]:
        return [t for t in self.tags if t and t[0] == name]

    def first_tag(self, name: str) -> Optional[List[str]]:
        for t in self.tags:
            if t and t[0] == name:
                return t
        return None

    def tag_value(self, name: str, index: int = 1) -> Optional[str]:
        tag = self.first_tag(name)
        if tag is None or len(tag) <= index:
            return None
        return tag[index]

    @property
    def is_encrypted(self) -> bool:
        return self.first_tag("encrypted") is not None

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump()


class Filter(BaseModel):
    """
    Relay subscription filter. Tag filters are keyed by the single-letter tag
    name without the '#' (e.g. tags={"e": [job_id]}).
    """

    ids: Optional[List[str]] = None
    authors: Optional[List[str]] = None
    kinds: Optional[List[int]] = None
    tags: Dict[str, List[str]] = Field(default_factory=dict)
    since: Optional[int] = None
    until: Optional[int] = None
    limit: Optional[int] = None

    def to_wire(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for key in ("ids", "authors", "kinds", "since", "until", "limit"):
            value = getattr(self, key)
            if value is not None:
                out[key] = value
        for name, values in self.tags.items():
            out[f"#{name}"] = list(values)
        return out

    def matches(self, event: Event) -> bool:
        if self.ids is not None and event.id not in self.ids:
            return False
        if self.authors is not None and event.pubkey not in self.authors:
            return False
        if self.kinds is not None and event.kind not in self.kinds:
            return False
        if self.since is not None and event.created_at < self.since:
            return False
        if self.until is not None and event.created_at > self.until:
            return False
        for name, values in self.tags.items():
            present = {t[1] for t in event.tags if len(t) > 1 and t[0] == name}
            if not present.intersection(values):
                return False
        return True


def serialize_event(pubkey: str, created_at: int, kind: int, tags: Sequence[Sequence[str]], content: str) -> str:
    return json.dumps(
        [0, pubkey, created_at, kind, [list(t) for t in tags], content],
        separators=(",", ":"),
        ensure_ascii=False,
    )


def compute_event_id(pubkey: str, created_at: int, kind: int, tags: Sequence[Sequence[str]], content: str) -> str:
    payload = serialize_event(pubkey, created_at, kind, tags, content)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def sign_event(
    keypair: Keypair,
    kind: int,
    tags: Sequence[Sequence[str]],
    content: str,
    created_at: Optional[int] = None,
) -> Event:
    """Build, hash and sign an event in one step."""
    ts = int(time.time()) if created_at is None else created_at
    tag_list = [[str(v) for v in t] for t in tags]
    event_id = compute_event_id(keypair.public_key, ts, kind, tag_list, content)
    return Event(
        id=event_id,
        pubkey=keypair.public_key,
        created_at=ts,
        kind=kind,
        tags=tag_list,
        content=content,
        sig=keypair.sign(bytes.fromhex(event_id)),
    )


def verify_event(event: Event) -> bool:
    """Check that id matches the content and sig matches the id and pubkey."""
    expected = compute_event_id(event.pubkey, event.created_at, event.kind, event.tags, event.content)
    if expected != event.id:
        return False
    try:
        return PublicKeyXOnly(bytes.fromhex(event.pubkey)).verify(
            bytes.fromhex(event.sig), bytes.fromhex(event.id)
        )
    except ValueError as e:
        logger.debug("signature check failed for %s: %s", event.id[:12], e)
        return False
