"""
Requester-side NIP-90 client: publish job requests, fetch results and
feedback, and open live per-job subscriptions.

    client = DVMClient(RelayPool())
    request = create_job_request(5050, [("Hello", "text")], requester=kp,
                                 target_provider=dvm, requires_encryption=True)
    await client.publish_job_request(request)
    result = await client.get_job_result(request.id, dvm, kp)
"""

import asyncio
import logging
from typing import List, Optional, Sequence

from dvmpay.encryption import DEFAULT_CIPHER, ContentCipher
from dvmpay.errors import NetworkError
from dvmpay.events import JOB_FEEDBACK_KIND, JOB_RESULT_KINDS, Event, Filter, is_result_kind, verify_event
from dvmpay.jobs import job_reference, parse_feedback_event, parse_result_event
from dvmpay.keys import Keypair
from dvmpay.schema import JobFeedback, JobRequest, JobResult
from dvmpay.subscriptions import JobSubscriptions, OnUpdate
from dvmpay.telemetry import MetricsSink, track_safely
from dvmpay.transport import Cancel, OnClosed, Transport

logger = logging.getLogger(__name__)


class DVMClient:
    def __init__(
        self,
        transport: Transport,
        cipher: ContentCipher = DEFAULT_CIPHER,
        metrics: Optional[MetricsSink] = None,
        relays: Optional[Sequence[str]] = None,
    ):
        self.transport = transport
        self.cipher = cipher
        self.metrics = metrics
        self.relays = list(relays) if relays else None
        self.subscriptions = JobSubscriptions(transport, cipher=cipher, metrics=metrics)

    async def publish_job_request(self, request: JobRequest, relays: Optional[Sequence[str]] = None) -> JobRequest:
        """
        Publish an already-signed request. On NetworkError the request is
        still valid and may be published again unchanged.
        """
        try:
            await self.transport.publish(request.event, relays or self.relays)
        except NetworkError:
            track_safely(self.metrics, "nip90", "publish_failure", request.id[:8])
            raise
        except (OSError, asyncio.TimeoutError) as e:
            track_safely(self.metrics, "nip90", "publish_failure", request.id[:8])
            raise NetworkError(f"Publishing job {request.id[:12]} failed: {e}", cause=e) from e
        logger.info("published job request %s (kind %d)", request.id[:12], request.kind)
        track_safely(self.metrics, "nip90", "job_request_published", request.id[:8], request.kind)
        return request

    async def _query(self, filters: List[Filter], relays: Optional[Sequence[str]]) -> List[Event]:
        try:
            return await self.transport.query(filters, relays or self.relays)
        except NetworkError:
            raise
        except (OSError, asyncio.TimeoutError) as e:
            raise NetworkError(f"Relay query failed: {e}", cause=e) from e

    def _valid_for(self, events: List[Event], job_request_id: str, provider_pubkey: Optional[str]) -> List[Event]:
        out = []
        for ev in events:
            if job_reference(ev) != job_request_id:
                continue
            if provider_pubkey and ev.pubkey != provider_pubkey:
                continue
            if not verify_event(ev):
                logger.warning("dropping %s: bad id or signature", ev.id[:12])
                continue
            out.append(ev)
        return out

    async def get_job_result(
        self,
        job_request_id: str,
        provider_pubkey: Optional[str] = None,
        decryption_key: Optional[Keypair] = None,
        relays: Optional[Sequence[str]] = None,
    ) -> Optional[JobResult]:
        """
        Most recent result for the job by stated created_at, or None if there
        is none. An encrypted result that cannot be decrypted raises
        DecryptionError (never reported as "no result").
        """
        authors = [provider_pubkey] if provider_pubkey else None
        events = await self._query(
            [Filter(kinds=JOB_RESULT_KINDS, authors=authors, tags={"e": [job_request_id]})], relays
        )
        candidates = [e for e in self._valid_for(events, job_request_id, provider_pubkey) if is_result_kind(e.kind)]
        if not candidates:
            return None
        latest = max(candidates, key=lambda e: (e.created_at, e.id))
        result = parse_result_event(latest, decryption_key, self.cipher)
        track_safely(self.metrics, "nip90", "job_result_fetched", job_request_id[:8])
        return result

    async def list_job_feedback(
        self,
        job_request_id: str,
        provider_pubkey: Optional[str] = None,
        decryption_key: Optional[Keypair] = None,
        relays: Optional[Sequence[str]] = None,
    ) -> List[JobFeedback]:
        """All feedback for the job, newest first."""
        authors = [provider_pubkey] if provider_pubkey else None
        events = await self._query(
            [Filter(kinds=[JOB_FEEDBACK_KIND], authors=authors, tags={"e": [job_request_id]})], relays
        )
        valid = [e for e in self._valid_for(events, job_request_id, provider_pubkey) if e.kind == JOB_FEEDBACK_KIND]
        valid.sort(key=lambda e: (e.created_at, e.id), reverse=True)
        return [parse_feedback_event(e, decryption_key, self.cipher) for e in valid]

    async def subscribe_to_job_updates(
        self,
        job_id: str,
        provider_pubkey: Optional[str],
        decryption_key: Optional[Keypair],
        on_update: OnUpdate,
        relays: Optional[Sequence[str]] = None,
        on_closed: Optional[OnClosed] = None,
    ) -> Cancel:
        return await self.subscriptions.subscribe(
            job_id, provider_pubkey, decryption_key, on_update, relays or self.relays, on_closed=on_closed
        )
