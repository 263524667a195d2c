"""
Per-job live subscriptions.

One logical subscription per job spans two relay filters (result kinds and
feedback kind 7000), both keyed by provider author and the job's `e` tag.
Every inbound event is checked before it reaches the callback:

  - seen before (same id, any relay)   → dropped
  - wrong job / wrong author / bad sig  → dropped
  - encrypted and cannot be decrypted   → logged, dropped; subscription continues
  - the owner's callback raises         → logged; other jobs unaffected

Teardown happens exactly once per handle no matter how often, or from where,
cancel() is called.
"""

import logging
import threading
from typing import Callable, Dict, List, Optional, Sequence, Set

from dvmpay.encryption import DEFAULT_CIPHER, ContentCipher
from dvmpay.errors import DecryptionError
from dvmpay.events import JOB_FEEDBACK_KIND, JOB_RESULT_KINDS, Event, Filter, verify_event
from dvmpay.jobs import job_reference, parse_job_update
from dvmpay.keys import Keypair
from dvmpay.schema import JobUpdate
from dvmpay.telemetry import MetricsSink, track_safely
from dvmpay.transport import Cancel, OnClosed, Transport

logger = logging.getLogger(__name__)

OnUpdate = Callable[[JobUpdate], None]


def job_update_filters(job_id: str, provider_pubkey: Optional[str]) -> List[Filter]:
    authors = [provider_pubkey] if provider_pubkey else None
    return [
        Filter(kinds=JOB_RESULT_KINDS, authors=authors, tags={"e": [job_id]}),
        Filter(kinds=[JOB_FEEDBACK_KIND], authors=authors, tags={"e": [job_id]}),
    ]


class SubscriptionHandle:
    """Live subscription for one job. Owns the transport's cancel."""

    def __init__(
        self,
        job_id: str,
        provider_pubkey: Optional[str],
        decryption_key: Optional[Keypair],
        on_update: OnUpdate,
        cipher: ContentCipher = DEFAULT_CIPHER,
        on_teardown: Optional[Callable[["SubscriptionHandle"], None]] = None,
        on_closed: Optional[OnClosed] = None,
    ):
        self.job_id = job_id
        self.provider_pubkey = provider_pubkey
        self._decryption_key = decryption_key
        self._on_update = on_update
        self._cipher = cipher
        self._on_teardown = on_teardown
        self._on_closed = on_closed
        self._lock = threading.Lock()
        self._closer: Optional[Cancel] = None
        self._cancelled = False
        self._seen: Set[str] = set()
        self.teardown_count = 0

    @property
    def active(self) -> bool:
        return not self._cancelled

    def attach(self, closer: Cancel) -> None:
        """Hand over the transport cancel. Closes it at once if we were cancelled meanwhile."""
        with self._lock:
            if not self._cancelled:
                self._closer = closer
                return
        closer()

    def cancel(self) -> None:
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
            closer, self._closer = self._closer, None
            self.teardown_count += 1
        if closer is not None:
            closer()
        if self._on_teardown is not None:
            self._on_teardown(self)
        logger.debug("subscription for job %s closed", self.job_id[:12])

    def _accepts(self, event: Event) -> bool:
        if event.id in self._seen:
            return False
        if job_reference(event) != self.job_id:
            logger.debug("event %s references another job; dropped", event.id[:12])
            return False
        if self.provider_pubkey and event.pubkey != self.provider_pubkey:
            logger.debug("event %s from unexpected author; dropped", event.id[:12])
            return False
        if not verify_event(event):
            logger.warning("event %s failed signature check; dropped", event.id[:12])
            return False
        return True

    def handle_event(self, event: Event) -> None:
        if self._cancelled or not self._accepts(event):
            return
        self._seen.add(event.id)
        try:
            update = parse_job_update(event, self._decryption_key, self._cipher)
        except DecryptionError as e:
            logger.warning("could not decrypt %s for job %s: %s", event.id[:12], self.job_id[:12], e)
            return
        if update is None or self._cancelled:
            return
        try:
            self._on_update(update)
        except Exception:
            logger.exception("update handler for job %s failed on %s", self.job_id[:12], event.id[:12])

    def handle_closed(self, reason: str) -> None:
        """Every relay dropped the subscription. Tear down and tell the owner once."""
        if self._cancelled:
            return
        logger.warning("subscription for job %s lost: %s", self.job_id[:12], reason)
        self.cancel()
        if self._on_closed is not None:
            try:
                self._on_closed(reason)
            except Exception:
                logger.exception("close handler for job %s failed", self.job_id[:12])


class JobSubscriptions:
    """
    Registry of open job subscriptions (job id → handles). Jobs are
    independent: each handle has its own lock, and a failure delivering to one
    job never touches another.
    """

    def __init__(
        self,
        transport: Transport,
        cipher: ContentCipher = DEFAULT_CIPHER,
        metrics: Optional[MetricsSink] = None,
    ):
        self._transport = transport
        self._cipher = cipher
        self._metrics = metrics
        self._handles: Dict[str, List[SubscriptionHandle]] = {}

    def __contains__(self, job_id: str) -> bool:
        return bool(self._handles.get(job_id))

    @property
    def active_jobs(self) -> List[str]:
        return [job_id for job_id, handles in self._handles.items() if handles]

    def _forget(self, handle: SubscriptionHandle) -> None:
        handles = self._handles.get(handle.job_id)
        if handles and handle in handles:
            handles.remove(handle)
            if not handles:
                self._handles.pop(handle.job_id, None)

    async def subscribe(
        self,
        job_id: str,
        provider_pubkey: Optional[str],
        decryption_key: Optional[Keypair],
        on_update: OnUpdate,
        relays: Optional[Sequence[str]] = None,
        on_closed: Optional[OnClosed] = None,
    ) -> Cancel:
        """
        Open the job's subscription. Returns its idempotent cancel.
        Raises NetworkError if the transport cannot subscribe. on_closed(reason)
        is called if the relays drop the subscription before it is cancelled.
        """
        handle = SubscriptionHandle(
            job_id,
            provider_pubkey,
            decryption_key,
            on_update,
            cipher=self._cipher,
            on_teardown=self._forget,
            on_closed=on_closed,
        )
        self._handles.setdefault(job_id, []).append(handle)
        try:
            closer = await self._transport.subscribe(
                job_update_filters(job_id, provider_pubkey),
                handle.handle_event,
                relays,
                on_closed=handle.handle_closed,
            )
        except BaseException:
            handle.cancel()
            raise
        handle.attach(closer)
        track_safely(self._metrics, "nip90", "subscription_opened", job_id[:8])
        return handle.cancel

    def cancel(self, job_id: str) -> None:
        for handle in list(self._handles.get(job_id, [])):
            handle.cancel()

    def cancel_all(self) -> None:
        for job_id in list(self._handles):
            self.cancel(job_id)
