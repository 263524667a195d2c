"""
Provider side: run as a DVM.

Flow per request: decode (decrypt if needed) → quote price → create invoice →
publish payment-required → wait for the invoice to be paid → processing →
stream partial feedback → result → success. No compute starts before the
invoice is paid; an unpaid invoice ends the job with an error feedback.

The provider keeps no job ledger. History and statistics are rebuilt from the
events it has published (see history.py).
"""

import asyncio
import logging
import time
from typing import Dict, Optional, Sequence

from dvmpay.config import ProviderSettings
from dvmpay.encryption import DEFAULT_CIPHER, ContentCipher
from dvmpay.errors import DVMError, NetworkError
from dvmpay.events import JOB_FEEDBACK_KIND, JOB_RESULT_KINDS, Event, Filter, verify_event
from dvmpay.jobs import (
    DecodedJobRequest,
    build_feedback_event,
    build_result_event,
    decode_job_request,
    job_reference,
)
from dvmpay.keys import Keypair
from dvmpay.llm.base import LanguageModel
from dvmpay.payments import Invoice, Wallet
from dvmpay.provider.history import INVOICE_EXPIRED, JobHistory, completion_info
from dvmpay.provider.pricing import estimate_tokens, quote_price_sats
from dvmpay.schema import FeedbackStatus, JobHistoryPage, JobHistoryStatus, JobStatistics, StreamTextOptions
from dvmpay.telemetry import MetricsSink, track_safely
from dvmpay.transport import Cancel, Transport

logger = logging.getLogger(__name__)

REQUEST_LOOKBACK_SECONDS = 300


def _int_param(params: Dict[str, str], name: str) -> Optional[int]:
    try:
        return int(params[name])
    except (KeyError, ValueError):
        return None


def _float_param(params: Dict[str, str], name: str) -> Optional[float]:
    try:
        return float(params[name])
    except (KeyError, ValueError):
        return None


class DVMProvider:
    def __init__(
        self,
        keypair: Keypair,
        transport: Transport,
        wallet: Wallet,
        model: LanguageModel,
        settings: Optional[ProviderSettings] = None,
        relays: Optional[Sequence[str]] = None,
        cipher: ContentCipher = DEFAULT_CIPHER,
        metrics: Optional[MetricsSink] = None,
    ):
        self.keypair = keypair
        self.transport = transport
        self.wallet = wallet
        self.model = model
        self.settings = settings or ProviderSettings()
        self.relays = list(relays) if relays else None
        self.cipher = cipher
        self.metrics = metrics
        self._jobs: Dict[str, asyncio.Task] = {}
        self._unsubscribe: Optional[Cancel] = None

    @property
    def pubkey(self) -> str:
        return self.keypair.public_key

    @property
    def running(self) -> bool:
        return self._unsubscribe is not None

    async def start(self) -> None:
        """Subscribe to job requests for the configured kinds."""
        if self._unsubscribe is not None:
            return
        since = int(time.time()) - REQUEST_LOOKBACK_SECONDS
        self._unsubscribe = await self.transport.subscribe(
            [Filter(kinds=self.settings.kinds, since=since)], self._on_request, self.relays
        )
        logger.info("DVM %s listening for kinds %s", self.pubkey[:12], self.settings.kinds)

    async def stop(self) -> None:
        unsubscribe, self._unsubscribe = self._unsubscribe, None
        if unsubscribe is not None:
            unsubscribe()
        tasks = list(self._jobs.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def _addressed_to_us(self, event: Event) -> bool:
        target = event.tag_value("p")
        return target is None or target == self.pubkey

    def _on_request(self, event: Event) -> None:
        if event.id in self._jobs or event.pubkey == self.pubkey:
            return
        if event.kind not in self.settings.kinds or not self._addressed_to_us(event):
            return
        if not verify_event(event):
            logger.warning("request %s failed signature check; ignored", event.id[:12])
            return
        task = asyncio.ensure_future(self.process_request(event))
        self._jobs[event.id] = task
        task.add_done_callback(lambda _t, job_id=event.id: self._jobs.pop(job_id, None))

    async def _publish(self, event: Event) -> None:
        await self.transport.publish(event, self.relays)

    async def _feedback(self, request: DecodedJobRequest, status: FeedbackStatus, extra_info: str = "", **kwargs) -> None:
        await self._publish(
            build_feedback_event(
                self.keypair,
                request.event,
                status,
                extra_info=extra_info or None,
                encrypt=request.encrypted,
                cipher=self.cipher,
                **kwargs,
            )
        )

    async def process_request(self, event: Event) -> None:
        """Run one job end to end. Network failures are logged; the job is abandoned."""
        try:
            await self._process(event)
        except NetworkError as e:
            logger.error("job %s abandoned, relay publish failed: %s", event.id[:12], e)
            track_safely(self.metrics, "dvm", "job_abandoned", event.id[:8])

    async def _process(self, event: Event) -> None:
        try:
            request = decode_job_request(event, self.keypair, self.cipher)
        except DVMError as e:
            logger.info("cannot read request %s: %s", event.id[:12], e)
            await self._publish(
                build_feedback_event(self.keypair, event, FeedbackStatus.ERROR, extra_info=f"Unreadable request: {e}")
            )
            return

        prompt = request.text_input()
        if not prompt:
            await self._feedback(request, FeedbackStatus.ERROR, "No text input provided")
            return

        max_tokens = _int_param(request.params, "max_tokens")
        tokens, price_sats = quote_price_sats(prompt, max_tokens, self.settings)
        try:
            invoice = await self.wallet.create_invoice(
                price_sats, f"NIP-90 Job: {event.id[:8]}", self.settings.invoice_timeout_seconds
            )
        except DVMError as e:
            logger.error("invoice creation failed for %s: %s", event.id[:12], e)
            await self._feedback(request, FeedbackStatus.ERROR, f"Could not create invoice: {e}")
            return

        await self._feedback(
            request,
            FeedbackStatus.PAYMENT_REQUIRED,
            f"Pay {price_sats} sats (~{tokens} tokens) to start",
            amount_msats=price_sats * 1000,
            invoice=invoice.bolt11,
        )
        track_safely(self.metrics, "dvm", "invoice_issued", event.id[:8], price_sats)

        if not await self._wait_for_payment(invoice):
            await self._feedback(request, FeedbackStatus.ERROR, INVOICE_EXPIRED)
            return
        track_safely(self.metrics, "dvm", "payment_received", event.id[:8], price_sats)

        await self._feedback(request, FeedbackStatus.PROCESSING, "Payment received, generating")
        options = StreamTextOptions(
            model=request.params.get("model"),
            temperature=_float_param(request.params, "temperature"),
            max_tokens=max_tokens,
        )
        parts = []
        try:
            async with self.model.stream_text(prompt, options) as stream:
                async for chunk in stream:
                    if chunk.is_info:
                        continue
                    parts.append(chunk.text)
                    if self.settings.stream_partials:
                        await self._feedback(request, FeedbackStatus.PARTIAL, content=chunk.text)
        except NetworkError:
            raise
        except DVMError as e:
            logger.warning("generation failed for %s: %s", event.id[:12], e)
            await self._feedback(request, FeedbackStatus.ERROR, f"Generation failed: {e}")
            return

        text = "".join(parts)
        await self._publish(
            build_result_event(
                self.keypair,
                request.event,
                text,
                amount_msats=price_sats * 1000,
                encrypt=request.encrypted,
                cipher=self.cipher,
            )
        )
        model_used = options.model or getattr(self.model, "model", None) or self.model.provider_name
        used = estimate_tokens(prompt) + estimate_tokens(text)
        await self._feedback(request, FeedbackStatus.SUCCESS, completion_info(used, model_used))
        logger.info("job %s completed (%d chars, %d sats)", event.id[:12], len(text), price_sats)
        track_safely(self.metrics, "dvm", "job_completed", event.id[:8], price_sats)

    async def _wait_for_payment(self, invoice: Invoice) -> bool:
        """Poll the wallet until the invoice is paid, expired, or the timeout passes."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.invoice_timeout_seconds
        while loop.time() < deadline:
            try:
                state = await self.wallet.check_invoice_status(invoice)
            except NetworkError as e:
                logger.warning("invoice status check failed, will retry: %s", e)
                state = "pending"
            if state == "paid":
                return True
            if state in ("expired", "error"):
                return False
            await asyncio.sleep(self.settings.payment_poll_interval)
        return False

    async def _own_events(self) -> JobHistory:
        events = await self.transport.query(
            [Filter(authors=[self.pubkey], kinds=JOB_RESULT_KINDS + [JOB_FEEDBACK_KIND])], self.relays
        )
        job_ids = sorted({ref for ref in (job_reference(e) for e in events) if ref})
        requests = await self.transport.query([Filter(ids=job_ids)], self.relays) if job_ids else []
        return JobHistory.from_events(events, self.pubkey, requests)

    async def get_job_history(
        self, page: int = 1, page_size: int = 20, status: Optional[JobHistoryStatus] = None
    ) -> JobHistoryPage:
        return (await self._own_events()).page(page, page_size, status)

    async def get_job_statistics(self) -> JobStatistics:
        return (await self._own_events()).statistics()
