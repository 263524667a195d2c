"""
Language model backed by a NIP-90 DVM.

Each stream_text() call is one job: on first pull the prompt is flattened,
a request is signed (with a fresh ephemeral key unless configured
otherwise), published, and the job's updates are subscribed. Relay pushes are
folded through the lifecycle reducer and land in the stream's bounded queue;
payment-required detours through the payment handler. If every relay drops
the subscription, the stream fails with NetworkError.
"""

import asyncio
import logging
from typing import List, Optional, Set

from dvmpay.client import DVMClient
from dvmpay.config import DVMProviderConfig
from dvmpay.errors import DVMError, NetworkError, PaymentError
from dvmpay.jobs import create_job_request
from dvmpay.keys import Keypair
from dvmpay.lifecycle import Cancelled, JobState, LifecycleEvent, LocalFailure, PaymentDue, from_update, reduce
from dvmpay.llm.base import LanguageModel
from dvmpay.llm.prompt import Prompt, format_prompt
from dvmpay.llm.stream import ChunkStream
from dvmpay.payments.handler import PaymentContinuationHandler
from dvmpay.schema import JobParam, JobRequest, JobUpdate, StreamTextOptions
from dvmpay.telemetry import MetricsSink, track_safely
from dvmpay.transport import Cancel

logger = logging.getLogger(__name__)


class DVMLanguageModel(LanguageModel):
    provider_name = "nip90"

    def __init__(
        self,
        client: DVMClient,
        config: DVMProviderConfig,
        identity: Optional[Keypair] = None,
        payments: Optional[PaymentContinuationHandler] = None,
        metrics: Optional[MetricsSink] = None,
    ):
        self.client = client
        self.config = config
        self.identity = identity
        self.payments = payments or PaymentContinuationHandler(wallet=None)
        self.metrics = metrics

    def _requester(self) -> Keypair:
        if self.config.use_ephemeral_requests or self.identity is None:
            return Keypair.ephemeral_for_request()
        return self.identity

    def _params(self, options: Optional[StreamTextOptions]) -> List[JobParam]:
        options = options or StreamTextOptions()
        values = {
            "model": options.model or self.config.model_identifier,
            "temperature": options.temperature if options.temperature is not None else self.config.temperature,
            "max_tokens": options.max_tokens if options.max_tokens is not None else self.config.max_tokens,
        }
        params = [JobParam(name=k, value=str(v)) for k, v in values.items() if v is not None]
        params += [JobParam(name=k, value=v) for k, v in options.extra_params.items()]
        return params

    def stream_text(self, prompt: Prompt, options: Optional[StreamTextOptions] = None) -> ChunkStream:
        return _DVMJob(self, prompt, options).stream


class _DVMJob:
    """One in-flight job: request, subscription, lifecycle state and stream."""

    def __init__(self, model: DVMLanguageModel, prompt: Prompt, options: Optional[StreamTextOptions]):
        self.model = model
        self.prompt = prompt
        self.options = options
        self.request: Optional[JobRequest] = None
        self.state = JobState(confirm_resume=model.payments.confirm_resume)
        self.stream = ChunkStream(start=self._start, max_buffer=model.config.stream_buffer)
        self.stream.add_close_callback(self._teardown)
        self._unsubscribe: Optional[Cancel] = None
        self._payment_tasks: Set[asyncio.Task] = set()

    @property
    def job_id(self) -> str:
        return self.request.id if self.request else ""

    async def _start(self, stream: ChunkStream) -> None:
        model = self.model
        config = model.config
        text = format_prompt(self.prompt)
        requester = model._requester()
        self.request = create_job_request(
            config.request_kind,
            [(text, "text")],
            model._params(self.options),
            requester=requester,
            target_provider=config.dvm_pubkey,
            requires_encryption=config.requires_encryption,
            bid_msats=config.bid_msats,
            output=config.output,
            cipher=model.client.cipher,
        )
        await model.client.publish_job_request(self.request)
        unsubscribe = await model.client.subscribe_to_job_updates(
            self.request.id, config.dvm_pubkey, requester, self._on_update, on_closed=self._on_lost
        )
        if stream.closed:
            unsubscribe()
        else:
            self._unsubscribe = unsubscribe
        track_safely(model.metrics, "nip90", "stream_started", self.job_id[:8])

    def _on_update(self, update: JobUpdate) -> None:
        if self.stream.closed:
            return
        event = from_update(update)
        if event is None:
            logger.debug("ignoring update %s with unknown status", update.id[:12])
            return
        self._apply(event)

    def _on_lost(self, reason: str) -> None:
        if self.stream.closed:
            return
        self._unsubscribe = None
        self._apply(LocalFailure(NetworkError(f"Lost the subscription for job {self.job_id[:12]}: {reason}")))

    def _apply(self, event: LifecycleEvent) -> None:
        transition = reduce(self.state, event)
        self.state = transition.state
        for chunk in transition.chunks:
            if not self.stream.emit(chunk):
                return
        if transition.payment is not None:
            task = asyncio.ensure_future(self._pay(transition.payment))
            self._payment_tasks.add(task)
            task.add_done_callback(self._payment_tasks.discard)
        if transition.error is not None:
            logger.info("job %s failed: %s", self.job_id[:12], transition.error)
            self.stream.fail(transition.error)
        elif transition.done:
            self.stream.finish()

    async def _pay(self, due: PaymentDue) -> None:
        try:
            outcome = await self.model.payments.handle(due, self.job_id)
        except DVMError as e:
            outcome = LocalFailure(e)
        except Exception as e:
            outcome = LocalFailure(PaymentError(f"Payment handler crashed: {e}", cause=e))
        if not self.stream.closed:
            self._apply(outcome)

    def _teardown(self) -> None:
        if self.stream.cancelled:
            self.state = reduce(self.state, Cancelled()).state
        unsubscribe, self._unsubscribe = self._unsubscribe, None
        if unsubscribe is not None:
            unsubscribe()
        current = asyncio.current_task() if _loop_running() else None
        for task in list(self._payment_tasks):
            if task is not current:
                task.cancel()
        track_safely(self.model.metrics, "nip90", "stream_closed", self.job_id[:8], self.state.phase.value)


def _loop_running() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True
