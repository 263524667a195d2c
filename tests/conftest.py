"""Shared fixtures: keypairs, an in-process relay, a fake wallet and a scripted DVM."""

import asyncio
import uuid
from typing import List, Optional

import pytest

from dvmpay.errors import PaymentError
from dvmpay.events import Event, is_request_kind
from dvmpay.jobs import build_feedback_event, build_result_event
from dvmpay.keys import Keypair
from dvmpay.llm.base import LanguageModel
from dvmpay.llm.stream import ChunkStream
from dvmpay.payments import Invoice, PaymentReceipt
from dvmpay.schema import FeedbackStatus, TextChunk
from dvmpay.transport.memory import MemoryRelay


def fake_bolt11(amount_sats: int) -> str:
    return f"lnbc{amount_sats}0n1p{uuid.uuid4().hex}"


class FakeWallet:
    """Records payments and invoices; status of created invoices is settable."""

    def __init__(self, fail: Optional[str] = None, invoice_status: str = "paid"):
        self.fail = fail
        self.invoice_status = invoice_status
        self.payments: List[str] = []
        self.invoices: List[Invoice] = []
        self.status_checks = 0

    async def pay_invoice(self, invoice: str, max_fee_sats: int, timeout_seconds: int) -> PaymentReceipt:
        self.payments.append(invoice)
        if self.fail:
            raise PaymentError(self.fail)
        return PaymentReceipt(payment_hash=uuid.uuid4().hex * 2)

    async def create_invoice(self, amount_sats: int, memo: str, expiry_seconds: int = 3600) -> Invoice:
        invoice = Invoice(
            bolt11=fake_bolt11(amount_sats),
            payment_hash=uuid.uuid4().hex * 2,
            amount_sats=amount_sats,
            memo=memo,
        )
        self.invoices.append(invoice)
        return invoice

    async def check_invoice_status(self, invoice: Invoice) -> str:
        self.status_checks += 1
        return self.invoice_status


class MockDVM:
    """Answers job requests by hand: tests decide what to publish and when."""

    def __init__(self, keys: Keypair, relay: MemoryRelay):
        self.keys = keys
        self.relay = relay

    async def wait_for_request(self, timeout: float = 2.0) -> Event:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while loop.time() < deadline:
            for ev in self.relay.events:
                if is_request_kind(ev.kind):
                    return ev
            await asyncio.sleep(0.005)
        raise AssertionError("no job request was published")

    def feedback(self, request: Event, status: FeedbackStatus, extra: Optional[str] = None, content: str = "", **kwargs) -> Event:
        return build_feedback_event(
            self.keys, request, status, extra_info=extra, content=content, encrypt=request.is_encrypted, **kwargs
        )

    def result(self, request: Event, content: str, **kwargs) -> Event:
        return build_result_event(self.keys, request, content, encrypt=request.is_encrypted, **kwargs)

    async def send(self, *events: Event) -> None:
        for ev in events:
            await self.relay.publish(ev)


class EchoModel(LanguageModel):
    """Local model that streams fixed pieces; counts how often it was asked."""

    provider_name = "echo"

    def __init__(self, pieces=("Hello", " world")):
        self.pieces = list(pieces)
        self.calls = 0

    def stream_text(self, prompt, options=None) -> ChunkStream:
        async def start(stream: ChunkStream) -> None:
            self.calls += 1
            for piece in self.pieces:
                stream.emit(TextChunk(text=piece))
            stream.finish()

        return ChunkStream(start=start)


@pytest.fixture
def requester():
    return Keypair.generate()


@pytest.fixture
def dvm_keys():
    return Keypair.generate()


@pytest.fixture
def relay():
    return MemoryRelay()


@pytest.fixture
def wallet():
    return FakeWallet()


@pytest.fixture
def mock_dvm(dvm_keys, relay):
    return MockDVM(dvm_keys, relay)
