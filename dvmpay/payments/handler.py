"""
Pay-to-continue for a running job.

When a DVM answers with payment-required, amounts at or below the auto-pay
threshold are paid from the wallet (bounded fee and timeout); larger amounts,
or any amount when no wallet is configured, are surfaced for the user to pay.
The subscription stays open either way; the DVM resumes on its own once it
sees the payment.

resume="optimistic" reports the payment as soon as the wallet confirms it.
resume="confirm" holds that notice until the DVM's next event shows it resumed.
"""

import asyncio
import logging
from typing import Literal, Optional

from pydantic import BaseModel, Field

from dvmpay.errors import DVMError
from dvmpay.lifecycle import InvoiceSurfaced, LifecycleEvent, PaymentDue, PaymentFailed, PaymentSettled
from dvmpay.payments import Wallet
from dvmpay.telemetry import MetricsSink, track_safely

logger = logging.getLogger(__name__)

ResumeMode = Literal["optimistic", "confirm"]


class PaymentPolicy(BaseModel):
    auto_pay_max_sats: int = Field(10, ge=0, description="Pay automatically at or below this amount")
    max_fee_sats: int = Field(10, ge=0)
    timeout_seconds: int = Field(60, gt=0)
    resume: ResumeMode = "optimistic"


class PaymentContinuationHandler:
    def __init__(
        self,
        wallet: Optional[Wallet],
        policy: Optional[PaymentPolicy] = None,
        metrics: Optional[MetricsSink] = None,
    ):
        self.wallet = wallet
        self.policy = policy or PaymentPolicy()
        self.metrics = metrics

    @property
    def confirm_resume(self) -> bool:
        return self.policy.resume == "confirm"

    def should_auto_pay(self, due: PaymentDue) -> bool:
        return self.wallet is not None and due.amount_sats <= self.policy.auto_pay_max_sats

    async def handle(self, due: PaymentDue, job_id: str = "") -> LifecycleEvent:
        """Pay or surface the invoice. Returns the lifecycle event describing what happened."""
        sats = due.amount_sats
        if not self.should_auto_pay(due):
            logger.info("job %s needs %d sats; above auto-pay limit, surfacing invoice", job_id[:12], sats)
            track_safely(self.metrics, "payment", "invoice_surfaced", job_id[:8], sats)
            return InvoiceSurfaced(sats, due.invoice)

        logger.info("auto-paying %d sats for job %s", sats, job_id[:12])
        # Wallet gets its own timeout; the outer bound covers a wallet that ignores it.
        try:
            receipt = await asyncio.wait_for(
                self.wallet.pay_invoice(due.invoice, self.policy.max_fee_sats, self.policy.timeout_seconds),
                timeout=self.policy.timeout_seconds + 5,
            )
        except asyncio.TimeoutError:
            track_safely(self.metrics, "payment", "auto_pay_failure", job_id[:8], sats)
            return PaymentFailed(f"wallet did not finish within {self.policy.timeout_seconds}s")
        except DVMError as e:
            track_safely(self.metrics, "payment", "auto_pay_failure", job_id[:8], sats)
            return PaymentFailed(str(e))
        track_safely(self.metrics, "payment", "auto_pay_success", job_id[:8], sats)
        return PaymentSettled(sats, receipt.payment_hash)
