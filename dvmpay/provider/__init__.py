"""Run as a DVM: invoice-first job processing plus a history read surface."""

from dvmpay.provider.dvm import DVMProvider
from dvmpay.provider.history import JobHistory
from dvmpay.provider.pricing import estimate_tokens, quote_price_sats
from dvmpay.provider.server import create_app

__all__ = ["DVMProvider", "JobHistory", "create_app", "estimate_tokens", "quote_price_sats"]
