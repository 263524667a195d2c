"""Deterministic job pricing: size estimate in, sats out."""

import math
from typing import Optional, Tuple

from dvmpay.config import ProviderSettings

CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def quote_price_sats(prompt: str, max_tokens: Optional[int], settings: ProviderSettings) -> Tuple[int, int]:
    """
    (estimated total tokens, price in sats). Input tokens are estimated from
    the prompt length; output tokens are the requested max_tokens or the
    configured default. The price never drops below min_price_sats.
    """
    output_tokens = max_tokens if max_tokens and max_tokens > 0 else settings.default_output_tokens
    tokens = estimate_tokens(prompt) + output_tokens
    price = math.ceil(tokens / 1000 * settings.price_per_1k_tokens)
    return tokens, max(settings.min_price_sats, price)
