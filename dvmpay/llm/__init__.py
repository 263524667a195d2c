"""
Language models: one streaming contract, several providers.

  nip90   paid job on a remote DVM over Nostr relays
  ollama  local model on an Ollama server
"""

from dvmpay.llm.base import LanguageModel
from dvmpay.llm.prompt import format_prompt
from dvmpay.llm.stream import ChunkStream, collect_text


def create_language_model(provider: str = "nip90", **kwargs) -> LanguageModel:
    """
    Single entry point: returns a language model for the named provider.

    Args:
        provider: "nip90" (kwargs: client, config, identity, payments, metrics)
                  or "ollama" (kwargs: base_url, model, timeout_seconds)
    """
    if provider in ("nip90", "dvm"):
        from dvmpay.llm.dvm import DVMLanguageModel

        return DVMLanguageModel(**kwargs)
    if provider == "ollama":
        from dvmpay.llm.ollama import OllamaLanguageModel

        return OllamaLanguageModel(**kwargs)
    raise ValueError(f"Unknown language model provider {provider!r}; supported: nip90, ollama")


__all__ = [
    "ChunkStream",
    "LanguageModel",
    "collect_text",
    "create_language_model",
    "format_prompt",
]
