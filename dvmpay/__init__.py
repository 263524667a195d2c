"""
dvmpay: delegate paid jobs to NIP-90 data vending machines.

Publish a signed (optionally encrypted) job request to Nostr relays, follow
its feedback and result events, stream the text back through a generic
language-model interface, and pay small Lightning invoices along the way.
"""

from dvmpay.client import DVMClient
from dvmpay.errors import (
    ConfigError,
    DecryptionError,
    DVMError,
    EncryptionError,
    NetworkError,
    PaymentError,
    ProtocolError,
    ValidationError,
)
from dvmpay.jobs import create_job_request
from dvmpay.keys import Keypair
from dvmpay.llm import ChunkStream, LanguageModel, create_language_model
from dvmpay.schema import ChatMessage, FeedbackStatus, JobFeedback, JobRequest, JobResult, TextChunk

__version__ = "0.1.0"

__all__ = [
    "ChatMessage",
    "ChunkStream",
    "ConfigError",
    "DVMClient",
    "DVMError",
    "DecryptionError",
    "EncryptionError",
    "FeedbackStatus",
    "JobFeedback",
    "JobRequest",
    "JobResult",
    "Keypair",
    "LanguageModel",
    "NetworkError",
    "PaymentError",
    "ProtocolError",
    "TextChunk",
    "ValidationError",
    "__version__",
    "create_job_request",
    "create_language_model",
]
