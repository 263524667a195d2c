"""
Error taxonomy for DVM job orchestration.

Every failure the library surfaces is a DVMError subclass, so callers can catch
one base type and branch on the concrete class:

  ValidationError  malformed request input, raised before any network I/O
  EncryptionError  request content could not be encrypted
  DecryptionError  a required fetch returned content we could not decrypt
  NetworkError     publish/query/subscribe failed at the transport
  ProtocolError    the provider reported "error", or sent an unusable invoice
  PaymentError     the wallet failed to pay; terminates the stream
  ConfigError      missing or invalid environment configuration

Transport errors are marked retryable but never retried here; retry policy
belongs to the caller.
"""

from typing import Any, Dict, Optional


class DVMError(Exception):
    """Base exception for dvmpay."""

    retryable = False

    def __init__(
        self,
        message: str,
        cause: Optional[BaseException] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.cause = cause
        self.context = context or {}

    def __str__(self) -> str:
        return self.message


class ValidationError(DVMError):
    """Malformed job request input."""


class EncryptionError(DVMError):
    """NIP-04 encryption failed."""


class DecryptionError(DVMError):
    """NIP-04 decryption failed."""


class NetworkError(DVMError):
    """Relay publish, query or subscribe failed."""

    retryable = True


class ProtocolError(DVMError):
    """Provider reported an error or sent data we cannot act on."""


class PaymentError(DVMError):
    """Wallet could not pay an invoice. Never retried."""


class ConfigError(DVMError):
    """Environment configuration is missing or invalid."""
