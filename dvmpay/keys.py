"""
Nostr identity: local secp256k1 keypair, no key files.

The long-lived key is loaded from DVMPAY_PRIVATE_KEY (env) or a .env file.
Job requests may instead use an ephemeral keypair: generated for one request,
owned by that request, and never reused, so requests cannot be linked to a
persistent identity.
"""

import os
import re
import secrets
from typing import Optional

from coincurve import PrivateKey, PublicKeyXOnly
from dotenv import load_dotenv

from dvmpay.errors import ConfigError, ValidationError

ENV_PRIVATE_KEY = "DVMPAY_PRIVATE_KEY"

_HEX64 = re.compile(r"^[0-9a-f]{64}$")


def is_hex_key(value: Optional[str]) -> bool:
    """True for a 64-char lowercase hex string (x-only pubkey or secret)."""
    return bool(value) and bool(_HEX64.match(value))


class Keypair:
    """
    BIP-340 keypair. public_key is the 32-byte x-only key as hex, the form used
    in event pubkeys and `p` tags.
    """

    def __init__(self, private_key: PrivateKey, ephemeral: bool = False):
        self._private_key = private_key
        self._public_key = PublicKeyXOnly.from_secret(private_key.secret).format().hex()
        self.ephemeral = ephemeral

    @property
    def public_key(self) -> str:
        return self._public_key

    @property
    def secret(self) -> bytes:
        return self._private_key.secret

    @property
    def private_key_hex(self) -> str:
        return self._private_key.secret.hex()

    def sign(self, message: bytes) -> str:
        """Schnorr-sign a 32-byte message (an event id). Returns the signature as hex."""
        return self._private_key.sign_schnorr(message, secrets.token_bytes(32)).hex()

    def __repr__(self) -> str:
        kind = "ephemeral" if self.ephemeral else "persistent"
        return f"Keypair({kind}, pubkey={self._public_key[:12]}...)"

    @classmethod
    def generate(cls) -> "Keypair":
        """New random keypair. Caller must persist it via env (never to file)."""
        return cls(PrivateKey())

    @classmethod
    def ephemeral_for_request(cls) -> "Keypair":
        """Single-use keypair for one job request."""
        return cls(PrivateKey(), ephemeral=True)

    @classmethod
    def from_hex(cls, private_key: str) -> "Keypair":
        pk = private_key.strip().lower()
        if pk.startswith("0x"):
            pk = pk[2:]
        if not is_hex_key(pk):
            raise ValidationError("Private key must be 64 hex characters")
        try:
            return cls(PrivateKey(bytes.fromhex(pk)))
        except ValueError as e:
            raise ValidationError(f"Invalid secp256k1 private key: {e}", cause=e) from e

    @classmethod
    def from_env(cls) -> "Keypair":
        """
        Load key from DVMPAY_PRIVATE_KEY env or .env file.
        Raises ConfigError if unset.
        """
        load_dotenv(override=False)
        pk_env = os.getenv(ENV_PRIVATE_KEY)
        if not pk_env or not pk_env.strip():
            raise ConfigError(
                f"Set {ENV_PRIVATE_KEY} in the environment (never commit it). "
                "Generate one: dvmpay keygen"
            )
        try:
            return cls.from_hex(pk_env)
        except ValidationError as e:
            raise ConfigError(f"{ENV_PRIVATE_KEY} is invalid: {e}", cause=e) from e
