"""
NIP-04 content encryption.

shared = x-coordinate of ECDH(sender secret, receiver x-only pubkey)
content = base64(AES-256-CBC(shared, iv, pkcs7(plaintext))) + "?iv=" + base64(iv)

Both directions derive the same secret, so a requester decrypts a provider's
reply with its own secret and the provider's pubkey. Stateless: no keys or
buffers are retained between calls.
"""

import base64
import binascii
import os
from typing import Protocol

from coincurve import PublicKey
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from dvmpay.errors import DecryptionError, EncryptionError

IV_SIZE = 16
IV_SEPARATOR = "?iv="


class ContentCipher(Protocol):
    def encrypt(self, secret_key: bytes, counterparty_pubkey: str, plaintext: str) -> str:
        ...

    def decrypt(self, secret_key: bytes, counterparty_pubkey: str, ciphertext: str) -> str:
        ...


def shared_secret(secret_key: bytes, counterparty_pubkey: str) -> bytes:
    """32-byte ECDH x-coordinate. Raises ValueError for a bad key."""
    point = PublicKey(b"\x02" + bytes.fromhex(counterparty_pubkey))
    return point.multiply(secret_key).format(compressed=True)[1:33]


class Nip04Cipher:
    """AES-256-CBC under the ECDH shared secret (NIP-04)."""

    def encrypt(self, secret_key: bytes, counterparty_pubkey: str, plaintext: str) -> str:
        try:
            key = shared_secret(secret_key, counterparty_pubkey)
        except ValueError as e:
            raise EncryptionError(f"Cannot derive shared secret: {e}", cause=e) from e
        iv = os.urandom(IV_SIZE)
        padder = padding.PKCS7(128).padder()
        padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()
        encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
        ct = encryptor.update(padded) + encryptor.finalize()
        return base64.b64encode(ct).decode("ascii") + IV_SEPARATOR + base64.b64encode(iv).decode("ascii")

    def decrypt(self, secret_key: bytes, counterparty_pubkey: str, ciphertext: str) -> str:
        if IV_SEPARATOR not in ciphertext:
            raise DecryptionError("Ciphertext is missing the ?iv= suffix")
        body, iv_b64 = ciphertext.split(IV_SEPARATOR, 1)
        try:
            key = shared_secret(secret_key, counterparty_pubkey)
            ct = base64.b64decode(body, validate=True)
            iv = base64.b64decode(iv_b64, validate=True)
            if len(iv) != IV_SIZE:
                raise ValueError(f"IV must be {IV_SIZE} bytes, got {len(iv)}")
            decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
            padded = decryptor.update(ct) + decryptor.finalize()
            unpadder = padding.PKCS7(128).unpadder()
            data = unpadder.update(padded) + unpadder.finalize()
            return data.decode("utf-8")
        except (ValueError, binascii.Error, UnicodeDecodeError) as e:
            raise DecryptionError(f"NIP-04 decryption failed: {e}", cause=e) from e


DEFAULT_CIPHER = Nip04Cipher()
