import pytest

from dvmpay.encryption import Nip04Cipher, shared_secret
from dvmpay.errors import DecryptionError, EncryptionError
from dvmpay.keys import Keypair


@pytest.fixture
def cipher():
    return Nip04Cipher()


def test_shared_secret_is_symmetric():
    a, b = Keypair.generate(), Keypair.generate()
    assert shared_secret(a.secret, b.public_key) == shared_secret(b.secret, a.public_key)


@pytest.mark.parametrize("plaintext", ["hello", "", "ünïcödé ✓", "x" * 5000, '[["i","a","text"]]'])
def test_round_trip(cipher, plaintext):
    alice, bob = Keypair.generate(), Keypair.generate()
    ct = cipher.encrypt(alice.secret, bob.public_key, plaintext)
    assert "?iv=" in ct
    assert cipher.decrypt(bob.secret, alice.public_key, ct) == plaintext


def test_ciphertext_uses_fresh_iv(cipher):
    alice, bob = Keypair.generate(), Keypair.generate()
    assert cipher.encrypt(alice.secret, bob.public_key, "same") != cipher.encrypt(alice.secret, bob.public_key, "same")


@pytest.mark.parametrize("bad", ["no-iv-here", "!!!?iv=AAAAAAAAAAAAAAAAAAAAAA==", "AAAA?iv=short"])
def test_malformed_ciphertext_raises_decryption_error(cipher, bad):
    alice, bob = Keypair.generate(), Keypair.generate()
    with pytest.raises(DecryptionError):
        cipher.decrypt(bob.secret, alice.public_key, bad)


def test_invalid_counterparty_key_raises_encryption_error(cipher):
    alice = Keypair.generate()
    with pytest.raises(EncryptionError):
        cipher.encrypt(alice.secret, "ff" * 32, "hi")
