"""
Crypto Envelope Tests
AES-256-GCM sealing of custodial wallet secrets
"""

import pytest

from services.crypto_envelope import CryptoEnvelope
from utils.exceptions import CorruptEnvelopeError, KeyUnavailableError

SECRET = "a" * 40
OTHER_SECRET = "b" * 40


class TestCryptoEnvelope:

    def test_open_returns_sealed_bytes(self):
        envelope = CryptoEnvelope(SECRET)
        sealed = envelope.seal(b"\x01" * 32)

        assert set(sealed) == {"key_id", "nonce", "tag", "ciphertext"}
        assert envelope.open(sealed) == b"\x01" * 32

    def test_fresh_nonce_per_seal(self):
        envelope = CryptoEnvelope(SECRET)
        first, second = envelope.seal(b"same"), envelope.seal(b"same")

        assert first["nonce"] != second["nonce"], "Nonces must never repeat"
        assert first["ciphertext"] != second["ciphertext"]

    def test_tampered_ciphertext_fails_authentication(self):
        envelope = CryptoEnvelope(SECRET)
        sealed = envelope.seal(b"secret key material")
        flipped = format(int(sealed["ciphertext"][:2], 16) ^ 0x01, "02x")
        sealed["ciphertext"] = flipped + sealed["ciphertext"][2:]

        with pytest.raises(CorruptEnvelopeError):
            envelope.open(sealed)

    def test_wrong_master_key(self):
        sealed = CryptoEnvelope(SECRET).seal(b"secret")
        with pytest.raises(CorruptEnvelopeError):
            CryptoEnvelope(OTHER_SECRET).open(sealed)

    def test_malformed_envelope(self):
        envelope = CryptoEnvelope(SECRET)
        sealed = envelope.seal(b"secret")
        del sealed["tag"]
        with pytest.raises(CorruptEnvelopeError):
            envelope.open(sealed)

    def test_unknown_key_id(self):
        envelope = CryptoEnvelope(SECRET)
        sealed = envelope.seal(b"secret")
        sealed["key_id"] = "v0"
        with pytest.raises(KeyUnavailableError):
            envelope.open(sealed)

    @pytest.mark.parametrize("secret", ["", "short-secret"])
    def test_missing_or_short_secret(self, secret):
        with pytest.raises(KeyUnavailableError):
            CryptoEnvelope(secret)
