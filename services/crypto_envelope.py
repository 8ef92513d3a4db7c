"""
Crypto Envelope
AES-256-GCM sealing of custodial wallet secrets under a process-wide master key
"""

import logging
import os
from typing import Dict, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from config import Config
from utils.exceptions import CorruptEnvelopeError, KeyUnavailableError

logger = logging.getLogger(__name__)

NONCE_BYTES = 12
TAG_BYTES = 16
# Envelopes carry a key id so a rotated master key can coexist with old records
CURRENT_KEY_ID = "v1"


class CryptoEnvelope:
    """
    Seals and opens secrets with authenticated encryption.

    The master key is SHA-256 of the configured secret. Each seal uses a fresh
    96-bit random nonce. Envelopes are dicts of hex strings:
    {key_id, nonce, tag, ciphertext}.
    """

    def __init__(self, secret: Optional[str] = None):
        secret = secret if secret is not None else Config.KEY_ENCRYPTION_SECRET
        if not secret:
            raise KeyUnavailableError("KEY_ENCRYPTION_SECRET is not configured")
        if len(secret) < Config.KEY_ENCRYPTION_MIN_LENGTH:
            raise KeyUnavailableError(
                f"KEY_ENCRYPTION_SECRET must be at least {Config.KEY_ENCRYPTION_MIN_LENGTH} characters"
            )
        self._aead = AESGCM(self._derive_key(secret))
        self.key_id = CURRENT_KEY_ID

    @staticmethod
    def _derive_key(secret: str) -> bytes:
        digest = hashes.Hash(hashes.SHA256())
        digest.update(secret.encode("utf-8"))
        return digest.finalize()

    def seal(self, plaintext: bytes) -> Dict[str, str]:
        if isinstance(plaintext, str):
            plaintext = plaintext.encode("utf-8")
        nonce = os.urandom(NONCE_BYTES)
        sealed = self._aead.encrypt(nonce, plaintext, None)
        # AESGCM appends the tag to the ciphertext
        ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
        return {
            "key_id": self.key_id,
            "nonce": nonce.hex(),
            "tag": tag.hex(),
            "ciphertext": ciphertext.hex(),
        }

    def open(self, envelope: Dict[str, str]) -> bytes:
        key_id = envelope.get("key_id", CURRENT_KEY_ID)
        if key_id != self.key_id:
            raise KeyUnavailableError(f"No master key loaded for key id {key_id}")

        try:
            nonce = bytes.fromhex(envelope["nonce"])
            tag = bytes.fromhex(envelope["tag"])
            ciphertext = bytes.fromhex(envelope["ciphertext"])
        except (KeyError, TypeError, ValueError) as e:
            raise CorruptEnvelopeError(f"Malformed envelope: {type(e).__name__}") from e

        if len(nonce) != NONCE_BYTES or len(tag) != TAG_BYTES:
            raise CorruptEnvelopeError("Envelope nonce or tag has the wrong length")

        try:
            return self._aead.decrypt(nonce, ciphertext + tag, None)
        except InvalidTag as e:
            logger.error("❌ ENVELOPE_AUTH_FAILED: authentication tag did not verify")
            raise CorruptEnvelopeError("Envelope authentication failed") from e


_envelope_instance: Optional[CryptoEnvelope] = None


def get_crypto_envelope() -> CryptoEnvelope:
    """Process-wide envelope; raises KEY_UNAVAILABLE when the secret is missing"""
    global _envelope_instance
    if _envelope_instance is None:
        _envelope_instance = CryptoEnvelope()
    return _envelope_instance
