"""
Envelope Codec - Authenticated Encryption for Content at Rest
=============================================================

Every stored binary (photo bytes, blog fields) is wrapped in a single
opaque byte string:

    salt (64) | iv (16) | authTag (16) | ciphertext (N)

The AES-256 key is derived per envelope from a master secret and the
random salt with PBKDF2-HMAC-SHA512 (100,000 iterations). These
parameters are a wire contract shared with every writer and reader of
the vault, so they are constants rather than settings.

Photos pass through two independent layers: the client layer (applied
before upload) and the server layer (applied on write). EnvelopeStack
undoes them in reverse order and reports the outcome of every layer.
"""

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from recollect.errors import (
    AuthenticationError,
    EncryptionError,
    MalformedEnvelopeError,
    RecollectError,
)

logger = logging.getLogger(__name__)

SALT_LENGTH = 64
IV_LENGTH = 16
TAG_LENGTH = 16
HEADER_LENGTH = SALT_LENGTH + IV_LENGTH + TAG_LENGTH  # 96
KEY_LENGTH = 32  # AES-256
KDF_ITERATIONS = 100_000

# Single external message for every open failure.
_DECRYPTION_FAILED = "Decryption failed."


class EnvelopeCodec:
    """
    Encrypts and decrypts byte buffers into envelopes.

    Stateless apart from the random source, which can be swapped for a
    seeded one in tests to make encode deterministic.

    Args:
        random_source: callable returning n random bytes (default os.urandom)
    """

    def __init__(self, random_source: Optional[Callable[[int], bytes]] = None):
        self.random_source = random_source or os.urandom

    @staticmethod
    def derive_key(master_secret: str, salt: bytes) -> bytes:
        """PBKDF2-HMAC-SHA512 -> 32-byte key."""
        if not master_secret:
            raise EncryptionError("Master secret is empty")

        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA512(),
            length=KEY_LENGTH,
            salt=salt,
            iterations=KDF_ITERATIONS,
        )
        return kdf.derive(master_secret.encode("utf-8"))

    def encode(self, plaintext: bytes, master_secret: str) -> bytes:
        """
        Seal plaintext into a new envelope.

        A fresh salt and IV are drawn on every call, so encoding the same
        plaintext twice never yields the same envelope.

        Raises:
            EncryptionError: if the cipher rejects the key or IV
        """
        salt = self.random_source(SALT_LENGTH)
        iv = self.random_source(IV_LENGTH)
        key = self.derive_key(master_secret, salt)

        try:
            sealed = AESGCM(key).encrypt(iv, bytes(plaintext), None)
        except (ValueError, TypeError) as exc:
            raise EncryptionError(f"Encryption failed: {exc}") from exc

        # AESGCM appends the tag; the envelope stores it before the ciphertext
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return salt + iv + tag + ciphertext

    def decode(self, envelope: bytes, master_secret: str) -> bytes:
        """
        Open an envelope produced by encode() with the same master secret.

        Raises:
            MalformedEnvelopeError: envelope shorter than the 96-byte header
            AuthenticationError: tag did not verify
        """
        envelope = bytes(envelope)
        if len(envelope) < HEADER_LENGTH:
            raise MalformedEnvelopeError(
                f"Envelope is {len(envelope)} bytes; at least {HEADER_LENGTH} required"
            )

        salt = envelope[:SALT_LENGTH]
        iv = envelope[SALT_LENGTH:SALT_LENGTH + IV_LENGTH]
        tag = envelope[SALT_LENGTH + IV_LENGTH:HEADER_LENGTH]
        ciphertext = envelope[HEADER_LENGTH:]

        key = self.derive_key(master_secret, salt)

        try:
            return AESGCM(key).decrypt(iv, ciphertext + tag, None)
        except InvalidTag:
            raise AuthenticationError(_DECRYPTION_FAILED) from None


_default_codec = EnvelopeCodec()


def encrypt(plaintext: bytes, master_secret: str) -> bytes:
    """Encode with the process-wide codec."""
    return _default_codec.encode(plaintext, master_secret)


def decrypt(envelope: bytes, master_secret: str) -> bytes:
    """Decode with the process-wide codec."""
    return _default_codec.decode(envelope, master_secret)


# ============================================================================
# Layered envelopes
# ============================================================================

class EnvelopeLayer(str, Enum):
    """Independent encryption layers, each with its own master secret."""
    CLIENT = "client"
    SERVER = "server"


# Application order for uploaded photos: the client seals first.
PHOTO_LAYERS = (EnvelopeLayer.CLIENT, EnvelopeLayer.SERVER)
# Items stored before server-side encryption carry only the client layer.
LEGACY_PHOTO_LAYERS = (EnvelopeLayer.CLIENT,)
BLOG_LAYERS = (EnvelopeLayer.SERVER,)


@dataclass
class LayerOutcome:
    """Result of undoing one layer."""
    layer: EnvelopeLayer
    ok: bool
    error_code: Optional[str] = None
    error: Optional[RecollectError] = field(default=None, repr=False)


@dataclass
class UnwrapResult:
    """Final bytes (None on failure) and the per-layer trail."""
    data: Optional[bytes]
    outcomes: List[LayerOutcome]

    @property
    def ok(self) -> bool:
        return self.data is not None

    @property
    def failed_layer(self) -> Optional[EnvelopeLayer]:
        for outcome in self.outcomes:
            if not outcome.ok:
                return outcome.layer
        return None

    def raise_for_failure(self) -> bytes:
        """Return the data, or re-raise the error of the failed layer."""
        for outcome in self.outcomes:
            if not outcome.ok and outcome.error is not None:
                raise outcome.error
        return self.data


LayerKey = Union[EnvelopeLayer, str]


class EnvelopeStack:
    """
    Applies and removes an ordered list of envelope layers.

    Layer lists are always given in application order (innermost first).
    unwrap() walks that list backwards and stops at the first layer that
    fails; there is no implicit fallback to another secret.

    Args:
        secrets: master secret per layer
        codec: codec to use (default: a fresh EnvelopeCodec)
    """

    def __init__(
        self,
        secrets: Mapping[LayerKey, str],
        codec: Optional[EnvelopeCodec] = None
    ):
        self.codec = codec or EnvelopeCodec()
        self._secrets: Dict[EnvelopeLayer, str] = {
            EnvelopeLayer(layer): secret for layer, secret in secrets.items()
        }

    def _secret_for(self, layer: EnvelopeLayer) -> str:
        secret = self._secrets.get(layer)
        if not secret:
            raise EncryptionError(f"No master secret configured for the {layer.value} layer")
        return secret

    def seal(self, data: bytes, layers: Sequence[LayerKey]) -> bytes:
        """Apply each layer in order."""
        for layer in layers:
            data = self.codec.encode(data, self._secret_for(EnvelopeLayer(layer)))
        return data

    def unwrap(self, data: bytes, layers: Sequence[LayerKey]) -> UnwrapResult:
        """
        Undo layers in reverse application order.

        Envelope-level failures are captured in the result; a missing
        secret is a configuration error and raises immediately.
        """
        outcomes: List[LayerOutcome] = []
        current: Optional[bytes] = data

        for layer in reversed([EnvelopeLayer(layer) for layer in layers]):
            secret = self._secret_for(layer)
            try:
                current = self.codec.decode(current, secret)
            except (MalformedEnvelopeError, AuthenticationError) as exc:
                logger.debug("Unwrap failed at %s layer: %s", layer.value, type(exc).__name__)
                outcomes.append(LayerOutcome(
                    layer=layer,
                    ok=False,
                    error_code=type(exc).__name__,
                    error=exc,
                ))
                return UnwrapResult(data=None, outcomes=outcomes)
            outcomes.append(LayerOutcome(layer=layer, ok=True))

        return UnwrapResult(data=current, outcomes=outcomes)
