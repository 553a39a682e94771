"""Authenticated encryption of descriptors under the session key."""

from __future__ import annotations

import os
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305

from .constants import NONCE_BYTES, SESSION_KEY_BYTES, TAG_BYTES
from .errors import AuthFailure, InvalidInput


@dataclass(frozen=True, slots=True)
class Envelope:
    """Nonce plus ChaCha20-Poly1305 ciphertext (tag appended)."""

    nonce: bytes
    ciphertext: bytes


def seal_envelope(key: bytes, plaintext: bytes, *, associated_data: bytes = b"") -> Envelope:
    aead = ChaCha20Poly1305(_expect_key(key))
    if not isinstance(plaintext, (bytes, bytearray)):
        raise InvalidInput("plaintext must be bytes")

    nonce = os.urandom(NONCE_BYTES)
    ciphertext = aead.encrypt(nonce, bytes(plaintext), associated_data or None)
    return Envelope(nonce=nonce, ciphertext=ciphertext)


def open_envelope(key: bytes, envelope: Envelope, *, associated_data: bytes = b"") -> bytes:
    """Decrypt ``envelope`` or raise ``AuthFailure``; never returns partial plaintext."""
    aead = ChaCha20Poly1305(_expect_key(key))
    if not isinstance(envelope, Envelope):
        raise InvalidInput("envelope must be an Envelope")
    if len(envelope.nonce) != NONCE_BYTES:
        raise AuthFailure("envelope nonce has wrong length")
    if len(envelope.ciphertext) < TAG_BYTES:
        raise AuthFailure("envelope ciphertext truncated")

    try:
        return aead.decrypt(envelope.nonce, envelope.ciphertext, associated_data or None)
    except InvalidTag as exc:
        raise AuthFailure("envelope authentication failed") from exc


def _expect_key(key: bytes) -> bytes:
    if not isinstance(key, (bytes, bytearray)) or len(key) != SESSION_KEY_BYTES:
        raise InvalidInput(f"session key must be {SESSION_KEY_BYTES} bytes")
    return bytes(key)
