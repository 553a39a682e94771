"""Password-authenticated key exchange (SPAKE2, symmetric mode).

Both peers publish their round-1 message before the relay decides who is the
initiator, so the asymmetric A/B variants cannot be used: each side runs
``SPAKE2_Symmetric`` with an identity bound to the slot. The raw SPAKE2 output
is expanded with HKDF into the session key used for envelopes.

A wrong password is never reported here. It produces a different key, and the
mismatch only shows up when the first envelope fails to open.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from spake2 import SPAKE2_Symmetric

from .constants import (
    FINGERPRINT_INFO,
    PAKE_IDENTITY_PREFIX,
    PAKE_MESSAGE_BYTES,
    PAKE_SIDE_SYMMETRIC,
    SESSION_KEY_BYTES,
    SESSION_KEY_INFO,
)
from .errors import InvalidInput, InvalidMessage
from .utils import sha256_prefixed


@dataclass(slots=True)
class PakeState:
    """Local half of one exchange. Single use."""

    message: bytes
    _spake: SPAKE2_Symmetric = field(repr=False)
    _finished: bool = field(default=False, repr=False)


def start_round1(password: str | bytes, *, slot: str = "") -> tuple[PakeState, bytes]:
    """Create the local state and the fixed-length round-1 message."""
    password_bytes = _normalize_password(password)
    if not isinstance(slot, str):
        raise InvalidInput("slot must be a string")

    spake = SPAKE2_Symmetric(password_bytes, idSymmetric=PAKE_IDENTITY_PREFIX + slot.encode("utf-8"))
    message = spake.start()
    if len(message) != PAKE_MESSAGE_BYTES:
        raise InvalidInput(f"unexpected PAKE message length: {len(message)}")
    return PakeState(message=message, _spake=spake), message


def derive_key(state: PakeState, peer_message: bytes) -> bytes:
    """Combine the local state with the peer's round-1 message into a session key."""
    if not isinstance(state, PakeState):
        raise InvalidInput("state must be a PakeState")
    if state._finished:
        raise InvalidInput("PAKE state already used")
    validate_message(peer_message)
    if bytes(peer_message) == state.message:
        raise InvalidMessage("peer message is a reflection of our own")

    state._finished = True
    try:
        shared = state._spake.finish(bytes(peer_message))
    except Exception as exc:
        raise InvalidMessage("peer PAKE message rejected") from exc

    return _expand(shared, SESSION_KEY_INFO)


def validate_message(message: bytes) -> None:
    if not isinstance(message, (bytes, bytearray)):
        raise InvalidMessage("PAKE message must be bytes")
    if len(message) != PAKE_MESSAGE_BYTES:
        raise InvalidMessage(f"PAKE message must be {PAKE_MESSAGE_BYTES} bytes, got {len(message)}")
    if bytes(message[:1]) != PAKE_SIDE_SYMMETRIC:
        raise InvalidMessage("PAKE message is not from a symmetric peer")


def key_fingerprint(key: bytes) -> str:
    """Printable digest of a session key that does not reveal the key itself."""
    if not isinstance(key, (bytes, bytearray)) or len(key) != SESSION_KEY_BYTES:
        raise InvalidInput(f"session key must be {SESSION_KEY_BYTES} bytes")
    return sha256_prefixed(_expand(bytes(key), FINGERPRINT_INFO))


def _expand(secret: bytes, info: bytes) -> bytes:
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=SESSION_KEY_BYTES,
        salt=None,
        info=info,
    )
    return hkdf.derive(secret)


def _normalize_password(password: str | bytes) -> bytes:
    if isinstance(password, str):
        password = password.encode("utf-8")
    if not isinstance(password, (bytes, bytearray)):
        raise InvalidInput("password must be str or bytes")
    if not password:
        raise InvalidInput("password must be non-empty")
    return bytes(password)
