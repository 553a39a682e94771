"""Mailbox body encoding: uint32_be length-prefixed fields."""

from __future__ import annotations

import struct

from .constants import FIELD_HEADER_BYTES, MAX_FIELD_BYTES, NONCE_BYTES
from .envelope import Envelope
from .errors import WireFormatError
from .pake import validate_message


def encode_fields(*fields: bytes) -> bytes:
    out = bytearray()
    for item in fields:
        if not isinstance(item, (bytes, bytearray)):
            raise WireFormatError("field must be bytes")
        if len(item) > MAX_FIELD_BYTES:
            raise WireFormatError("field too large")
        out += struct.pack(">I", len(item))
        out += item
    return bytes(out)


def decode_fields(data: bytes, count: int) -> list[bytes]:
    """Split ``data`` into exactly ``count`` fields; trailing bytes are an error."""
    if not isinstance(data, (bytes, bytearray)):
        raise WireFormatError("body must be bytes")

    fields: list[bytes] = []
    offset = 0
    length = len(data)
    for _ in range(count):
        if length - offset < FIELD_HEADER_BYTES:
            raise WireFormatError("truncated field header")
        size = struct.unpack(">I", data[offset : offset + FIELD_HEADER_BYTES])[0]
        start = offset + FIELD_HEADER_BYTES
        if size > MAX_FIELD_BYTES or length - start < size:
            raise WireFormatError("truncated field body")
        fields.append(bytes(data[start : start + size]))
        offset = start + size

    if offset != length:
        raise WireFormatError("unexpected trailing bytes")
    return fields


def encode_round1(pake_message: bytes) -> bytes:
    validate_message(pake_message)
    return bytes(pake_message)


def decode_round1(body: bytes) -> bytes:
    validate_message(body)
    return bytes(body)


def encode_round2(pake_message: bytes, envelope: Envelope) -> bytes:
    validate_message(pake_message)
    return encode_fields(pake_message, envelope.nonce, envelope.ciphertext)


def decode_round2(body: bytes) -> tuple[bytes, Envelope]:
    pake_message, nonce, ciphertext = decode_fields(body, 3)
    validate_message(pake_message)
    return pake_message, _envelope(nonce, ciphertext)


def encode_terminal(envelope: Envelope) -> bytes:
    return encode_fields(b"", envelope.nonce, envelope.ciphertext)


def decode_terminal(body: bytes) -> Envelope:
    pake_message, nonce, ciphertext = decode_fields(body, 3)
    if pake_message:
        raise WireFormatError("terminal body must not carry a PAKE message")
    return _envelope(nonce, ciphertext)


def _envelope(nonce: bytes, ciphertext: bytes) -> Envelope:
    if len(nonce) != NONCE_BYTES:
        raise WireFormatError(f"nonce must be {NONCE_BYTES} bytes")
    return Envelope(nonce=nonce, ciphertext=ciphertext)
