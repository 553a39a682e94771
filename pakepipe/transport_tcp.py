"""Direct TCP transport with ChaCha20-Poly1305 framed streams.

The offer descriptor carries the listener address and a fresh stream key; it
is only ever sent inside a sealed envelope, so the relay never sees the key.
The answering side connects, proves knowledge of the key by sending its
connection token as the first frame, and echoes the same token in the answer
descriptor. The offering side accepts connections until one presents it.

Frames are ``uint32_be length || ciphertext``. Nonces are a direction byte
plus a per-direction counter, so the two directions never share a nonce.
"""

from __future__ import annotations

import json
import os
import socket
import struct
import time
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305

from .errors import TransportFailure
from .utils import b64url_decode, b64url_encode, canonical_json_bytes


STREAM_KEY_BYTES = 32
TOKEN_BYTES = 16
MAX_FRAME_PLAINTEXT = 65_536
_DIRECTION_FROM_DIALER = b"\x01"
_DIRECTION_FROM_LISTENER = b"\x02"


@dataclass(frozen=True, slots=True)
class TCPTransportParams:
    bind_host: str = "127.0.0.1"
    bind_port: int = 0
    advertise_host: str | None = None
    connect_timeout_s: float = 30.0
    accept_timeout_s: float = 30.0


@dataclass(slots=True)
class PendingOffer:
    listener: socket.socket
    key: bytes
    accept_timeout_s: float


class SecureStream:
    """Encrypted duplex stream over a connected socket."""

    def __init__(self, sock: socket.socket, key: bytes, *, dialer: bool) -> None:
        self._sock = sock
        self._aead = ChaCha20Poly1305(key)
        self._send_prefix = _DIRECTION_FROM_DIALER if dialer else _DIRECTION_FROM_LISTENER
        self._recv_prefix = _DIRECTION_FROM_LISTENER if dialer else _DIRECTION_FROM_DIALER
        self._send_counter = 0
        self._recv_counter = 0
        self._buffer = b""
        self._eof = False

    def write(self, data: bytes) -> int:
        view = memoryview(bytes(data))
        for start in range(0, len(view), MAX_FRAME_PLAINTEXT):
            self._send_frame(view[start : start + MAX_FRAME_PLAINTEXT].tobytes())
        return len(view)

    def read(self, size: int = -1) -> bytes:
        if not self._buffer and not self._eof:
            frame = self._recv_frame()
            if frame is None:
                self._eof = True
            else:
                self._buffer = frame
        if size is None or size < 0:
            size = len(self._buffer)
        chunk, self._buffer = self._buffer[:size], self._buffer[size:]
        return chunk

    def close(self) -> None:
        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self._sock.close()

    def __enter__(self) -> "SecureStream":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _send_frame(self, plaintext: bytes) -> None:
        nonce = _frame_nonce(self._send_prefix, self._send_counter)
        self._send_counter += 1
        ciphertext = self._aead.encrypt(nonce, plaintext, None)
        try:
            self._sock.sendall(struct.pack(">I", len(ciphertext)) + ciphertext)
        except OSError as exc:
            raise TransportFailure(f"stream write failed: {exc}") from exc

    def _recv_frame(self) -> bytes | None:
        header = self._read_exact(4, allow_eof=True)
        if header is None:
            return None
        size = struct.unpack(">I", header)[0]
        if size > MAX_FRAME_PLAINTEXT + 16:
            raise TransportFailure("stream frame too large")
        ciphertext = self._read_exact(size, allow_eof=False)
        nonce = _frame_nonce(self._recv_prefix, self._recv_counter)
        self._recv_counter += 1
        try:
            return self._aead.decrypt(nonce, ciphertext, None)
        except InvalidTag as exc:
            raise TransportFailure("stream frame failed authentication") from exc

    def _read_exact(self, size: int, *, allow_eof: bool) -> bytes | None:
        data = bytearray()
        while len(data) < size:
            try:
                chunk = self._sock.recv(size - len(data))
            except OSError as exc:
                raise TransportFailure(f"stream read failed: {exc}") from exc
            if not chunk:
                if allow_eof and not data:
                    return None
                raise TransportFailure("connection closed mid-frame")
            data.extend(chunk)
        return bytes(data)


class TCPTransport:
    """Transport adapter connecting the two peers over plain TCP."""

    def create_offer(self, params: TCPTransportParams | None) -> tuple[bytes, PendingOffer]:
        params = params or TCPTransportParams()
        try:
            listener = socket.create_server((params.bind_host, params.bind_port))
        except OSError as exc:
            raise TransportFailure(f"could not listen on {params.bind_host}:{params.bind_port}: {exc}") from exc

        host, port = listener.getsockname()[:2]
        advertise = params.advertise_host or host
        if advertise in {"0.0.0.0", "::"}:
            advertise = socket.gethostbyname(socket.gethostname())

        key = os.urandom(STREAM_KEY_BYTES)
        offer = canonical_json_bytes({"v": 1, "host": advertise, "port": port, "key": b64url_encode(key)})
        return offer, PendingOffer(listener=listener, key=key, accept_timeout_s=params.accept_timeout_s)

    def accept_offer_produce_answer(
        self,
        peer_descriptor: bytes,
        params: TCPTransportParams | None,
    ) -> tuple[bytes, SecureStream]:
        params = params or TCPTransportParams()
        offer = _parse_descriptor(peer_descriptor, ("host", "port", "key"))
        key = b64url_decode(str(offer["key"]))
        if len(key) != STREAM_KEY_BYTES:
            raise TransportFailure("offer stream key has wrong length")

        try:
            sock = socket.create_connection((str(offer["host"]), int(offer["port"])), timeout=params.connect_timeout_s)
        except OSError as exc:
            raise TransportFailure(f"could not connect to offered address: {exc}") from exc
        sock.settimeout(None)

        token = os.urandom(TOKEN_BYTES)
        stream = SecureStream(sock, key, dialer=True)
        stream.write(token)
        answer = canonical_json_bytes({"v": 1, "token": b64url_encode(token)})
        return answer, stream

    def accept_answer(self, peer_descriptor: bytes, pending: PendingOffer) -> SecureStream:
        answer = _parse_descriptor(peer_descriptor, ("token",))
        token = b64url_decode(str(answer["token"]))
        deadline = time.monotonic() + pending.accept_timeout_s

        try:
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise TransportFailure("peer did not connect before accept timeout")
                pending.listener.settimeout(remaining)
                try:
                    conn, _ = pending.listener.accept()
                except (TimeoutError, socket.timeout):
                    continue
                except OSError as exc:
                    raise TransportFailure(f"accept failed: {exc}") from exc

                conn.settimeout(max(0.1, deadline - time.monotonic()))
                stream = SecureStream(conn, pending.key, dialer=False)
                try:
                    hello = stream._recv_frame()
                except TransportFailure:
                    hello = None
                if hello == token:
                    conn.settimeout(None)
                    return stream
                stream.close()
        finally:
            pending.listener.close()

    def discard(self, pending: PendingOffer) -> None:
        pending.listener.close()


def _frame_nonce(prefix: bytes, counter: int) -> bytes:
    return prefix + b"\x00\x00\x00" + counter.to_bytes(8, "big")


def _parse_descriptor(data: bytes, required: tuple[str, ...]) -> dict:
    try:
        doc = json.loads(bytes(data).decode("utf-8"))
    except Exception as exc:
        raise TransportFailure("descriptor is not valid JSON") from exc
    if not isinstance(doc, dict) or doc.get("v") != 1:
        raise TransportFailure("unsupported descriptor version")
    missing = [key for key in required if key not in doc]
    if missing:
        raise TransportFailure(f"descriptor missing fields: {', '.join(missing)}")
    return doc
