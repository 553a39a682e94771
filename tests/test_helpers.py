from __future__ import annotations

import itertools
import socket
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import unquote

from pakepipe.constants import EMPTY_VERSION


SLOT = "7-crimson-bottle"
PASSWORD = "banana"


class SlotStore:
    """In-memory single-record-per-slot mailbox with compare-and-swap semantics."""

    def __init__(self, *, tombstone_ttl_s: float = 30.0) -> None:
        self.tombstone_ttl_s = tombstone_ttl_s
        self._cond = threading.Condition()
        self._records: dict[str, tuple[str, bytes]] = {}
        self._tombstones: dict[str, tuple[str, bytes, float]] = {}
        self._counter = itertools.count(1)
        self.put_log: list[tuple[str, str, bool]] = []
        self.bodies: list[bytes] = []

    def put(self, slot: str, if_match: str, body: bytes) -> tuple[bool, str, bytes]:
        with self._cond:
            current = self._records.get(slot)
            current_version = current[0] if current else EMPTY_VERSION
            if if_match != current_version:
                self.put_log.append((slot, if_match, False))
                return False, current_version, current[1] if current else b""

            version = f"v{next(self._counter)}"
            self._records[slot] = (version, body)
            self._tombstones.pop(slot, None)
            self.put_log.append((slot, if_match, True))
            self.bodies.append(body)
            self._cond.notify_all()
            return True, version, b""

    def delete(self, slot: str, if_match: str, body: bytes) -> bool:
        with self._cond:
            current = self._records.get(slot)
            if current is None or current[0] != if_match:
                return False
            del self._records[slot]
            self._tombstones[slot] = (if_match, body, time.monotonic() + self.tombstone_ttl_s)
            self.bodies.append(body)
            self._cond.notify_all()
            return True

    def wait(self, slot: str, known: str, timeout: float) -> tuple[str, bytes] | None:
        end = time.monotonic() + timeout
        with self._cond:
            while True:
                state = self._changed_state(slot, known)
                if state is not None:
                    return state
                remaining = end - time.monotonic()
                if remaining <= 0:
                    return None
                self._cond.wait(remaining)

    def get(self, slot: str) -> tuple[str, bytes] | None:
        with self._cond:
            return self._records.get(slot)

    def wait_for_record(self, slot: str, timeout: float = 5.0) -> tuple[str, bytes]:
        end = time.monotonic() + timeout
        with self._cond:
            while slot not in self._records:
                remaining = end - time.monotonic()
                if remaining <= 0:
                    raise AssertionError(f"slot {slot} never written")
                self._cond.wait(remaining)
            return self._records[slot]

    def conflicts(self, slot: str) -> int:
        with self._cond:
            return sum(1 for item_slot, _, accepted in self.put_log if item_slot == slot and not accepted)

    def _changed_state(self, slot: str, known: str) -> tuple[str, bytes] | None:
        current = self._records.get(slot)
        if current is not None:
            return current if current[0] != known else None

        tombstone = self._tombstones.get(slot)
        if tombstone is not None and tombstone[0] == known and tombstone[2] > time.monotonic():
            return EMPTY_VERSION, tombstone[1]
        if known == EMPTY_VERSION:
            return None
        return EMPTY_VERSION, b""


class RelayServer:
    """Threaded stdlib HTTP server exposing a SlotStore under `/slots/{id}`."""

    def __init__(self, host: str = "127.0.0.1", port: int = 0, *, max_wait_s: float = 30.0) -> None:
        self.store = SlotStore()
        self.max_wait_s = max_wait_s
        self._server = self._build_server(host, port)
        self._thread: threading.Thread | None = None

    @property
    def url(self) -> str:
        host, port = self._server.server_address[:2]
        return f"http://{host}:{port}"

    def _build_server(self, host: str, port: int) -> ThreadingHTTPServer:
        store = self.store
        max_wait_s = self.max_wait_s

        class RequestHandler(BaseHTTPRequestHandler):
            def do_PUT(self) -> None:  # noqa: N802
                slot = self._slot()
                if slot is None:
                    return
                accepted, version, body = store.put(slot, _unquote_etag(self.headers.get("If-Match")), self._body())
                self._reply(200 if accepted else 409, version, body)

            def do_GET(self) -> None:  # noqa: N802
                slot = self._slot()
                if slot is None:
                    return
                known = _unquote_etag(self.headers.get("If-None-Match"))
                state = store.wait(slot, known, min(max_wait_s, _parse_prefer_wait(self.headers.get("Prefer"))))
                if state is None:
                    self._reply(304, known, b"")
                    return
                self._reply(200, state[0], state[1])

            def do_DELETE(self) -> None:  # noqa: N802
                slot = self._slot()
                if slot is None:
                    return
                deleted = store.delete(slot, _unquote_etag(self.headers.get("If-Match")), self._body())
                self._reply(200 if deleted else 409, EMPTY_VERSION, b"")

            def _slot(self) -> str | None:
                prefix = "/slots/"
                if not self.path.startswith(prefix) or len(self.path) == len(prefix):
                    self.send_error(404, "Not Found")
                    return None
                return unquote(self.path[len(prefix) :])

            def _body(self) -> bytes:
                length = int(self.headers.get("Content-Length", "0") or "0")
                return self.rfile.read(length) if length > 0 else b""

            def _reply(self, status: int, version: str, body: bytes) -> None:
                try:
                    self.send_response(status)
                    self.send_header("ETag", f'"{version}"')
                    if status != 304:
                        self.send_header("Content-Type", "application/octet-stream")
                        self.send_header("Content-Length", str(len(body)))
                    self.end_headers()
                    if status != 304:
                        self.wfile.write(body)
                except (BrokenPipeError, ConnectionResetError):
                    return

            def log_message(self, format: str, *args: object) -> None:
                return

        class ReusableServer(ThreadingHTTPServer):
            allow_reuse_address = True

        return ReusableServer((host, port), RequestHandler)

    def start(self) -> "RelayServer":
        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)
        self._thread.start()
        return self

    def shutdown(self) -> None:
        self._server.shutdown()
        self._server.server_close()
        if self._thread is not None:
            self._thread.join(timeout=1)


class CannedRelay:
    """HTTP server answering every request with one fixed, possibly broken, response."""

    def __init__(self, status: int, body: bytes = b"", *, etag: str | None = '"1"', content_length: int | None = None) -> None:
        self.status = status
        self.body = body
        self.etag = etag
        self.content_length = len(body) if content_length is None else content_length
        self.requests: list[str] = []
        self._server = self._build_server()
        self._thread: threading.Thread | None = None

    @property
    def url(self) -> str:
        host, port = self._server.server_address[:2]
        return f"http://{host}:{port}"

    def _build_server(self) -> ThreadingHTTPServer:
        relay = self

        class RequestHandler(BaseHTTPRequestHandler):
            def _answer(self) -> None:
                length = int(self.headers.get("Content-Length", "0") or "0")
                if length > 0:
                    self.rfile.read(length)
                relay.requests.append(self.command)
                self.send_response(relay.status)
                if relay.etag is not None:
                    self.send_header("ETag", relay.etag)
                self.send_header("Content-Length", str(relay.content_length))
                self.send_header("Connection", "close")
                self.end_headers()
                self.wfile.write(relay.body)
                self.wfile.flush()
                self.close_connection = True

            do_PUT = do_GET = do_DELETE = _answer

            def log_message(self, format: str, *args: object) -> None:
                return

        class ReusableServer(ThreadingHTTPServer):
            allow_reuse_address = True

        return ReusableServer(("127.0.0.1", 0), RequestHandler)

    def start(self) -> "CannedRelay":
        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)
        self._thread.start()
        return self

    def shutdown(self) -> None:
        self._server.shutdown()
        self._server.server_close()
        if self._thread is not None:
            self._thread.join(timeout=1)


class SocketStream:
    """Plain duplex stream over one end of a socketpair."""

    def __init__(self, sock: socket.socket) -> None:
        self._sock = sock

    def read(self, size: int = -1) -> bytes:
        return self._sock.recv(65536 if size is None or size < 0 else size)

    def write(self, data: bytes) -> int:
        self._sock.sendall(data)
        return len(data)

    def close(self) -> None:
        self._sock.close()


class MemoryNetwork:
    """Pairs offers and answers between MemoryTransport instances in one process."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pairs: dict[bytes, tuple[socket.socket, socket.socket]] = {}

    def open(self, offer: bytes) -> None:
        with self._lock:
            self._pairs[offer] = socket.socketpair()

    def take(self, offer: bytes) -> tuple[socket.socket, socket.socket]:
        with self._lock:
            pair = self._pairs.get(offer)
        if pair is None:
            raise ConnectionRefusedError(f"no pending offer {offer!r}")
        return pair


class MemoryTransport:
    """Transport adapter with fixed descriptors, for driving the orchestrator in tests."""

    def __init__(
        self,
        network: MemoryNetwork,
        *,
        offer: bytes = b"o1",
        answer: bytes = b"a1",
        fail_accept_offer: bool = False,
    ) -> None:
        self.network = network
        self.offer = offer
        self.answer = answer
        self.fail_accept_offer = fail_accept_offer
        self.seen_params: list[object] = []
        self.discarded: list[object] = []

    def create_offer(self, params: object) -> tuple[bytes, bytes]:
        self.seen_params.append(params)
        self.network.open(self.offer)
        return self.offer, self.offer

    def accept_offer_produce_answer(self, peer_descriptor: bytes, params: object) -> tuple[bytes, SocketStream]:
        self.seen_params.append(params)
        if self.fail_accept_offer:
            raise ConnectionRefusedError("simulated NAT traversal failure")
        _, right = self.network.take(peer_descriptor)
        return self.answer, SocketStream(right)

    def accept_answer(self, peer_descriptor: bytes, pending: bytes) -> SocketStream:
        if peer_descriptor != self.answer:
            raise ValueError(f"unexpected answer {peer_descriptor!r}")
        left, _ = self.network.take(pending)
        return SocketStream(left)

    def discard(self, pending: bytes) -> None:
        self.discarded.append(pending)


def _unquote_etag(value: str | None) -> str:
    if not value:
        return EMPTY_VERSION
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] == '"':
        return value[1:-1]
    return value


def _parse_prefer_wait(value: str | None) -> float:
    if not value:
        return 30.0
    for part in value.split(","):
        key, _, raw = part.strip().partition("=")
        if key.strip().lower() == "wait":
            try:
                return max(0.0, float(raw))
            except ValueError:
                return 30.0
    return 30.0


def unused_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]
