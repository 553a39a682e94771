"""Mailbox client: compare-and-swap primitives against the rendezvous relay.

The relay stores at most one record per slot. Writes are conditional on the
current version (``If-Match``), reads are long-polls from a known version
(``If-None-Match``) and the record is removed with a conditional delete whose
body is handed to whoever is still waiting on the slot.

On top of the primitives sit the steps of the two-party exchange. The role is
decided once by ``claim`` and then passed explicitly to the later steps:

    initiator: claim -> await_peer -> terminate
    responder: claim -> reply -> await_peer
"""

from __future__ import annotations

import enum
import http.client
import logging
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass
from urllib.parse import quote, urlparse

from .config import HandshakeConfig
from .constants import EMPTY_VERSION, LONG_POLL_TIMEOUT_STATUSES, MAX_SLOT_LENGTH, PAKE_MESSAGE_BYTES
from .errors import Cancelled, InvalidInput, RelayError, RendezvousTimeout, SlotContention
from .utils import remaining_seconds


logger = logging.getLogger(__name__)


class Role(enum.Enum):
    INITIATOR = "initiator"
    RESPONDER = "responder"


@dataclass(frozen=True, slots=True)
class MailboxRecord:
    version: str
    body: bytes


@dataclass(frozen=True, slots=True)
class PutResult:
    """Outcome of a conditional write.

    When ``accepted`` is False, ``version`` and ``body`` describe the record
    currently held by the relay.
    """

    accepted: bool
    version: str
    body: bytes = b""


@dataclass(frozen=True, slots=True)
class Claim:
    role: Role
    own_version: str | None
    peer: MailboxRecord | None


class _RequestTimedOut(Exception):
    pass


class MailboxClient:
    """HTTP client for one relay endpoint, bound to an optional deadline."""

    def __init__(
        self,
        endpoint: str,
        *,
        config: HandshakeConfig | None = None,
        deadline: float | None = None,
    ) -> None:
        try:
            parsed = urlparse(endpoint) if isinstance(endpoint, str) else None
        except ValueError as exc:
            raise InvalidInput(f"relay endpoint is not a valid URL: {endpoint!r}") from exc
        if parsed is None or parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise InvalidInput(f"relay endpoint must be an http(s) URL: {endpoint!r}")
        self.endpoint = endpoint.rstrip("/")
        self.config = config or HandshakeConfig()
        self.deadline = deadline

    # Primitives

    def put(self, slot: str, expected_version: str, body: bytes) -> PutResult:
        validate_slot(slot)
        timeout, capped = self._call_timeout(self.config.request_timeout_s)
        try:
            status, etag, payload = self._request(
                "PUT",
                slot,
                headers={"If-Match": expected_version, "Content-Type": "application/octet-stream"},
                data=body,
                timeout=timeout,
            )
        except _RequestTimedOut:
            raise self._timeout_error("PUT", capped) from None

        logger.debug("PUT slot=%s if-match=%s -> %s etag=%s", slot, expected_version, status, etag)
        if status in {200, 201, 204}:
            return PutResult(accepted=True, version=_require_etag(etag, "PUT"))
        if status in {409, 412}:
            return PutResult(accepted=False, version=_require_etag(etag, "PUT conflict"), body=payload)
        raise RelayError(f"unexpected PUT status {status}")

    def wait_for_change(self, slot: str, known_version: str) -> MailboxRecord | None:
        """Block until the slot differs from ``known_version``; None on long-poll timeout."""
        validate_slot(slot)
        timeout, capped = self._call_timeout(self.config.poll_timeout_s + self.config.request_timeout_s)
        wait_s = max(1, int(self.config.poll_timeout_s))
        try:
            status, etag, payload = self._request(
                "GET",
                slot,
                headers={"If-None-Match": known_version, "Prefer": f"wait={wait_s}"},
                timeout=timeout,
            )
        except _RequestTimedOut:
            error = self._timeout_error("GET", capped)
            if isinstance(error, Cancelled):
                raise error from None
            return None

        logger.debug("GET slot=%s if-none-match=%s -> %s etag=%s", slot, known_version, status, etag)
        if status in LONG_POLL_TIMEOUT_STATUSES:
            return None
        if status == 404:
            # Record already gone and no tombstone kept for it.
            logger.warning("GET slot=%s -> 404, relay holds neither record nor tombstone", slot)
            return MailboxRecord(version=EMPTY_VERSION, body=b"")
        if status == 200:
            return MailboxRecord(version=_require_etag(etag, "GET"), body=payload)
        raise RelayError(f"unexpected GET status {status}")

    def delete_with_payload(self, slot: str, expected_version: str, body: bytes) -> bool:
        validate_slot(slot)
        timeout, capped = self._call_timeout(self.config.request_timeout_s)
        try:
            status, _, _ = self._request(
                "DELETE",
                slot,
                headers={"If-Match": expected_version, "Content-Type": "application/octet-stream"},
                data=body,
                timeout=timeout,
            )
        except _RequestTimedOut:
            raise self._timeout_error("DELETE", capped) from None

        logger.debug("DELETE slot=%s if-match=%s -> %s", slot, expected_version, status)
        if status in {200, 202, 204}:
            return True
        if status in {404, 409, 412}:
            return False
        raise RelayError(f"unexpected DELETE status {status}")

    # Exchange steps

    def claim(self, slot: str, round1: bytes) -> Claim:
        """Write our round-1 message into an empty slot and resolve the role."""
        result = self.put(slot, EMPTY_VERSION, round1)
        if result.accepted:
            logger.debug("slot=%s claimed as initiator version=%s", slot, result.version)
            return Claim(role=Role.INITIATOR, own_version=result.version, peer=None)

        if result.version == EMPTY_VERSION or len(result.body) != PAKE_MESSAGE_BYTES:
            logger.warning("slot=%s already past round 1", slot)
            raise SlotContention("slot is already in use by another exchange")

        logger.debug("slot=%s conflict, joining as responder peer_version=%s", slot, result.version)
        return Claim(
            role=Role.RESPONDER,
            own_version=None,
            peer=MailboxRecord(version=result.version, body=result.body),
        )

    def reply(self, slot: str, peer_version: str, body: bytes) -> str:
        """Responder round-2 write replacing the initiator's record."""
        result = self.put(slot, peer_version, body)
        if not result.accepted:
            logger.warning("slot=%s round-2 write lost to version=%s", slot, result.version)
            raise SlotContention("slot changed before the round-2 write landed")
        return result.version

    def await_peer(self, slot: str, known_version: str, role: Role) -> MailboxRecord:
        """Long-poll for the peer's next write, retrying timeouts a bounded number of times.

        The initiator waits for the responder's round-2 record. The responder
        waits for the initiator's terminal delete, which the relay reports as
        the empty version carrying the terminal payload.
        """
        attempts = self.config.max_poll_retries + 1
        for attempt in range(attempts):
            record = self.wait_for_change(slot, known_version)
            if record is None or record.version == known_version:
                logger.debug("slot=%s no change (attempt %d/%d)", slot, attempt + 1, attempts)
                continue

            if role is Role.INITIATOR:
                if record.version == EMPTY_VERSION:
                    raise SlotContention("slot was removed before a peer replied")
                return record

            if record.version != EMPTY_VERSION:
                logger.warning("slot=%s overwritten by a third writer", slot)
                raise SlotContention("slot overwritten by a third party")
            if not record.body:
                raise SlotContention(
                    "slot removed without a terminal payload; the relay kept no tombstone for the deleted record"
                )
            return record

        raise RendezvousTimeout(f"no peer activity on slot after {attempts} long-polls")

    def terminate(self, slot: str, peer_version: str, body: bytes) -> None:
        """Initiator's conditional delete carrying the final payload."""
        if not self.delete_with_payload(slot, peer_version, body):
            logger.warning("slot=%s terminal delete rejected", slot)
            raise SlotContention("slot changed before the terminal delete")

    # Internals

    def _slot_url(self, slot: str) -> str:
        return f"{self.endpoint}/slots/{quote(slot, safe='')}"

    def _call_timeout(self, base: float) -> tuple[float, bool]:
        """Return the socket timeout for one call and whether the deadline bounds it."""
        remaining = remaining_seconds(self.deadline)
        if remaining is None:
            return base, False
        if remaining <= 0:
            raise Cancelled("deadline expired before relay call")
        if remaining <= base:
            return remaining, True
        return base, False

    def _timeout_error(self, method: str, capped: bool) -> Cancelled | RelayError:
        if capped:
            return Cancelled(f"deadline expired during {method}")
        return RelayError(f"relay {method} timed out")

    def _request(
        self,
        method: str,
        slot: str,
        *,
        headers: dict[str, str],
        timeout: float,
        data: bytes | None = None,
    ) -> tuple[int, str | None, bytes]:
        request = urllib.request.Request(
            self._slot_url(slot),
            data=data,
            headers={"User-Agent": self.config.user_agent, **headers},
            method=method,
        )
        try:
            with urllib.request.urlopen(request, timeout=timeout) as response:
                return response.status, response.headers.get("ETag"), response.read()
        except urllib.error.HTTPError as exc:
            etag = exc.headers.get("ETag") if exc.headers else None
            try:
                body = exc.read()
            except (TimeoutError, socket.timeout):
                raise _RequestTimedOut() from None
            except http.client.HTTPException as read_exc:
                raise RelayError(f"relay sent a malformed {method} response: {read_exc!r}") from read_exc
            return exc.code, etag, body or b""
        except (TimeoutError, socket.timeout):
            raise _RequestTimedOut() from None
        except urllib.error.URLError as exc:
            if isinstance(exc.reason, (TimeoutError, socket.timeout)):
                raise _RequestTimedOut() from None
            raise RelayError(f"relay unreachable: {exc.reason}") from exc
        except http.client.HTTPException as exc:
            raise RelayError(f"relay sent a malformed {method} response: {exc!r}") from exc
        except (ConnectionResetError, ConnectionAbortedError, BrokenPipeError) as exc:
            raise RelayError(f"relay connection failed: {exc}") from exc


def validate_slot(slot: str) -> None:
    if not isinstance(slot, str) or not slot:
        raise InvalidInput("slot must be a non-empty string")
    if len(slot) > MAX_SLOT_LENGTH:
        raise InvalidInput(f"slot longer than {MAX_SLOT_LENGTH} characters")
    if any(ch.isspace() or not ch.isprintable() for ch in slot):
        raise InvalidInput("slot must not contain whitespace or control characters")


def _require_etag(etag: str | None, context: str) -> str:
    if not etag:
        raise RelayError(f"{context} response missing ETag")
    value = etag.strip()
    if value.startswith("W/"):
        value = value[2:]
    if len(value) >= 2 and value[0] == value[-1] == '"':
        value = value[1:-1]
    if not value:
        raise RelayError(f"{context} response has empty ETag")
    return value
