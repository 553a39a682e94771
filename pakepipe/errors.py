"""Error taxonomy for the rendezvous handshake."""

from __future__ import annotations

from .constants import SUPPORTED_STAGES


class HandshakeError(Exception):
    """Base class for every failure surfaced by a dial attempt.

    ``stage`` names the component that failed (one of ``SUPPORTED_STAGES``)
    and is filled in by the orchestrator when the error crosses a stage boundary.
    """

    def __init__(self, message: str = "", *, stage: str | None = None) -> None:
        if stage is not None and stage not in SUPPORTED_STAGES:
            raise ValueError(f"unknown handshake stage: {stage!r}")
        super().__init__(message)
        self.stage = stage

    def __str__(self) -> str:
        message = super().__str__()
        if self.stage is None:
            return message
        return f"[{self.stage}] {message}"


class InvalidInput(HandshakeError, ValueError):
    """Malformed slot, password or message; raised before any network call."""


class InvalidMessage(InvalidInput):
    """Peer PAKE message does not have the expected wire shape."""


class WireFormatError(InvalidInput):
    """Mailbox body does not follow the length-prefixed field layout."""


class RendezvousTimeout(HandshakeError, TimeoutError):
    """Bounded long-poll retries exhausted without the peer showing up."""


class SlotContention(HandshakeError):
    """Conflict outside the two-party sequence; never retried."""


class AuthFailure(HandshakeError):
    """Envelope failed authentication: password mismatch or tampering."""


PasswordMismatchOrTamper = AuthFailure


class TransportFailure(HandshakeError):
    """Transport adapter failed after a valid handshake."""


class Cancelled(HandshakeError):
    """Caller deadline expired while a relay call was outstanding."""


class RelayError(HandshakeError):
    """Relay answered with an unexpected status or could not be reached."""
