"""Interfaces for the transport that consumes exchanged descriptors."""

from __future__ import annotations

from typing import Any, Protocol


class DuplexStream(Protocol):
    """Bidirectional byte stream returned by a successful dial."""

    def read(self, size: int = -1) -> bytes:
        """Return up to ``size`` bytes; empty bytes at end of stream."""

    def write(self, data: bytes) -> int:
        """Send ``data`` and return the number of bytes accepted."""

    def close(self) -> None:
        """Release the underlying connection."""


class TransportAdapter(Protocol):
    """Turns descriptors exchanged over the mailbox into a connected stream.

    The offering side keeps the ``pending`` handle returned by ``create_offer``
    and completes it with the peer's answer. The answering side gets its
    stream straight from ``accept_offer_produce_answer``.
    """

    def create_offer(self, params: Any) -> tuple[bytes, Any]:
        """Return (offer descriptor, pending handle)."""

    def accept_offer_produce_answer(self, peer_descriptor: bytes, params: Any) -> tuple[bytes, DuplexStream]:
        """Return (answer descriptor, stream)."""

    def accept_answer(self, peer_descriptor: bytes, pending: Any) -> DuplexStream:
        """Complete the pending offer with the peer's answer."""

    def discard(self, pending: Any) -> None:
        """Release a pending handle that will never be completed."""
