"""PAKE-authenticated rendezvous over an untrusted relay."""

from .codec import decode_round2, decode_terminal, encode_round2, encode_terminal
from .config import HandshakeConfig
from .envelope import Envelope, open_envelope, seal_envelope
from .errors import (
    AuthFailure,
    Cancelled,
    HandshakeError,
    InvalidInput,
    InvalidMessage,
    PasswordMismatchOrTamper,
    RelayError,
    RendezvousTimeout,
    SlotContention,
    TransportFailure,
    WireFormatError,
)
from .handshake import HandshakeResult, dial, exchange
from .mailbox import Claim, MailboxClient, MailboxRecord, PutResult, Role
from .pake import PakeState, derive_key, key_fingerprint, start_round1
from .transport import DuplexStream, TransportAdapter
from .transport_tcp import SecureStream, TCPTransport, TCPTransportParams

__all__ = [
    "decode_round2",
    "decode_terminal",
    "encode_round2",
    "encode_terminal",
    "HandshakeConfig",
    "Envelope",
    "open_envelope",
    "seal_envelope",
    "AuthFailure",
    "Cancelled",
    "HandshakeError",
    "InvalidInput",
    "InvalidMessage",
    "PasswordMismatchOrTamper",
    "RelayError",
    "RendezvousTimeout",
    "SlotContention",
    "TransportFailure",
    "WireFormatError",
    "HandshakeResult",
    "dial",
    "exchange",
    "Claim",
    "MailboxClient",
    "MailboxRecord",
    "PutResult",
    "Role",
    "PakeState",
    "derive_key",
    "key_fingerprint",
    "start_round1",
    "DuplexStream",
    "TransportAdapter",
    "SecureStream",
    "TCPTransport",
    "TCPTransportParams",
]

__version__ = "0.1.0"
