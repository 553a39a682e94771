"""Handshake orchestration: PAKE + mailbox + envelopes -> transport stream.

Message flow for one slot (A wins the first write, B loses it)::

    A  PUT if-match:0      round1(A)                    -> 200 etag:X
    B  PUT if-match:0      round1(B)                    -> 409 etag:X round1(A)
    B  PUT if-match:X      round1(B) + seal(offer)      -> 200 etag:Y
    A  GET since X                                      -> etag:Y round1(B) + seal(offer)
    A  DELETE if-match:Y   seal(answer)                 -> 200
    B  GET since Y                                      -> etag:0 seal(answer)

The responder (B) produces the offer because it is the first to hold the
session key. Every error leaving this module is a ``HandshakeError`` tagged
with the stage that failed.
"""

from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterator

from .codec import decode_round1, decode_round2, decode_terminal, encode_round1, encode_round2, encode_terminal
from .config import HandshakeConfig
from .constants import (
    ANSWER_AAD,
    KIND_ABORT,
    KIND_DESCRIPTOR,
    OFFER_AAD,
    SESSION_KEY_BYTES,
    STAGE_ENVELOPE,
    STAGE_MAILBOX,
    STAGE_PAKE,
    STAGE_TRANSPORT,
)
from .envelope import Envelope, open_envelope, seal_envelope
from .errors import AuthFailure, HandshakeError, TransportFailure, WireFormatError
from .mailbox import Claim, MailboxClient, Role, validate_slot
from .pake import PakeState, derive_key, key_fingerprint, start_round1
from .transport import DuplexStream, TransportAdapter
from .utils import deadline_after


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class HandshakeResult:
    """Outcome of the mailbox exchange, before the transport is finalised.

    The initiator already holds its ``stream``; the responder holds the
    ``pending`` offer that ``dial`` completes with the peer's answer.
    """

    role: Role
    key_fingerprint: str
    peer_descriptor: bytes
    stream: DuplexStream | None = None
    pending: Any = None


def dial(
    slot: str,
    password: str | bytes,
    endpoint: str,
    transport_params: Any = None,
    *,
    transport: TransportAdapter,
    config: HandshakeConfig | None = None,
    timeout: float | None = None,
) -> DuplexStream:
    """Rendezvous with the peer sharing ``slot``/``password`` and return the connected stream."""
    result = exchange(
        slot,
        password,
        endpoint,
        transport_params,
        transport=transport,
        config=config,
        timeout=timeout,
    )
    if result.stream is not None:
        return result.stream

    try:
        with _stage(STAGE_TRANSPORT):
            return transport.accept_answer(result.peer_descriptor, result.pending)
    except HandshakeError:
        _discard(transport, result.pending)
        raise


def exchange(
    slot: str,
    password: str | bytes,
    endpoint: str,
    transport_params: Any = None,
    *,
    transport: TransportAdapter,
    config: HandshakeConfig | None = None,
    timeout: float | None = None,
) -> HandshakeResult:
    with _stage(STAGE_MAILBOX):
        validate_slot(slot)
        mailbox = MailboxClient(endpoint, config=config, deadline=deadline_after(timeout))
    with _stage(STAGE_PAKE):
        state, round1 = start_round1(password, slot=slot)
    with _stage(STAGE_MAILBOX):
        claim = mailbox.claim(slot, encode_round1(round1))

    if claim.role is Role.INITIATOR:
        result = _run_initiator(mailbox, slot, state, claim, transport, transport_params)
    else:
        result = _run_responder(mailbox, slot, state, round1, claim, transport, transport_params)

    logger.info("slot=%s handshake complete role=%s key=%s", slot, result.role.value, result.key_fingerprint)
    return result


def _run_initiator(
    mailbox: MailboxClient,
    slot: str,
    state: PakeState,
    claim: Claim,
    transport: TransportAdapter,
    transport_params: Any,
) -> HandshakeResult:
    assert claim.own_version is not None
    with _stage(STAGE_MAILBOX):
        record = mailbox.await_peer(slot, claim.own_version, Role.INITIATOR)
    with _stage(STAGE_ENVELOPE):
        peer_message, offer_envelope = decode_round2(record.body)
    with _stage(STAGE_PAKE):
        key = derive_key(state, peer_message)

    with _stage(STAGE_ENVELOPE):
        try:
            offer = _open_descriptor(key, offer_envelope, associated_data=OFFER_AAD)
        except AuthFailure:
            # Terminate with an envelope nobody can open so the responder fails
            # closed as well instead of waiting out its long-poll.
            decoy = seal_envelope(os.urandom(SESSION_KEY_BYTES), b"", associated_data=ANSWER_AAD)
            _abort(mailbox, slot, record.version, decoy)
            raise

    try:
        with _stage(STAGE_TRANSPORT):
            answer, stream = transport.accept_offer_produce_answer(offer, transport_params)
    except HandshakeError:
        _abort(mailbox, slot, record.version, seal_envelope(key, KIND_ABORT, associated_data=ANSWER_AAD))
        raise

    try:
        with _stage(STAGE_ENVELOPE):
            sealed = seal_envelope(key, KIND_DESCRIPTOR + answer, associated_data=ANSWER_AAD)
            body = encode_terminal(sealed)
        with _stage(STAGE_MAILBOX):
            mailbox.terminate(slot, record.version, body)
    except HandshakeError:
        stream.close()
        raise

    return HandshakeResult(
        role=Role.INITIATOR,
        key_fingerprint=key_fingerprint(key),
        peer_descriptor=offer,
        stream=stream,
    )


def _run_responder(
    mailbox: MailboxClient,
    slot: str,
    state: PakeState,
    round1: bytes,
    claim: Claim,
    transport: TransportAdapter,
    transport_params: Any,
) -> HandshakeResult:
    assert claim.peer is not None
    peer = claim.peer
    with _stage(STAGE_PAKE):
        key = derive_key(state, decode_round1(peer.body))
    with _stage(STAGE_TRANSPORT):
        offer, pending = transport.create_offer(transport_params)

    try:
        with _stage(STAGE_ENVELOPE):
            sealed = seal_envelope(key, KIND_DESCRIPTOR + offer, associated_data=OFFER_AAD)
            body = encode_round2(round1, sealed)
        with _stage(STAGE_MAILBOX):
            own_version = mailbox.reply(slot, peer.version, body)
            record = mailbox.await_peer(slot, own_version, Role.RESPONDER)
        with _stage(STAGE_ENVELOPE):
            answer = _open_descriptor(key, decode_terminal(record.body), associated_data=ANSWER_AAD)
    except HandshakeError:
        _discard(transport, pending)
        raise

    return HandshakeResult(
        role=Role.RESPONDER,
        key_fingerprint=key_fingerprint(key),
        peer_descriptor=answer,
        pending=pending,
    )


def _open_descriptor(key: bytes, envelope: Envelope, *, associated_data: bytes) -> bytes:
    plaintext = open_envelope(key, envelope, associated_data=associated_data)
    kind, descriptor = plaintext[:1], plaintext[1:]
    if kind == KIND_DESCRIPTOR:
        return descriptor
    if kind == KIND_ABORT:
        raise TransportFailure("peer aborted: its transport could not accept the offer", stage=STAGE_TRANSPORT)
    raise WireFormatError("unknown envelope payload kind")


def _abort(mailbox: MailboxClient, slot: str, version: str, envelope: Envelope) -> None:
    logger.warning("slot=%s aborting exchange", slot)
    try:
        mailbox.delete_with_payload(slot, version, encode_terminal(envelope))
    except HandshakeError as exc:
        logger.warning("slot=%s abort delete failed: %s", slot, exc)


def _discard(transport: TransportAdapter, pending: Any) -> None:
    discard = getattr(transport, "discard", None)
    if pending is None or not callable(discard):
        return
    try:
        discard(pending)
    except Exception as exc:
        logger.warning("discarding pending transport offer failed: %s", exc)


@contextmanager
def _stage(stage: str) -> Iterator[None]:
    try:
        yield
    except HandshakeError as exc:
        if exc.stage is None:
            exc.stage = stage
        raise
    except Exception as exc:
        if stage != STAGE_TRANSPORT:
            raise
        raise TransportFailure(str(exc) or type(exc).__name__, stage=stage) from exc
