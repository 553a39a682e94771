"""Protocol constants."""

EMPTY_VERSION = "0"

PAKE_MESSAGE_BYTES = 33
PAKE_SIDE_SYMMETRIC = b"S"
PAKE_IDENTITY_PREFIX = b"pakepipe/v1|"

SESSION_KEY_BYTES = 32
NONCE_BYTES = 12
TAG_BYTES = 16

SESSION_KEY_INFO = b"pakepipe-session-key-v1"
FINGERPRINT_INFO = b"pakepipe-key-fingerprint-v1"

OFFER_AAD = b"pakepipe-offer-v1"
ANSWER_AAD = b"pakepipe-answer-v1"

KIND_DESCRIPTOR = b"D"
KIND_ABORT = b"X"

FIELD_HEADER_BYTES = 4
MAX_FIELD_BYTES = 1_048_576
MAX_SLOT_LENGTH = 256

STAGE_PAKE = "pake"
STAGE_MAILBOX = "mailbox"
STAGE_ENVELOPE = "envelope"
STAGE_TRANSPORT = "transport"
SUPPORTED_STAGES = {STAGE_PAKE, STAGE_MAILBOX, STAGE_ENVELOPE, STAGE_TRANSPORT}

DEFAULT_LIMITS = {
    "poll_timeout_s": 30.0,
    "max_poll_retries": 3,
    "request_timeout_s": 10.0,
}

LONG_POLL_TIMEOUT_STATUSES = {304, 408, 504}
