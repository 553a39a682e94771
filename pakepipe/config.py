"""Handshake tuning knobs."""

from __future__ import annotations

from dataclasses import dataclass

from .constants import DEFAULT_LIMITS
from .errors import InvalidInput


@dataclass(frozen=True, slots=True)
class HandshakeConfig:
    """Timeouts and retry bounds for one dial attempt."""

    poll_timeout_s: float = float(DEFAULT_LIMITS["poll_timeout_s"])
    max_poll_retries: int = int(DEFAULT_LIMITS["max_poll_retries"])
    request_timeout_s: float = float(DEFAULT_LIMITS["request_timeout_s"])
    user_agent: str = "pakepipe/0.1"

    def __post_init__(self) -> None:
        if self.poll_timeout_s <= 0:
            raise InvalidInput("poll_timeout_s must be positive")
        if not isinstance(self.max_poll_retries, int) or self.max_poll_retries < 0:
            raise InvalidInput("max_poll_retries must be a non-negative integer")
        if self.request_timeout_s <= 0:
            raise InvalidInput("request_timeout_s must be positive")
        if not isinstance(self.user_agent, str) or not self.user_agent:
            raise InvalidInput("user_agent must be a non-empty string")
