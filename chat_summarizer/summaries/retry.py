"""Retry decisions for provider calls.

Both functions here are pure: the orchestrator owns the actual sleeping, so
backoff and classification can be exercised without timers or network access.
"""
from __future__ import annotations

import asyncio
import enum
import random
from dataclasses import dataclass
from typing import Optional

from .errors import SummaryCancelledError
from .openai_client import AuthenticationError, InvalidRequestError, RateLimitError, TransientError


class Retryability(enum.Enum):
    NOT_RETRYABLE = "not_retryable"
    RETRYABLE = "retryable"


@dataclass(frozen=True)
class RetryConfig:
    """Backoff schedule for provider retries; delays are in seconds."""

    base_delay: float = 0.25
    max_delay: float = 30.0
    backoff_factor: float = 2.0
    max_retries: int = 3
    jitter: bool = True

    def __post_init__(self) -> None:
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("retry delays must be non-negative")
        if self.base_delay > self.max_delay:
            raise ValueError(
                f"base_delay ({self.base_delay}) must not exceed max_delay ({self.max_delay})"
            )
        if self.backoff_factor < 1:
            raise ValueError(f"backoff_factor must be >= 1, got {self.backoff_factor}")
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")


_FATAL_MARKERS = (
    "authentication",
    "unauthorized",
    "invalid request",
    "invalid api key",
    "permission denied",
)

_RETRYABLE_MARKERS = (
    "rate limit",
    "rate_limit",
    "too many requests",
    "server error",
    "internal error",
    "service unavailable",
    "timeout",
    "connection",
    "network",
    "502",
    "503",
    "504",
)


def classify_error(error: Optional[BaseException]) -> Retryability:
    """Decide whether another attempt could plausibly succeed after ``error``."""
    if error is None:
        return Retryability.NOT_RETRYABLE
    # The caller gave up; never retry on its behalf.
    if isinstance(error, (asyncio.CancelledError, asyncio.TimeoutError, TimeoutError, SummaryCancelledError)):
        return Retryability.NOT_RETRYABLE
    if isinstance(error, (AuthenticationError, InvalidRequestError)):
        return Retryability.NOT_RETRYABLE
    if isinstance(error, (RateLimitError, TransientError)):
        return Retryability.RETRYABLE

    message = str(error).lower()
    if any(marker in message for marker in _FATAL_MARKERS):
        return Retryability.NOT_RETRYABLE
    if any(marker in message for marker in _RETRYABLE_MARKERS):
        return Retryability.RETRYABLE
    return Retryability.NOT_RETRYABLE


def is_retryable(error: Optional[BaseException]) -> bool:
    return classify_error(error) is Retryability.RETRYABLE


def compute_delay(attempt: int, config: RetryConfig, rng: Optional[random.Random] = None) -> float:
    """Return the sleep before retry number ``attempt + 1`` (``attempt`` is zero-indexed).

    The delay is ``base_delay * backoff_factor ** attempt`` clamped to
    ``max_delay``. Jitter draws from ``[delay, delay * backoff_factor)`` so
    consecutive attempts never overlap and the schedule stays monotone.
    """
    if attempt < 0:
        raise ValueError(f"attempt must be >= 0, got {attempt}")
    try:
        delay = config.base_delay * config.backoff_factor ** attempt
    except OverflowError:
        return config.max_delay
    if delay >= config.max_delay:
        return config.max_delay
    if config.jitter and config.backoff_factor > 1:
        spread = (rng or random).random()
        delay += delay * (config.backoff_factor - 1) * spread
    return min(delay, config.max_delay)
