"""Error taxonomy surfaced by the summarization orchestrator."""
from __future__ import annotations

from typing import Optional


class SummaryError(RuntimeError):
    """Base error for every failure the orchestrator reports."""


class SummaryValidationError(SummaryError, ValueError):
    """Raised for malformed requests before any cache or provider call."""


class SanitizationError(SummaryError):
    """Raised when messages cannot be anonymized; never retried."""


class SummaryCancelledError(SummaryError):
    """Raised when the caller's deadline passes before a summary is produced."""


class CacheUnavailableError(SummaryError):
    """Raised by cache bindings when the backing store cannot be reached."""


class ProviderHealthError(SummaryError):
    """Raised when the provider health probe fails."""


class FatalProviderError(SummaryError):
    """Raised when the provider rejects a request in a way retrying cannot fix."""

    def __init__(self, message: str, *, attempts: int = 1) -> None:
        super().__init__(message)
        self.attempts = attempts


class RetriesExhaustedError(SummaryError):
    """Raised once retryable provider failures have used up every retry."""

    def __init__(
        self,
        message: str,
        *,
        attempts: int,
        last_error: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error
