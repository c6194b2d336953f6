"""Shared exports for the conversation summaries feature."""
from __future__ import annotations

from .anonymizer import Anonymizer, SanitizedTranscript
from .cache_keys import build_cache_key, conversation_key_prefix
from .errors import (
    CacheUnavailableError,
    FatalProviderError,
    ProviderHealthError,
    RetriesExhaustedError,
    SanitizationError,
    SummaryCancelledError,
    SummaryError,
    SummaryValidationError,
)
from .health import HealthProbe
from .models import SUPPORTED_MODELS, is_valid_model, supported_models
from .openai_client import (
    AuthenticationError,
    ClientConfigurationError,
    Completion,
    InvalidRequestError,
    OpenAIClient,
    ProviderError,
    RateLimitError,
    TransientError,
)
from .prompts import PromptDocument, PromptLoader, PromptValidationError, build_summarization_prompt
from .retry import RetryConfig, Retryability, classify_error, compute_delay, is_retryable
from .service import SummaryService
from .storage import FileSummaryCache, InMemorySummaryCache, RedisSummaryCache, SummaryCache
from .types import Message, SummarizeRequest, SummarizeResult
from .window import limit_messages


__all__ = [
    "Message",
    "SummarizeRequest",
    "SummarizeResult",
    "SUPPORTED_MODELS",
    "supported_models",
    "is_valid_model",
    "build_cache_key",
    "conversation_key_prefix",
    "limit_messages",
    "Anonymizer",
    "SanitizedTranscript",
    "PromptLoader",
    "PromptDocument",
    "PromptValidationError",
    "build_summarization_prompt",
    "RetryConfig",
    "Retryability",
    "classify_error",
    "compute_delay",
    "is_retryable",
    "SummaryCache",
    "InMemorySummaryCache",
    "FileSummaryCache",
    "RedisSummaryCache",
    "OpenAIClient",
    "Completion",
    "ProviderError",
    "AuthenticationError",
    "RateLimitError",
    "TransientError",
    "InvalidRequestError",
    "ClientConfigurationError",
    "SummaryService",
    "HealthProbe",
    "SummaryError",
    "SummaryValidationError",
    "SanitizationError",
    "SummaryCancelledError",
    "CacheUnavailableError",
    "FatalProviderError",
    "RetriesExhaustedError",
    "ProviderHealthError",
]
