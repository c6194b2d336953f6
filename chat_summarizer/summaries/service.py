"""Shared orchestration layer for generating and caching summaries."""
from __future__ import annotations

import asyncio
import logging
import random
import re
import time
from dataclasses import replace
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Awaitable, Callable, Mapping, Optional, Sequence, Tuple, TypeVar
from uuid import UUID

from .anonymizer import Anonymizer, SanitizedTranscript
from .cache_keys import build_cache_key, conversation_key_prefix
from .errors import (
    CacheUnavailableError,
    FatalProviderError,
    RetriesExhaustedError,
    SanitizationError,
    SummaryCancelledError,
    SummaryValidationError,
)
from .models import is_valid_model
from .openai_client import Completion, OpenAIClient, TransientError
from .prompts import PromptDocument, build_summarization_prompt
from .retry import Retryability, classify_error, compute_delay
from .storage import SummaryCache
from .types import Message, SummarizeRequest, SummarizeResult
from .window import limit_messages

if TYPE_CHECKING:
    from ..config import SummarizerSettings

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SummaryService:
    """Turns a message window into a cached, sanitized, retried provider call.

    The service keeps no per-request state: every ``summarize`` call runs on
    its own task and only shares the injected cache and provider client.
    """

    def __init__(
        self,
        client: Optional[OpenAIClient],
        cache: SummaryCache,
        settings: "SummarizerSettings",
        *,
        anonymizer: Optional[Anonymizer] = None,
        prompt_document: Optional[PromptDocument] = None,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], datetime] = _utcnow,
        rng: Optional[random.Random] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._client = client
        self._cache = cache
        self._settings = settings
        self._anonymizer = anonymizer or Anonymizer()
        self._prompt_document = prompt_document
        self._sleep = sleep
        self._clock = clock
        self._rng = rng
        self._logger = logger or logging.getLogger(__name__)

    async def summarize(self, request: SummarizeRequest, *, timeout: Optional[float] = None) -> SummarizeResult:
        """Return a summary for ``request``, from cache when possible.

        ``timeout`` is the caller's overall deadline in seconds. Once it has
        passed no further cache or provider call is started and
        ``SummaryCancelledError`` is raised.
        """

        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        started = time.monotonic()

        limit = self._validate(request)
        self._check_messages(request)
        cache_key = build_cache_key(request.conversation_id, request.messages, limit)

        cached = await self._cache_get(cache_key, request, deadline)
        if cached is not None:
            self._log_debug("cache-hit", request, {"cache_key": cache_key, "summary_id": cached.id})
            return replace(cached, cached=True)

        window = limit_messages(request.messages, limit)
        transcript = self._sanitize(window, request)
        prompt = build_summarization_prompt(transcript.text, self._prompt_document)
        self._log_debug(
            "cache-miss",
            request,
            {
                "cache_key": cache_key,
                "message_count": len(window),
                "anonymized_fields": list(transcript.fields),
            },
        )

        completion, attempts = await self._complete_with_retry(prompt, request, deadline)

        result = SummarizeResult(
            summary_text=completion.text,
            produced_at=self._clock(),
            conversation_id=request.conversation_id,
            model=self._settings.model,
            message_count=len(window),
            tokens_used=completion.total_tokens,
            cached=False,
            metadata={
                "anonymized_fields": list(transcript.fields),
                "model_used": self._settings.model,
                "prompt_tokens": completion.prompt_tokens,
                "completion_tokens": completion.completion_tokens,
                "attempts": attempts,
            },
        )

        await self._cache_set(cache_key, result, request, deadline)
        self._logger.info(
            "summary-generated",
            extra={
                "summary": self._payload(
                    "summary-generated",
                    request,
                    {
                        "summary_id": result.id,
                        "tokens_used": result.tokens_used,
                        "attempts": attempts,
                        "processing_time": round(time.monotonic() - started, 3),
                    },
                )
            },
        )
        return result

    async def invalidate_conversation(self, conversation_id: UUID) -> int:
        """Drop every cached summary of ``conversation_id``; return how many were removed."""
        removed = await self._cache.delete_prefix(conversation_key_prefix(conversation_id))
        self._logger.info(
            "summaries-invalidated",
            extra={"summary": {"conversation_id": str(conversation_id), "removed": removed}},
        )
        return removed

    # ------------------------------
    # Validation and preparation
    # ------------------------------
    def _validate(self, request: SummarizeRequest) -> int:
        if not request.messages:
            raise SummaryValidationError("messages must not be empty")
        limit = request.limit
        if limit is not None and (isinstance(limit, bool) or not isinstance(limit, int) or limit < 1):
            raise SummaryValidationError(f"limit must be a positive integer, got {limit!r}")
        if not is_valid_model(self._settings.model):
            raise SummaryValidationError(f"model {self._settings.model!r} is not supported")
        return limit if limit is not None else self._settings.default_limit

    def _check_messages(self, request: SummarizeRequest) -> None:
        # Cache keys read every message's id and timestamp, so shape is checked first.
        try:
            self._anonymizer.check(request.messages)
        except SanitizationError:
            self._log_error("sanitize-failed", request)
            raise

    def _sanitize(self, messages: Sequence[Message], request: SummarizeRequest) -> SanitizedTranscript:
        try:
            return self._anonymizer.sanitize(messages)
        except SanitizationError:
            self._log_error("sanitize-failed", request)
            raise
        except (AttributeError, TypeError, ValueError, re.error) as exc:
            self._log_error("sanitize-failed", request)
            raise SanitizationError(f"Failed to anonymize messages: {exc}") from exc

    # ------------------------------
    # Provider calls
    # ------------------------------
    def _require_client(self) -> OpenAIClient:
        if not self._client:
            raise RuntimeError("SummaryService requires an OpenAIClient to generate summaries")
        return self._client

    async def _complete_with_retry(
        self,
        prompt: str,
        request: SummarizeRequest,
        deadline: Optional[float],
    ) -> Tuple[Completion, int]:
        client = self._require_client()
        loop = asyncio.get_running_loop()
        retry = self._settings.retry
        provider_timeout = self._settings.provider_timeout
        attempt = 0

        while True:
            remaining = self._remaining(deadline, "provider call")
            attempt_timeout = provider_timeout if remaining is None else min(provider_timeout, remaining)
            try:
                completion = await asyncio.wait_for(
                    client.complete(
                        prompt,
                        self._settings.model,
                        self._settings.max_tokens,
                        self._settings.temperature,
                        timeout=attempt_timeout,
                    ),
                    attempt_timeout,
                )
            except asyncio.TimeoutError as exc:
                if deadline is not None and loop.time() >= deadline:
                    raise SummaryCancelledError("Deadline exceeded while waiting for the provider") from exc
                error: Exception = TransientError(f"Provider request timeout after {attempt_timeout:.1f}s")
            except Exception as exc:  # classified below; unknown errors end up fatal
                error = exc
            else:
                if attempt > 0:
                    self._log_debug("provider-recovered", request, {"attempt": attempt})
                return completion, attempt + 1

            if classify_error(error) is not Retryability.RETRYABLE:
                self._log_error("provider-failed", request, {"attempt": attempt, "error": str(error)})
                raise FatalProviderError(
                    f"Provider call failed and is not retryable: {error}", attempts=attempt + 1
                ) from error

            if attempt >= retry.max_retries:
                self._log_error(
                    "provider-retries-exhausted",
                    request,
                    {"attempt": attempt, "max_retries": retry.max_retries, "error": str(error)},
                )
                raise RetriesExhaustedError(
                    f"Provider failed after {retry.max_retries} retries: {error}",
                    attempts=attempt + 1,
                    last_error=error,
                ) from error

            delay = compute_delay(attempt, retry, self._rng)
            if deadline is not None and loop.time() + delay >= deadline:
                raise SummaryCancelledError("Deadline would pass before the next provider attempt") from error

            self._log_warning(
                "provider-retry", request, {"attempt": attempt, "delay": delay, "error": str(error)}
            )
            await self._sleep(delay)
            attempt += 1

    # ------------------------------
    # Cache helpers
    # ------------------------------
    async def _cache_get(
        self,
        cache_key: str,
        request: SummarizeRequest,
        deadline: Optional[float],
    ) -> Optional[SummarizeResult]:
        try:
            return await self._bounded(lambda: self._cache.get(cache_key), deadline, "cache lookup")
        except CacheUnavailableError as exc:
            self._log_warning("cache-get-failed", request, {"cache_key": cache_key, "error": str(exc)})
            return None

    async def _cache_set(
        self,
        cache_key: str,
        result: SummarizeResult,
        request: SummarizeRequest,
        deadline: Optional[float],
    ) -> None:
        try:
            await self._bounded(
                lambda: self._cache.set(cache_key, result, self._settings.summary_ttl),
                deadline,
                "cache store",
            )
        except (CacheUnavailableError, SummaryCancelledError) as exc:
            # A produced summary is returned even when it cannot be stored.
            self._log_warning("cache-set-failed", request, {"cache_key": cache_key, "error": str(exc)})

    async def _bounded(
        self,
        call: Callable[[], Awaitable[T]],
        deadline: Optional[float],
        stage: str,
    ) -> T:
        remaining = self._remaining(deadline, stage)
        if remaining is None:
            return await call()
        try:
            return await asyncio.wait_for(call(), remaining)
        except asyncio.TimeoutError as exc:
            raise SummaryCancelledError(f"Deadline exceeded during {stage}") from exc

    def _remaining(self, deadline: Optional[float], stage: str) -> Optional[float]:
        if deadline is None:
            return None
        remaining = deadline - asyncio.get_running_loop().time()
        if remaining <= 0:
            raise SummaryCancelledError(f"Deadline exceeded before {stage}")
        return remaining

    # ------------------------------
    # Logging
    # ------------------------------
    def _payload(self, event: str, request: SummarizeRequest, extra: Optional[Mapping[str, object]]) -> dict:
        payload = {
            "event": event,
            "conversation_id": str(request.conversation_id),
            "user_id": str(request.user_id),
            "model": self._settings.model,
        }
        if extra:
            payload.update(dict(extra))
        return payload

    def _log_debug(self, event: str, request: SummarizeRequest, extra: Optional[Mapping[str, object]] = None) -> None:
        self._logger.debug("summary-service", extra={"summary": self._payload(event, request, extra)})

    def _log_warning(self, event: str, request: SummarizeRequest, extra: Optional[Mapping[str, object]] = None) -> None:
        self._logger.warning(event, extra={"summary": self._payload(event, request, extra)})

    def _log_error(self, event: str, request: SummarizeRequest, extra: Optional[Mapping[str, object]] = None) -> None:
        self._logger.error(event, extra={"summary": self._payload(event, request, extra)})
