"""Tests for the summarization orchestrator."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import random
import uuid
from pathlib import Path

import pytest

from chat_summarizer.summaries import (
    CacheUnavailableError,
    FatalProviderError,
    FileSummaryCache,
    InMemorySummaryCache,
    Message,
    RateLimitError,
    RetriesExhaustedError,
    RetryConfig,
    SanitizationError,
    SummarizeRequest,
    SummaryCancelledError,
    SummaryService,
    SummaryValidationError,
    TransientError,
    build_cache_key,
    compute_delay,
)
from conftest import CONVERSATION_ID, START, USER_ID, FakeProvider, RecordingSleep, make_messages


def make_request(messages, limit=None, conversation_id=CONVERSATION_ID):
    return SummarizeRequest(
        conversation_id=conversation_id,
        messages=tuple(messages),
        user_id=USER_ID,
        limit=limit,
    )


def make_service(provider, cache, settings, sleep=None, **kwargs):
    return SummaryService(
        client=provider,
        cache=cache,
        settings=settings,
        sleep=sleep or RecordingSleep(),
        rng=random.Random(7),
        **kwargs,
    )


class FailingCache:
    def __init__(self):
        self.get_calls = 0
        self.set_calls = 0

    async def get(self, key):
        self.get_calls += 1
        raise CacheUnavailableError("redis is down")

    async def set(self, key, value, ttl):
        self.set_calls += 1
        raise CacheUnavailableError("redis is down")

    async def delete_prefix(self, prefix):
        raise CacheUnavailableError("redis is down")


class SlowProvider(FakeProvider):
    async def complete(self, *args, **kwargs):
        self.calls.append(kwargs)
        await asyncio.sleep(1)
        raise AssertionError("should have been cut off by the attempt timeout")


@pytest.mark.asyncio
async def test_cache_miss_then_hit_then_new_limit(provider, cache, settings):
    messages = make_messages(20)
    service = make_service(provider, cache, settings)

    first = await service.summarize(make_request(messages, limit=15))
    assert first.cached is False
    assert first.message_count == 15
    assert first.summary_text == "The team agreed to ship the release on Friday."
    assert len(provider.calls) == 1
    prompt = provider.calls[0]["prompt"]
    assert "note 05 about the release" in prompt
    assert "note 19 about the release" in prompt
    assert "note 04 about the release" not in prompt
    assert prompt.index("note 05") < prompt.index("note 19")

    second = await service.summarize(make_request(messages, limit=15))
    assert second.cached is True
    assert second.summary_text == first.summary_text
    assert second.id == first.id
    assert len(provider.calls) == 1

    third = await service.summarize(make_request(messages, limit=10))
    assert third.cached is False
    assert third.message_count == 10
    assert len(provider.calls) == 2


@pytest.mark.asyncio
async def test_provider_receives_configured_parameters(provider, cache, settings):
    service = make_service(provider, cache, settings)

    await service.summarize(make_request(make_messages(3)))

    call = provider.calls[0]
    assert call["model"] == "gpt-4"
    assert call["max_tokens"] == 256
    assert call["temperature"] == 0.3
    assert call["timeout"] == pytest.approx(5.0)
    assert "Summarize the following messages" in call["prompt"]


@pytest.mark.asyncio
async def test_default_limit_applies_when_request_has_none(provider, cache, settings):
    service = make_service(provider, cache, settings)

    result = await service.summarize(make_request(make_messages(20)))

    assert result.message_count == 15
    assert "note 04" not in provider.calls[0]["prompt"]
    assert "note 05" in provider.calls[0]["prompt"]


@pytest.mark.asyncio
async def test_result_is_stored_under_request_key(provider, cache, settings):
    messages = make_messages(4)
    service = make_service(provider, cache, settings)

    result = await service.summarize(make_request(messages, limit=3))

    stored = await cache.get(build_cache_key(CONVERSATION_ID, messages, 3))
    assert stored == result
    assert result.tokens_used == 42
    assert result.metadata["prompt_tokens"] == 30
    assert result.metadata["completion_tokens"] == 12
    assert result.metadata["attempts"] == 1


@pytest.mark.asyncio
async def test_retries_twice_then_succeeds(cache, settings):
    provider = FakeProvider(
        [RateLimitError("rate limit exceeded"), RuntimeError("503 service unavailable"), "Recovered summary."]
    )
    sleep = RecordingSleep()
    service = make_service(provider, cache, settings, sleep=sleep)

    result = await service.summarize(make_request(make_messages(5)))

    assert result.summary_text == "Recovered summary."
    assert result.metadata["attempts"] == 3
    assert len(provider.calls) == 3
    assert len(sleep.delays) == 2
    assert 0.1 <= sleep.delays[0] < 0.2
    assert 0.2 <= sleep.delays[1] < 0.4
    for attempt, delay in enumerate(sleep.delays):
        assert delay <= compute_delay(attempt, dataclasses.replace(settings.retry, jitter=False)) * 2


@pytest.mark.asyncio
async def test_authentication_failure_is_not_retried(cache, settings):
    provider = FakeProvider([RuntimeError("authentication failed")])
    sleep = RecordingSleep()
    service = make_service(provider, cache, settings, sleep=sleep)

    with pytest.raises(FatalProviderError) as excinfo:
        await service.summarize(make_request(make_messages(5)))

    assert excinfo.value.attempts == 1
    assert str(excinfo.value.__cause__) == "authentication failed"
    assert len(provider.calls) == 1
    assert sleep.delays == []
    assert len(cache) == 0


@pytest.mark.asyncio
async def test_unknown_errors_fail_fast(cache, settings):
    provider = FakeProvider([RuntimeError("something odd happened")])
    service = make_service(provider, cache, settings)

    with pytest.raises(FatalProviderError):
        await service.summarize(make_request(make_messages(2)))

    assert len(provider.calls) == 1


@pytest.mark.asyncio
async def test_retries_exhausted_is_tagged(cache, settings):
    settings = dataclasses.replace(settings, retry=RetryConfig(base_delay=0.1, max_delay=1.0, max_retries=2))
    provider = FakeProvider([TransientError("502 bad gateway")] * 5)
    sleep = RecordingSleep()
    service = make_service(provider, cache, settings, sleep=sleep)

    with pytest.raises(RetriesExhaustedError) as excinfo:
        await service.summarize(make_request(make_messages(2)))

    assert excinfo.value.attempts == 3
    assert isinstance(excinfo.value.last_error, TransientError)
    assert len(provider.calls) == 3
    assert len(sleep.delays) == 2


@pytest.mark.asyncio
async def test_zero_max_retries_gives_up_after_first_attempt(cache, settings):
    settings = dataclasses.replace(settings, retry=RetryConfig(max_retries=0))
    provider = FakeProvider([RateLimitError("too many requests")])
    sleep = RecordingSleep()
    service = make_service(provider, cache, settings, sleep=sleep)

    with pytest.raises(RetriesExhaustedError):
        await service.summarize(make_request(make_messages(2)))

    assert sleep.delays == []


@pytest.mark.asyncio
async def test_attempt_timeout_is_retryable(cache, settings):
    settings = dataclasses.replace(
        settings,
        provider_timeout=0.01,
        retry=RetryConfig(base_delay=0.1, max_delay=1.0, max_retries=1),
    )
    provider = SlowProvider()
    sleep = RecordingSleep()
    service = make_service(provider, cache, settings, sleep=sleep)

    with pytest.raises(RetriesExhaustedError) as excinfo:
        await service.summarize(make_request(make_messages(2)))

    assert isinstance(excinfo.value.last_error, TransientError)
    assert len(provider.calls) == 2
    assert len(sleep.delays) == 1


@pytest.mark.asyncio
async def test_unwritable_file_cache_falls_back_to_provider(provider, settings, temp_dir, monkeypatch):
    now = [1000.0]
    cache = FileSummaryCache(temp_dir / "cache", clock=lambda: now[0])
    service = make_service(provider, cache, settings)
    request = make_request(make_messages(3))
    await service.summarize(request)
    now[0] += settings.summary_ttl + 1

    def read_only(self, missing_ok=False):
        raise PermissionError("read-only cache dir")

    monkeypatch.setattr(Path, "unlink", read_only)

    result = await service.summarize(request)

    assert result.cached is False
    assert len(provider.calls) == 2


@pytest.mark.asyncio
async def test_cache_failures_are_soft(provider, settings):
    cache = FailingCache()
    service = make_service(provider, cache, settings)

    result = await service.summarize(make_request(make_messages(3)))

    assert result.cached is False
    assert cache.get_calls == 1
    assert cache.set_calls == 1
    assert len(provider.calls) == 1


@pytest.mark.asyncio
async def test_invalidate_propagates_cache_failures(provider, settings):
    service = make_service(provider, FailingCache(), settings)

    with pytest.raises(CacheUnavailableError):
        await service.invalidate_conversation(CONVERSATION_ID)


@pytest.mark.asyncio
async def test_invalidate_conversation_forces_new_call(provider, cache, settings):
    other_conversation = uuid.uuid4()
    service = make_service(provider, cache, settings)
    messages = make_messages(3)
    await service.summarize(make_request(messages))
    await service.summarize(make_request(messages, conversation_id=other_conversation))

    removed = await service.invalidate_conversation(CONVERSATION_ID)

    assert removed == 1
    again = await service.summarize(make_request(messages))
    assert again.cached is False
    assert len(provider.calls) == 3
    other = await service.summarize(make_request(messages, conversation_id=other_conversation))
    assert other.cached is True


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "messages, limit",
    [
        ((), None),
        (tuple(make_messages(2)), 0),
        (tuple(make_messages(2)), -3),
    ],
)
async def test_invalid_requests_never_reach_provider(provider, cache, settings, messages, limit):
    service = make_service(provider, cache, settings)

    with pytest.raises(SummaryValidationError):
        await service.summarize(make_request(messages, limit=limit))

    assert provider.calls == []


@pytest.mark.asyncio
async def test_unknown_model_is_rejected(provider, cache, settings):
    service = make_service(provider, cache, dataclasses.replace(settings, model="gpt-9-ultra"))

    with pytest.raises(SummaryValidationError):
        await service.summarize(make_request(make_messages(2)))

    assert provider.calls == []


@pytest.mark.asyncio
async def test_sanitization_failure_is_fatal(provider, cache, settings):
    broken = Message(
        id=uuid.uuid4(),
        user_id=USER_ID,
        content=None,
        role="user",
        created_at=START,
    )
    sleep = RecordingSleep()
    service = make_service(provider, cache, settings, sleep=sleep)

    with pytest.raises(SanitizationError):
        await service.summarize(make_request([broken]))

    assert provider.calls == []
    assert sleep.delays == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "broken",
    [
        Message(
            id=uuid.uuid4(),
            user_id=USER_ID,
            content="hi",
            role="user",
            created_at="2024-03-01T09:00:00Z",
        ),
        {"content": "hi", "role": "user"},
    ],
)
async def test_malformed_messages_fail_before_cache_lookup(provider, settings, broken):
    cache = FailingCache()
    service = make_service(provider, cache, settings)

    with pytest.raises(SanitizationError):
        await service.summarize(make_request([*make_messages(2), broken]))

    assert cache.get_calls == 0
    assert provider.calls == []


@pytest.mark.asyncio
async def test_expired_deadline_starts_nothing(provider, cache, settings):
    service = make_service(provider, cache, settings)

    with pytest.raises(SummaryCancelledError):
        await service.summarize(make_request(make_messages(2)), timeout=0)

    assert provider.calls == []


@pytest.mark.asyncio
async def test_deadline_shorter_than_backoff_aborts_without_retry(cache, settings):
    settings = dataclasses.replace(settings, retry=RetryConfig(base_delay=5.0, max_delay=10.0))
    provider = FakeProvider([RateLimitError("rate limit exceeded"), "never used"])
    sleep = RecordingSleep()
    service = make_service(provider, cache, settings, sleep=sleep)

    with pytest.raises(SummaryCancelledError):
        await service.summarize(make_request(make_messages(2)), timeout=1.0)

    assert len(provider.calls) == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_caller_cancellation_during_backoff(cache, settings):
    settings = dataclasses.replace(settings, retry=RetryConfig(base_delay=10.0, max_delay=10.0))
    provider = FakeProvider([RateLimitError("rate limit exceeded"), "never used"])
    service = SummaryService(client=provider, cache=cache, settings=settings, sleep=asyncio.sleep)

    task = asyncio.create_task(service.summarize(make_request(make_messages(2))))
    for _ in range(50):
        if provider.calls:
            break
        await asyncio.sleep(0.01)
    await asyncio.sleep(0.01)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert len(provider.calls) == 1


@pytest.mark.asyncio
async def test_logs_never_contain_original_pii(cache, settings, caplog):
    message = Message(
        id=uuid.uuid4(),
        user_id=USER_ID,
        content="please ping Maria Garcia at maria.garcia@corp.io or 415-555-2671",
        role="user",
        created_at=START,
    )
    provider = FakeProvider([TransientError("503 service unavailable"), "done"])
    service = make_service(provider, cache, settings, logger=logging.getLogger("tests.summaries"))

    with caplog.at_level(logging.DEBUG, logger="tests.summaries"):
        await service.summarize(make_request([message]))

    prompt = provider.calls[0]["prompt"]
    for secret in ("Maria Garcia", "maria.garcia@corp.io", "415-555-2671"):
        assert secret not in prompt
    assert caplog.records
    for record in caplog.records:
        dumped = repr(record.__dict__)
        for secret in ("Maria Garcia", "maria.garcia@corp.io", "415-555-2671"):
            assert secret not in dumped


@pytest.mark.asyncio
async def test_concurrent_requests_are_independent(provider, settings):
    cache = InMemorySummaryCache()
    service = make_service(provider, cache, settings)
    first = make_request(make_messages(3))
    second = make_request(make_messages(3), conversation_id=uuid.uuid4())

    results = await asyncio.gather(service.summarize(first), service.summarize(second))

    assert {r.conversation_id for r in results} == {first.conversation_id, second.conversation_id}
    assert len(cache) == 2
