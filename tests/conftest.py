"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import tempfile
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from chat_summarizer.config import SummarizerSettings
from chat_summarizer.summaries import Completion, InMemorySummaryCache, Message, RetryConfig

CONVERSATION_ID = uuid.UUID("6f1c2a9e-7d4b-4a53-9a0f-3b1e8c6d2f10")
USER_ID = uuid.UUID("0b9a8c7d-6e5f-4a3b-8c2d-1e0f9a8b7c6d")
START = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


def make_messages(count, start=START):
    """Build ``count`` chronological messages with deterministic ids."""
    return [
        Message(
            id=uuid.uuid5(CONVERSATION_ID, f"message-{index}"),
            user_id=USER_ID,
            content=f"note {index:02d} about the release",
            role="user" if index % 2 == 0 else "assistant",
            created_at=start + timedelta(minutes=index),
        )
        for index in range(count)
    ]


class FakeProvider:
    """Scripted stand-in for the provider client."""

    def __init__(self, outcomes=None):
        self.outcomes = list(outcomes or [])
        self.calls = []
        self.closed = False

    async def complete(self, prompt, model, max_tokens=None, temperature=None, *, timeout=None, system_prompt=None):
        self.calls.append(
            {
                "prompt": prompt,
                "model": model,
                "max_tokens": max_tokens,
                "temperature": temperature,
                "timeout": timeout,
            }
        )
        outcome = self.outcomes.pop(0) if self.outcomes else "The team agreed to ship the release on Friday."
        if isinstance(outcome, BaseException):
            raise outcome
        return Completion(
            text=outcome,
            usage={"prompt_tokens": 30, "completion_tokens": 12, "total_tokens": 42},
        )

    async def aclose(self):
        self.closed = True


class RecordingSleep:
    """Sleep replacement that records requested delays and returns at once."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def settings(temp_dir):
    return SummarizerSettings(
        api_key="test-key",
        model="gpt-4",
        max_tokens=256,
        temperature=0.3,
        provider_timeout=5.0,
        retry=RetryConfig(base_delay=0.1, max_delay=10.0, backoff_factor=2.0, max_retries=3),
        summary_ttl=3600.0,
        cache_dir=temp_dir / "cache",
    )


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def cache():
    return InMemorySummaryCache()


@pytest.fixture
def recording_sleep():
    return RecordingSleep()
