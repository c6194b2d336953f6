"""Process-wide settings, read once from the environment."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

from .summaries.openai_client import DEFAULT_BASE_URL
from .summaries.retry import RetryConfig

CACHE_BACKENDS = ("memory", "file", "redis")


def get_default_cache_dir() -> Path:
    return Path("~/.cache/chat-summarizer").expanduser()


def get_api_key_path() -> Path:
    return Path("~/.config/chat-summarizer/key").expanduser()


@dataclass(frozen=True)
class SummarizerSettings:
    """Provider, retry and cache settings; immutable once loaded."""

    api_key: Optional[str] = None
    api_base: str = DEFAULT_BASE_URL
    model: str = "gpt-4"
    max_tokens: int = 2048
    temperature: float = 0.7
    provider_timeout: float = 30.0
    retry: RetryConfig = field(default_factory=RetryConfig)
    summary_ttl: float = 3600.0
    default_limit: int = 15
    cache_backend: str = "file"
    cache_dir: Path = field(default_factory=get_default_cache_dir)
    redis_url: str = "redis://localhost:6379/1"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "SummarizerSettings":
        env = os.environ if environ is None else environ
        defaults = cls()
        retry_defaults = defaults.retry

        cache_backend = _get_str(env, "SUMMARY_CACHE", defaults.cache_backend).lower()
        if cache_backend not in CACHE_BACKENDS:
            cache_backend = defaults.cache_backend

        cache_dir = _get_str(env, "SUMMARY_CACHE_DIR", "")
        return cls(
            api_key=load_api_key(env),
            api_base=_get_str(env, "AI_API_BASE", defaults.api_base),
            model=_get_str(env, "AI_MODEL", defaults.model),
            max_tokens=_get_int(env, "AI_MAX_TOKENS", defaults.max_tokens),
            temperature=_get_float(env, "AI_TEMPERATURE", defaults.temperature),
            provider_timeout=_get_float(env, "AI_TIMEOUT", defaults.provider_timeout),
            retry=RetryConfig(
                base_delay=_get_float(env, "AI_RETRY_BASE_DELAY", retry_defaults.base_delay),
                max_delay=_get_float(env, "AI_RETRY_MAX_DELAY", retry_defaults.max_delay),
                backoff_factor=_get_float(env, "AI_RETRY_BACKOFF", retry_defaults.backoff_factor),
                max_retries=_get_int(env, "AI_MAX_RETRIES", retry_defaults.max_retries),
            ),
            summary_ttl=_get_float(env, "SUMMARY_TTL", defaults.summary_ttl),
            default_limit=_get_int(env, "SUMMARY_DEFAULT_LIMIT", defaults.default_limit),
            cache_backend=cache_backend,
            cache_dir=Path(cache_dir).expanduser() if cache_dir else defaults.cache_dir,
            redis_url=_get_str(env, "REDIS_URL", defaults.redis_url),
            log_level=_get_str(env, "LOG_LEVEL", defaults.log_level).upper(),
        )


def load_api_key(environ: Optional[Mapping[str, str]] = None) -> Optional[str]:
    env = os.environ if environ is None else environ
    for name in ("AI_API_KEY", "OPENAI_API_KEY"):
        env_key = env.get(name)
        if env_key and env_key.strip():
            return env_key.strip()

    try:
        contents = get_api_key_path().read_text(encoding="utf-8").strip()
    except OSError:
        return None
    return contents or None


def _get_str(env: Mapping[str, str], name: str, default: str) -> str:
    value = env.get(name)
    if value is None or not value.strip():
        return default
    return value.strip()


def _get_int(env: Mapping[str, str], name: str, default: int) -> int:
    try:
        return int(env.get(name, ""))
    except ValueError:
        return default


def _get_float(env: Mapping[str, str], name: str, default: float) -> float:
    try:
        return float(env.get(name, ""))
    except ValueError:
        return default
