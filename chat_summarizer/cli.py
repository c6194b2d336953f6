from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import logging
import sys
from pathlib import Path
from typing import Optional
from uuid import UUID

from .config import CACHE_BACKENDS, SummarizerSettings
from .messages import load_request
from .summaries import (
    AuthenticationError,
    FatalProviderError,
    FileSummaryCache,
    HealthProbe,
    InMemorySummaryCache,
    OpenAIClient,
    RedisSummaryCache,
    RetriesExhaustedError,
    SummaryCache,
    SummaryCancelledError,
    SummaryError,
    SummaryService,
    supported_models,
)


def configure_logging(level: str, verbose: bool = False) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(
        logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s %(summary)s",
            defaults={"summary": ""},
        )
    )
    logging.basicConfig(
        level=logging.DEBUG if verbose else getattr(logging, level.upper(), logging.INFO),
        handlers=[handler],
    )


def build_cache(settings: SummarizerSettings) -> SummaryCache:
    if settings.cache_backend == "memory":
        return InMemorySummaryCache()
    if settings.cache_backend == "redis":
        return RedisSummaryCache.from_url(settings.redis_url)
    return FileSummaryCache(settings.cache_dir)


def build_openai_client(settings: SummarizerSettings) -> OpenAIClient:
    if not settings.api_key:
        raise AuthenticationError(
            "Provider API key not found. Set AI_API_KEY or place a key in ~/.config/chat-summarizer/key."
        )
    return OpenAIClient(
        api_key=settings.api_key,
        base_url=settings.api_base,
        timeout=settings.provider_timeout,
    )


async def close_cache(cache: SummaryCache) -> None:
    if isinstance(cache, RedisSummaryCache):
        await cache.aclose()


def apply_overrides(settings: SummarizerSettings, args: argparse.Namespace) -> SummarizerSettings:
    overrides = {}
    if args.cache:
        overrides["cache_backend"] = args.cache
    if args.cache_dir:
        overrides["cache_dir"] = args.cache_dir.expanduser()
    if args.model:
        overrides["model"] = args.model
    return dataclasses.replace(settings, **overrides) if overrides else settings


async def run_summarize(args: argparse.Namespace, settings: SummarizerSettings) -> int:
    request = load_request(
        args.input,
        conversation_id=args.conversation_id,
        user_id=args.user_id,
        limit=args.limit,
    )
    cache = build_cache(settings)
    try:
        client = build_openai_client(settings)
        try:
            service = SummaryService(client=client, cache=cache, settings=settings)
            result = await service.summarize(request, timeout=args.timeout)
        finally:
            await client.aclose()
    finally:
        await close_cache(cache)

    if args.json:
        print(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))
        return 0

    status = "cached" if result.cached else "generated"
    print(f"[{status}] {request.conversation_id} ({result.message_count} messages, model {result.model})")
    print(result.summary_text)
    return 0


async def run_health(args: argparse.Namespace, settings: SummarizerSettings) -> int:
    client = build_openai_client(settings)
    try:
        healthy = await HealthProbe(client, settings.model, timeout=args.timeout).is_healthy()
    finally:
        await client.aclose()
    print("healthy" if healthy else "unhealthy")
    return 0 if healthy else 1


async def run_invalidate(args: argparse.Namespace, settings: SummarizerSettings) -> int:
    cache = build_cache(settings)
    service = SummaryService(client=None, cache=cache, settings=settings)
    try:
        removed = await service.invalidate_conversation(args.conversation_id)
    finally:
        await close_cache(cache)
    print(f"Removed {removed} cached summaries for {args.conversation_id}")
    return 0


def print_models(settings: SummarizerSettings) -> int:
    for model in supported_models():
        marker = "*" if model == settings.model else " "
        print(f"{marker} {model}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="chat-summarizer",
        description="Summarize recent chat messages through an LLM provider with PII redaction and caching.",
    )
    p.add_argument(
        "--cache",
        choices=CACHE_BACKENDS,
        help="Summary cache backend (default: SUMMARY_CACHE or file)",
    )
    p.add_argument(
        "--cache-dir",
        type=Path,
        help="Directory for the file cache (default: ~/.cache/chat-summarizer)",
    )
    p.add_argument("--model", help="Provider model identifier (default: AI_MODEL or gpt-4)")
    p.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    sub = p.add_subparsers(dest="cmd", required=True)

    p_summarize = sub.add_parser("summarize", help="Summarize a conversation log")
    p_summarize.add_argument(
        "input",
        type=Path,
        help="JSONL message log, or a .json file holding a summarize request body",
    )
    p_summarize.add_argument("--conversation-id", type=UUID, help="Conversation id (default: derived from the path)")
    p_summarize.add_argument("--user-id", type=UUID, help="Requesting user id")
    p_summarize.add_argument(
        "--limit",
        type=int,
        help="Number of most recent messages to summarize (default: SUMMARY_DEFAULT_LIMIT or 15)",
    )
    p_summarize.add_argument("--timeout", type=float, help="Overall deadline in seconds")
    p_summarize.add_argument("--json", action="store_true", help="Print the result as JSON")

    p_health = sub.add_parser("health", help="Probe the provider once")
    p_health.add_argument("--timeout", type=float, default=10.0, help="Probe timeout in seconds (default: 10)")

    sub.add_parser("models", help="List supported models")

    p_invalidate = sub.add_parser("invalidate", help="Delete cached summaries of a conversation")
    p_invalidate.add_argument("conversation_id", type=UUID, help="Conversation id")

    return p


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = apply_overrides(SummarizerSettings.from_env(), args)
    except ValueError as exc:
        parser.error(f"Invalid configuration: {exc}")
        return 2
    configure_logging(settings.log_level, verbose=args.verbose)

    if args.cmd == "models":
        return print_models(settings)

    try:
        if args.cmd == "summarize":
            return asyncio.run(run_summarize(args, settings))
        if args.cmd == "health":
            return asyncio.run(run_health(args, settings))
        if args.cmd == "invalidate":
            return asyncio.run(run_invalidate(args, settings))
    except (ValueError, FileNotFoundError, AuthenticationError) as exc:
        parser.error(str(exc))
        return 2
    except SummaryCancelledError as exc:
        print(f"Timed out: {exc}", file=sys.stderr)
        return 3
    except (FatalProviderError, RetriesExhaustedError) as exc:
        print(f"Provider error: {exc}", file=sys.stderr)
        return 4
    except SummaryError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    parser.error("Unknown command")
    return 2


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
