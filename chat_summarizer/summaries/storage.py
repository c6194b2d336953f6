"""Summary cache bindings: in-memory, Markdown files and Redis."""
from __future__ import annotations

import asyncio
import json
import math
import os
import tempfile
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Protocol, Tuple

import redis.asyncio as redis
import yaml
from redis.exceptions import RedisError

from .errors import CacheUnavailableError
from .types import SummarizeResult

_FRONT_MATTER_DELIMITER = "---"
_SUMMARY_SUFFIX = ".md"
_EXPIRES_AT = "expires_at"


class SummaryCache(Protocol):
    """Minimal cache contract used by the orchestrator."""

    async def get(self, key: str) -> Optional[SummarizeResult]:
        ...

    async def set(self, key: str, value: SummarizeResult, ttl: float) -> None:
        ...

    async def delete_prefix(self, prefix: str) -> int:
        ...


class InMemorySummaryCache:
    """Process-local cache for tests and development."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: Dict[str, Tuple[SummarizeResult, float]] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[SummarizeResult]:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            return value

    async def set(self, key: str, value: SummarizeResult, ttl: float) -> None:
        async with self._lock:
            self._entries[key] = (value, self._clock() + ttl)

    async def delete_prefix(self, prefix: str) -> int:
        async with self._lock:
            doomed = [key for key in self._entries if key.startswith(prefix)]
            for key in doomed:
                del self._entries[key]
            return len(doomed)

    def __len__(self) -> int:
        return len(self._entries)


class FileSummaryCache:
    """Stores each summary as Markdown with YAML front matter under ``root``.

    A key such as ``summary:<conversation>:<digest>`` lives at
    ``root/summary/<conversation>/<digest>.md``.
    """

    def __init__(self, root: Path, clock: Callable[[], float] = time.time) -> None:
        self.root = Path(root).expanduser()
        self._clock = clock

    def path_for(self, key: str) -> Path:
        parts = [_slugify(part) for part in key.split(":") if part]
        if not parts:
            raise ValueError("cache key must not be empty")
        *directories, name = parts
        return self.root.joinpath(*directories, f"{name}{_SUMMARY_SUFFIX}")

    async def get(self, key: str) -> Optional[SummarizeResult]:
        return await asyncio.to_thread(self._get_sync, key)

    async def set(self, key: str, value: SummarizeResult, ttl: float) -> None:
        await asyncio.to_thread(self._set_sync, key, value, ttl)

    async def delete_prefix(self, prefix: str) -> int:
        return await asyncio.to_thread(self._delete_prefix_sync, prefix)

    def _get_sync(self, key: str) -> Optional[SummarizeResult]:
        path = self.path_for(key)
        try:
            if not path.is_file():
                return None
            metadata, body = load_summary(path)
            expires_at = metadata.pop(_EXPIRES_AT, None)
            if not isinstance(expires_at, (int, float)) or self._clock() >= expires_at:
                path.unlink(missing_ok=True)
                return None
        except (OSError, ValueError, yaml.YAMLError) as exc:
            raise CacheUnavailableError(f"Could not read cached summary {path}: {exc}") from exc

        try:
            return SummarizeResult.from_dict({**metadata, "summary": body.rstrip("\n")})
        except (KeyError, TypeError, ValueError) as exc:
            raise CacheUnavailableError(f"Cached summary {path} is malformed: {exc}") from exc

    def _set_sync(self, key: str, value: SummarizeResult, ttl: float) -> None:
        metadata = value.to_dict()
        body = str(metadata.pop("summary"))
        metadata[_EXPIRES_AT] = self._clock() + ttl
        try:
            write_summary(self.path_for(key), body, metadata)
        except (OSError, yaml.YAMLError) as exc:
            raise CacheUnavailableError(f"Could not write cached summary for {key}: {exc}") from exc

    def _delete_prefix_sync(self, prefix: str) -> int:
        if not self.root.is_dir():
            return 0
        removed = 0
        try:
            for path in sorted(self.root.rglob(f"*{_SUMMARY_SUFFIX}")):
                relative = path.relative_to(self.root).with_suffix("")
                if ":".join(relative.parts).startswith(_slug_prefix(prefix)):
                    path.unlink()
                    removed += 1
        except OSError as exc:
            raise CacheUnavailableError(f"Could not invalidate summaries under {self.root}: {exc}") from exc
        return removed


class RedisSummaryCache:
    """Redis binding; expiry is delegated to Redis itself."""

    def __init__(self, client: "redis.Redis", namespace: str = "ai-svc") -> None:
        self._client = client
        self._namespace = namespace

    @classmethod
    def from_url(cls, url: str, namespace: str = "ai-svc") -> "RedisSummaryCache":
        return cls(redis.from_url(url, decode_responses=True), namespace=namespace)

    def _redis_key(self, key: str) -> str:
        return f"{self._namespace}:{key}"

    async def get(self, key: str) -> Optional[SummarizeResult]:
        try:
            raw = await self._client.get(self._redis_key(key))
        except RedisError as exc:
            raise CacheUnavailableError(f"Redis get failed for {key}: {exc}") from exc
        if raw is None:
            return None
        try:
            return SummarizeResult.from_dict(json.loads(raw))
        except (KeyError, TypeError, ValueError) as exc:
            raise CacheUnavailableError(f"Cached summary {key} is malformed: {exc}") from exc

    async def set(self, key: str, value: SummarizeResult, ttl: float) -> None:
        payload = json.dumps(value.to_dict(), ensure_ascii=False)
        try:
            await self._client.set(self._redis_key(key), payload, ex=max(1, math.ceil(ttl)))
        except RedisError as exc:
            raise CacheUnavailableError(f"Redis set failed for {key}: {exc}") from exc

    async def delete_prefix(self, prefix: str) -> int:
        removed = 0
        try:
            keys: List[str] = [k async for k in self._client.scan_iter(match=f"{self._redis_key(prefix)}*")]
            if keys:
                removed = await self._client.delete(*keys)
        except RedisError as exc:
            raise CacheUnavailableError(f"Redis invalidation failed for {prefix}: {exc}") from exc
        return int(removed)

    async def aclose(self) -> None:
        await self._client.aclose()


def load_summary(markdown_path: Path) -> Tuple[Dict[str, object], str]:
    """Read a summary markdown file and return its front matter and body."""
    raw_text = Path(markdown_path).read_text(encoding="utf-8")
    return _split_front_matter(raw_text)


def write_summary(markdown_path: Path, body: str, metadata: Dict[str, object]) -> Path:
    """Persist summary markdown with YAML front matter."""
    markdown_path = Path(markdown_path)
    markdown_path.parent.mkdir(parents=True, exist_ok=True)
    if not isinstance(metadata, dict):
        raise TypeError("metadata must be a mapping")
    front_matter = yaml.safe_dump(dict(metadata), sort_keys=True, allow_unicode=False).strip()
    body = body if body.endswith("\n") else f"{body}\n"
    sections = [
        f"{_FRONT_MATTER_DELIMITER}\n{front_matter}\n{_FRONT_MATTER_DELIMITER}",
        "",  # blank line between metadata and body
        body,
    ]
    # One temp file per writer; concurrent writers of the same key must not share it.
    fd, tmp_name = tempfile.mkstemp(dir=markdown_path.parent, prefix=f".{markdown_path.stem}.", suffix=".tmp")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write("\n".join(sections))
        tmp_path.replace(markdown_path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
    return markdown_path


def _slugify(value: str) -> str:
    normalized = "".join(ch.lower() if ch.isalnum() else "-" for ch in value.strip())
    parts = [part for part in normalized.split("-") if part]
    slug = "-".join(parts)
    return slug or "default"


def _slug_prefix(prefix: str) -> str:
    parts = prefix.split(":")
    slugged = [_slugify(part) for part in parts if part]
    joined = ":".join(slugged)
    return f"{joined}:" if prefix.endswith(":") else joined


def _split_front_matter(content: str) -> Tuple[Dict[str, object], str]:
    lines = content.splitlines()
    if not lines or lines[0].strip() != _FRONT_MATTER_DELIMITER:
        return {}, content

    for idx in range(1, len(lines)):
        if lines[idx].strip() == _FRONT_MATTER_DELIMITER:
            front_matter_text = "\n".join(lines[1:idx]).strip()
            metadata = yaml.safe_load(front_matter_text) if front_matter_text else {}
            if metadata is None:
                metadata = {}
            if not isinstance(metadata, dict):
                raise ValueError("Summary front matter must deserialize to a mapping")
            body_lines = lines[idx + 1 :]
            if body_lines and not body_lines[0].strip():
                body_lines = body_lines[1:]
            body = "\n".join(body_lines)
            if body and not body.endswith("\n"):
                body = f"{body}\n"
            return metadata, body

    # No closing delimiter found; treat entire file as body to avoid data loss.
    return {}, content if content.endswith("\n") else f"{content}\n"
