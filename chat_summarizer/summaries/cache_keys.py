"""Deterministic cache keys for summaries."""
from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from typing import Sequence
from uuid import UUID

from .types import Message

_KEY_PREFIX = "summary"
_DIGEST_LENGTH = 16


def conversation_key_prefix(conversation_id: UUID) -> str:
    """Return the prefix shared by every summary key of a conversation."""
    return f"{_KEY_PREFIX}:{conversation_id}:"


def build_cache_key(conversation_id: UUID, messages: Sequence[Message], limit: int) -> str:
    """Fingerprint a summarization request.

    Only message ids and creation timestamps are hashed, never the message
    bodies, so the cost stays linear in the number of messages.
    """
    hasher = hashlib.sha256()
    hasher.update(str(conversation_id).encode("utf-8"))
    hasher.update(f"|limit:{limit}".encode("utf-8"))
    for message in messages:
        hasher.update(f"|{message.id}@{_utc_isoformat(message.created_at)}".encode("utf-8"))
    digest = hasher.hexdigest()[:_DIGEST_LENGTH]
    return f"{conversation_key_prefix(conversation_id)}{digest}"


def _utc_isoformat(value: datetime) -> str:
    # Naive timestamps are taken as UTC so keys do not depend on the host timezone.
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()
