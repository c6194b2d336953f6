"""Message window helpers."""
from __future__ import annotations

from typing import Sequence, Tuple

from .types import Message


def limit_messages(messages: Sequence[Message], limit: int) -> Tuple[Message, ...]:
    """Return the most recent ``limit`` messages, oldest first."""
    if limit < 1:
        raise ValueError(f"limit must be >= 1, got {limit}")
    if len(messages) <= limit:
        return tuple(messages)
    return tuple(messages[len(messages) - limit :])
