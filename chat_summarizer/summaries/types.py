"""Dataclasses shared across the summaries feature."""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Tuple
from uuid import UUID

from .errors import SummaryValidationError

MESSAGE_ROLES = ("user", "assistant", "system")


@dataclass(frozen=True)
class Message:
    """A single chat message owned by the calling conversation history."""

    id: UUID
    user_id: UUID
    content: str
    role: str
    created_at: datetime

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Message":
        if not isinstance(data, Mapping):
            raise SummaryValidationError("message must be a JSON object")
        role = data.get("role")
        if role not in MESSAGE_ROLES:
            raise SummaryValidationError(f"unsupported message role: {role!r}")
        content = data.get("content")
        if not isinstance(content, str):
            raise SummaryValidationError("message content must be a string")
        return cls(
            id=_parse_uuid(data.get("id"), "id"),
            user_id=_parse_uuid(data.get("user_id"), "user_id"),
            content=content,
            role=role,
            created_at=_parse_timestamp(data.get("created_at"), "created_at"),
        )

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": str(self.id),
            "user_id": str(self.user_id),
            "content": self.content,
            "role": self.role,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class SummarizeRequest:
    """Immutable request payload handed over by the inbound request layer."""

    conversation_id: UUID
    messages: Tuple[Message, ...]
    user_id: UUID
    limit: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SummarizeRequest":
        """Build a request from the JSON body shape used by the HTTP layer."""
        if not isinstance(data, Mapping):
            raise SummaryValidationError("request body must be a JSON object")
        raw_messages = data.get("messages")
        if not isinstance(raw_messages, list):
            raise SummaryValidationError("messages must be a list")
        limit = data.get("limit")
        if limit is not None and (isinstance(limit, bool) or not isinstance(limit, int)):
            raise SummaryValidationError("limit must be an integer")
        return cls(
            conversation_id=_parse_uuid(data.get("conversation_id"), "conversation_id"),
            messages=tuple(Message.from_dict(item) for item in raw_messages),
            user_id=_parse_uuid(data.get("user_id"), "user_id"),
            limit=limit,
        )


@dataclass(frozen=True)
class SummarizeResult:
    """Normalized representation of a produced (or cached) summary."""

    summary_text: str
    produced_at: datetime
    conversation_id: Optional[UUID] = None
    model: str = ""
    message_count: int = 0
    tokens_used: int = 0
    cached: bool = False
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    metadata: Dict[str, object] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "conversation_id": str(self.conversation_id) if self.conversation_id else None,
            "summary": self.summary_text,
            "produced_at": self.produced_at.isoformat(),
            "model": self.model,
            "message_count": self.message_count,
            "tokens_used": self.tokens_used,
            "cached_result": self.cached,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SummarizeResult":
        conversation_id = data.get("conversation_id")
        metadata = data.get("metadata")
        return cls(
            summary_text=str(data["summary"]),
            produced_at=_parse_timestamp(data.get("produced_at"), "produced_at"),
            conversation_id=UUID(str(conversation_id)) if conversation_id else None,
            model=str(data.get("model") or ""),
            message_count=int(data.get("message_count") or 0),
            tokens_used=int(data.get("tokens_used") or 0),
            cached=bool(data.get("cached_result", False)),
            id=str(data.get("id") or uuid.uuid4()),
            metadata=dict(metadata) if isinstance(metadata, Mapping) else {},
        )


def _parse_uuid(value: Any, field_name: str) -> UUID:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except (TypeError, ValueError) as exc:
        raise SummaryValidationError(f"{field_name} must be a UUID, got {value!r}") from exc


def _parse_timestamp(value: Any, field_name: str) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as exc:
            raise SummaryValidationError(f"{field_name} is not an ISO-8601 timestamp: {value!r}") from exc
    else:
        raise SummaryValidationError(f"{field_name} must be an ISO-8601 timestamp")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
