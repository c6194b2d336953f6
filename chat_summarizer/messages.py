"""Helpers for reading conversation logs stored as JSON or JSON Lines."""
from __future__ import annotations

import json
import uuid
from pathlib import Path
from typing import Any, Iterable, List, Optional
from uuid import UUID

from .summaries import Message, SummarizeRequest, SummaryValidationError


def iter_jsonl(path: Path) -> Iterable[dict]:
    """Yield JSON objects from a JSON Lines file, skipping malformed rows."""
    with path.open("r", encoding="utf-8") as handle:
        for line in handle:
            line = line.strip()
            if not line:
                continue
            try:
                obj = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(obj, dict):
                yield obj


def extract_message_from_obj(obj: Any) -> Optional[dict]:
    """Return the message mapping of a log row, unwrapping ``{"payload": {...}}`` envelopes."""
    if not isinstance(obj, dict):
        return None
    if "content" in obj and "role" in obj:
        return obj
    payload = obj.get("payload")
    if isinstance(payload, dict) and "content" in payload and "role" in payload:
        message = dict(payload)
        for key in ("created_at", "id", "user_id"):
            if key not in message and obj.get(key) is not None:
                message[key] = obj[key]
        return message
    return None


def load_messages(path: Path) -> List[Message]:
    """Read every message row of a JSONL log, oldest first."""
    messages = []
    for obj in iter_jsonl(Path(path)):
        row = extract_message_from_obj(obj)
        if row:
            messages.append(Message.from_dict(row))
    return messages


def load_request(
    path: Path,
    *,
    conversation_id: Optional[UUID] = None,
    user_id: Optional[UUID] = None,
    limit: Optional[int] = None,
) -> SummarizeRequest:
    """Build a request from a JSON request body or from a JSONL message log.

    Values passed explicitly override those found in a request body. A JSONL
    log without a conversation id gets one derived from the file path so that
    repeated runs share cache entries.
    """
    path = Path(path).expanduser()
    if path.suffix == ".json":
        try:
            body = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise SummaryValidationError(f"{path} is not valid JSON: {exc}") from exc
        if not isinstance(body, dict):
            raise SummaryValidationError(f"{path} must contain a JSON object")
        if conversation_id is not None:
            body["conversation_id"] = str(conversation_id)
        if user_id is not None:
            body["user_id"] = str(user_id)
        if limit is not None:
            body["limit"] = limit
        return SummarizeRequest.from_dict(body)

    messages = load_messages(path)
    if conversation_id is None:
        conversation_id = uuid.uuid5(uuid.NAMESPACE_URL, path.resolve().as_uri())
    if user_id is None:
        user_id = messages[0].user_id if messages else uuid.UUID(int=0)
    return SummarizeRequest(
        conversation_id=conversation_id,
        messages=tuple(messages),
        user_id=user_id,
        limit=limit,
    )
