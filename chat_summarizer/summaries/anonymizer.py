"""PII redaction applied to transcripts before they leave the process."""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Iterator, List, Pattern, Sequence, Tuple

from .errors import SanitizationError
from .types import Message

EMAIL_PATTERN = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")
PHONE_PATTERN = re.compile(r"(?<![\w+])(?:\+?1[-.\s]?)?\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}(?!\w)")
NAME_PATTERN = re.compile(r"\b[A-Z][a-z]+\s+[A-Z][a-z]+\b")

PLACEHOLDER_EMAILS: Tuple[str, ...] = (
    "user1@example.com",
    "user2@example.com",
    "user3@example.com",
    "user4@example.com",
    "user5@example.com",
)

PLACEHOLDER_NAMES: Tuple[str, ...] = (
    "John Doe",
    "Jane Smith",
    "Alex Johnson",
    "Sarah Wilson",
    "Michael Brown",
    "Emily Davis",
    "David Miller",
    "Lisa Taylor",
)

_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
_MESSAGE_SEPARATOR = "\n\n"


@dataclass(frozen=True)
class SanitizedTranscript:
    """Transcript text safe to send to the provider.

    ``mapping`` goes from pseudonym back to the original fragment. It only
    exists for the duration of one request and is kept out of ``repr`` so it
    cannot end up in logs by accident.
    """

    text: str
    mapping: Dict[str, str] = field(repr=False, default_factory=dict)
    fields: Tuple[str, ...] = ()


class _PseudonymTable:
    """Hands out one stable pseudonym per original value within a request."""

    def __init__(self, placeholders: Sequence[str], fallback: Callable[[int], str]) -> None:
        self._candidates = self._generate(placeholders, fallback)
        self._by_original: Dict[str, str] = {}

    @staticmethod
    def _generate(placeholders: Sequence[str], fallback: Callable[[int], str]) -> Iterator[str]:
        yield from placeholders
        index = len(placeholders) + 1
        while True:
            yield fallback(index)
            index += 1

    def pseudonym_for(self, original: str, mapping: Dict[str, str]) -> str:
        existing = self._by_original.get(original)
        if existing is not None:
            return existing
        for candidate in self._candidates:
            if candidate not in mapping:
                break
        self._by_original[original] = candidate
        mapping[candidate] = original
        return candidate


class Anonymizer:
    """Replaces emails, phone numbers and personal names with pseudonyms."""

    def __init__(
        self,
        *,
        replace_emails: bool = True,
        replace_phones: bool = True,
        replace_names: bool = True,
    ) -> None:
        self.replace_emails = replace_emails
        self.replace_phones = replace_phones
        self.replace_names = replace_names

    def check(self, messages: Sequence[object]) -> None:
        """Raise ``SanitizationError`` unless every entry is a well-formed ``Message``."""
        for index, message in enumerate(messages):
            self._unpack(message, index)

    def sanitize(self, messages: Sequence[Message]) -> SanitizedTranscript:
        mapping: Dict[str, str] = {}
        tables = self._tables()
        found: Dict[str, None] = {}
        lines: List[str] = []

        for index, message in enumerate(messages):
            content, created_at, role = self._unpack(message, index)
            for label, pattern, table in tables:
                content, replaced = self._replace(pattern, content, table, mapping)
                if replaced:
                    found.setdefault(label, None)
            lines.append(f"[{created_at.strftime(_TIMESTAMP_FORMAT)}] {role}: {content}")

        return SanitizedTranscript(
            text=_MESSAGE_SEPARATOR.join(lines),
            mapping=mapping,
            fields=tuple(found),
        )

    def _tables(self) -> List[Tuple[str, Pattern[str], _PseudonymTable]]:
        tables = []
        if self.replace_emails:
            tables.append(
                ("emails", EMAIL_PATTERN, _PseudonymTable(PLACEHOLDER_EMAILS, lambda i: f"user{i}@example.com"))
            )
        if self.replace_phones:
            tables.append(
                ("phone_numbers", PHONE_PATTERN, _PseudonymTable((), lambda i: f"555-01{i:02d}"))
            )
        if self.replace_names:
            tables.append(
                ("names", NAME_PATTERN, _PseudonymTable(PLACEHOLDER_NAMES, lambda i: f"User {i}"))
            )
        return tables

    @staticmethod
    def _unpack(message: object, index: int) -> Tuple[str, datetime, str]:
        if not isinstance(message, Message):
            raise SanitizationError(f"message {index} is not a Message: {type(message).__name__}")
        if not isinstance(message.content, str):
            raise SanitizationError(f"message {index} ({message.id}) has non-text content")
        if not isinstance(message.created_at, datetime):
            raise SanitizationError(f"message {index} ({message.id}) has no valid timestamp")
        return message.content, message.created_at, str(message.role)

    @staticmethod
    def _replace(
        pattern: Pattern[str],
        text: str,
        table: _PseudonymTable,
        mapping: Dict[str, str],
    ) -> Tuple[str, int]:
        return pattern.subn(lambda match: table.pseudonym_for(match.group(0), mapping), text)

