"""Allow-list of provider models the service may invoke."""
from __future__ import annotations

from typing import Tuple

SUPPORTED_MODELS: Tuple[str, ...] = (
    "gpt-4",
    "gpt-4-turbo-preview",
    "gpt-4-1106-preview",
    "gpt-3.5-turbo",
    "gpt-3.5-turbo-1106",
    "gpt-3.5-turbo-16k",
)

_SUPPORTED_SET = frozenset(SUPPORTED_MODELS)


def supported_models() -> Tuple[str, ...]:
    return SUPPORTED_MODELS


def is_valid_model(model: str) -> bool:
    """Return True when ``model`` exactly matches an allow-listed identifier."""
    return bool(model) and model in _SUPPORTED_SET
