"""Thin async wrapper around an OpenAI-compatible chat completions API."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

import httpx

from .prompts import SYSTEM_PROMPT

DEFAULT_BASE_URL = "https://api.openai.com/v1"


class ProviderError(RuntimeError):
    """Base error raised for provider failures."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthenticationError(ProviderError):
    """Raised when the API key is missing or invalid."""


class RateLimitError(ProviderError):
    """Raised when the provider returns HTTP 429."""


class TransientError(ProviderError):
    """Raised for recoverable failures: 5xx responses, timeouts and network errors."""


class InvalidRequestError(ProviderError):
    """Raised when the provider rejects the request payload itself."""


class ClientConfigurationError(ProviderError):
    """Raised when the client receives an unexpected payload."""


@dataclass
class Completion:
    """Simplified view of a chat completion response."""

    text: str
    usage: Mapping[str, Any] = field(default_factory=dict)
    raw: Mapping[str, Any] = field(default_factory=dict)
    finish_reason: Optional[str] = None

    @property
    def total_tokens(self) -> int:
        return _as_int(self.usage.get("total_tokens"))

    @property
    def prompt_tokens(self) -> int:
        return _as_int(self.usage.get("prompt_tokens"))

    @property
    def completion_tokens(self) -> int:
        return _as_int(self.usage.get("completion_tokens"))


class OpenAIClient:
    """Issues single chat-completion requests; retrying is left to the caller."""

    _DEFAULT_TIMEOUT = 30.0
    _TRANSIENT_STATUS_CODES = {408, 409, 425, 500, 502, 503, 504}

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        *,
        timeout: float = _DEFAULT_TIMEOUT,
        system_prompt: str = SYSTEM_PROMPT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if not api_key:
            raise AuthenticationError("Provider API key is required")

        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.system_prompt = system_prompt

        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=self.timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "OpenAIClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    # ------------------------------
    # Chat completions
    # ------------------------------
    async def complete(
        self,
        prompt: str,
        model: str,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        *,
        timeout: Optional[float] = None,
        system_prompt: Optional[str] = None,
    ) -> Completion:
        """Submit one prompt and return the normalized completion."""

        messages = []
        system = self.system_prompt if system_prompt is None else system_prompt
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})

        payload: Dict[str, Any] = {"model": model, "messages": messages}
        if max_tokens is not None:
            payload["max_tokens"] = max_tokens
        if temperature is not None:
            payload["temperature"] = temperature

        response_data = await self._post("/chat/completions", payload, timeout=timeout)
        return self._parse_chat_completion(response_data)

    # ------------------------------
    # HTTP helpers
    # ------------------------------
    async def _post(
        self,
        path: str,
        payload: Mapping[str, Any],
        *,
        timeout: Optional[float] = None,
    ) -> Mapping[str, Any]:
        request_timeout = self.timeout if timeout is None else timeout
        try:
            response = await self._client.post(path, json=payload, timeout=request_timeout)
        except httpx.TimeoutException as exc:
            raise TransientError(f"Provider request timeout after {request_timeout}s") from exc
        except httpx.HTTPError as exc:  # network issues
            raise TransientError(f"Provider network connection failed: {exc}") from exc

        status = response.status_code
        if status == 401:
            raise AuthenticationError("Provider authentication failed (401)", status_code=status)
        if status == 403:
            raise AuthenticationError("Provider denied access (403)", status_code=status)

        if status >= 400:
            message = self._error_message(response)
            if status == 429:
                raise RateLimitError(message or "Provider rate limit exceeded (429)", status_code=status)
            if status in self._TRANSIENT_STATUS_CODES or status >= 500:
                raise TransientError(message or f"Provider server error ({status})", status_code=status)
            raise InvalidRequestError(
                message or f"Provider rejected invalid request ({status})", status_code=status
            )

        return self._safe_json(response)

    def _error_message(self, response: httpx.Response) -> Optional[str]:
        try:
            body = response.json()
        except ValueError:
            return response.text or None
        if isinstance(body, dict):
            error = body.get("error")
            if isinstance(error, dict) and isinstance(error.get("message"), str):
                return f"{error['message']} ({response.status_code})"
        return None

    def _safe_json(self, response: httpx.Response) -> Mapping[str, Any]:
        try:
            data = response.json()
        except ValueError as exc:
            raise ClientConfigurationError("Provider returned a non-JSON response") from exc
        if not isinstance(data, Mapping):
            raise ClientConfigurationError("Provider response was not a JSON object")
        return data

    def _parse_chat_completion(self, data: Mapping[str, Any]) -> Completion:
        choices = data.get("choices")
        if not isinstance(choices, list) or not choices:
            raise ClientConfigurationError("Provider chat response missing choices")

        first_choice = choices[0]
        message = first_choice.get("message") if isinstance(first_choice, Mapping) else None
        if not isinstance(message, Mapping):
            raise ClientConfigurationError("Provider chat response missing message content")

        content = message.get("content")
        if not isinstance(content, str) or not content.strip():
            raise ClientConfigurationError("Provider chat response missing text content")

        usage = data.get("usage", {})
        if not isinstance(usage, Mapping):
            usage = {}
        finish_reason = first_choice.get("finish_reason")

        return Completion(
            text=content.strip(),
            usage=dict(usage),
            raw=data,
            finish_reason=finish_reason if isinstance(finish_reason, str) else None,
        )


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0
