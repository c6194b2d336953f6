"""Provider liveness probe."""
from __future__ import annotations

import asyncio
import logging
from typing import Optional

from .errors import ProviderHealthError
from .openai_client import OpenAIClient

HEALTH_CHECK_PROMPT = "Hello, this is a health check."
HEALTH_CHECK_MAX_TOKENS = 10


class HealthProbe:
    """Issues exactly one minimal completion per check, never retrying."""

    def __init__(
        self,
        client: OpenAIClient,
        model: str,
        *,
        timeout: float = 10.0,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._client = client
        self._model = model
        self._timeout = timeout
        self._logger = logger or logging.getLogger(__name__)

    async def check(self) -> None:
        """Raise ``ProviderHealthError`` unless the provider answers in time."""
        try:
            await asyncio.wait_for(
                self._client.complete(
                    HEALTH_CHECK_PROMPT,
                    self._model,
                    HEALTH_CHECK_MAX_TOKENS,
                    timeout=self._timeout,
                    system_prompt="",
                ),
                self._timeout,
            )
        except asyncio.TimeoutError as exc:
            self._logger.error("provider-health-failed", extra={"summary": {"error": "timeout"}})
            raise ProviderHealthError(f"Provider health check timed out after {self._timeout}s") from exc
        except Exception as exc:
            self._logger.error("provider-health-failed", extra={"summary": {"error": str(exc)}})
            raise ProviderHealthError(f"Provider health check failed: {exc}") from exc

    async def is_healthy(self) -> bool:
        try:
            await self.check()
        except ProviderHealthError:
            return False
        return True
