"""Generative model client (Anthropic Messages API)."""

from __future__ import annotations

import logging
from typing import Optional

import anthropic
from anthropic import AsyncAnthropic

logger = logging.getLogger(__name__)


class ModelError(Exception):
    """Raised when the model call fails or returns no usable text."""


class ModelClient:
    def __init__(
        self,
        *,
        api_key: str,
        model: str,
        max_tokens: int = 300,
        timeout: float = 30.0,
        client: Optional[AsyncAnthropic] = None,
    ) -> None:
        self.model = model
        self.max_tokens = max_tokens
        self._api_key = api_key
        self._client = client
        self._timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self._api_key) or self._client is not None

    def _get_client(self) -> AsyncAnthropic:
        if self._client is None:
            self._client = AsyncAnthropic(api_key=self._api_key, timeout=self._timeout)
        return self._client

    async def complete(self, system: str, messages: list[dict[str, str]], max_tokens: Optional[int] = None) -> str:
        """
        Run one completion.

        Args:
            system: system prompt
            messages: alternating user/assistant turns, ending with a user turn

        Raises:
            ModelError: on any API failure or an empty response
        """
        if not self.configured:
            raise ModelError("Model API key not configured")

        try:
            response = await self._get_client().messages.create(
                model=self.model,
                max_tokens=max_tokens or self.max_tokens,
                system=system,
                messages=messages,
            )
        except anthropic.APIConnectionError as exc:
            raise ModelError(f"Connection error: {exc}") from exc
        except anthropic.RateLimitError as exc:
            raise ModelError(f"Rate limit exceeded: {exc}") from exc
        except anthropic.APIStatusError as exc:
            raise ModelError(f"Model API error {exc.status_code}: {exc.message}") from exc

        text = "".join(getattr(block, "text", "") for block in response.content).strip()
        if not text:
            raise ModelError("Empty model response")
        return text
