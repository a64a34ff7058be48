# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Anthropic provider (messages API)."""
import logging

from reliaprompt.errors import ConfigurationError, ModelCallError
from reliaprompt.providers.base import LLMProvider

logger = logging.getLogger(__name__)


class AnthropicProvider(LLMProvider):
    """Anthropic Claude provider."""

    name = "Anthropic"

    def __init__(
        self,
        api_key: str,
        temperature: float = 0.0,
        max_tokens: int = 4096,
    ) -> None:
        self._api_key = api_key
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._client = None

    def __repr__(self) -> str:
        key_hint = "{}...".format(self._api_key[:4]) if self._api_key and len(self._api_key) > 4 else "***"
        return "AnthropicProvider(api_key={!r})".format(key_hint)

    def _make_client(self):
        if self._client is None:
            if not self._api_key:
                raise ConfigurationError("Anthropic API key not configured")
            import anthropic
            self._client = anthropic.AsyncAnthropic(api_key=self._api_key)
        return self._client

    async def complete(self, system_prompt: str, user_input: str, model_id: str) -> str:
        import anthropic

        client = self._make_client()
        try:
            response = await client.messages.create(
                model=model_id,
                system=system_prompt,
                messages=[{"role": "user", "content": user_input}],
                max_tokens=self._max_tokens,
                temperature=self._temperature,
            )
        except anthropic.AnthropicError as e:
            raise ModelCallError(self.name, str(e)) from e

        if response.stop_reason == "max_tokens":
            logger.warning("Anthropic response for %s truncated at %d tokens", model_id, self._max_tokens)
        text_parts = [block.text for block in response.content if block.type == "text"]
        return "\n".join(text_parts)
