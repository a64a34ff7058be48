# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""OpenAI and OpenAI-compatible provider (chat completions)."""
import logging
from typing import Optional

from reliaprompt.errors import ConfigurationError, ModelCallError
from reliaprompt.providers.base import LLMProvider

logger = logging.getLogger(__name__)


class OpenAIProvider(LLMProvider):
    """OpenAI provider. One system + one user message per call."""

    name = "OpenAI"

    def __init__(
        self,
        api_key: str,
        temperature: float = 0.0,
        max_tokens: int = 4096,
        base_url: Optional[str] = None,
    ) -> None:
        self._api_key = api_key
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._base_url = base_url
        self._client = None

    def __repr__(self) -> str:
        key_hint = "{}...".format(self._api_key[:4]) if self._api_key and len(self._api_key) > 4 else "***"
        return "{}(base_url={!r}, api_key={!r})".format(type(self).__name__, self._base_url, key_hint)

    def _make_client(self):
        if self._client is None:
            if not self._api_key:
                raise ConfigurationError("{} API key not configured".format(self.name))
            import openai
            kwargs = {"api_key": self._api_key}
            if self._base_url:
                kwargs["base_url"] = self._base_url
            self._client = openai.AsyncOpenAI(**kwargs)
        return self._client

    async def complete(self, system_prompt: str, user_input: str, model_id: str) -> str:
        import openai

        client = self._make_client()
        try:
            response = await client.chat.completions.create(
                model=model_id,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_input},
                ],
                max_tokens=self._max_tokens,
                temperature=self._temperature,
            )
        except openai.OpenAIError as e:
            raise ModelCallError(self.name, str(e)) from e

        if not response.choices:
            raise ModelCallError(self.name, "No choices in response")
        choice = response.choices[0]
        if choice.finish_reason == "length":
            logger.warning("%s response for %s truncated at %d tokens", self.name, model_id, self._max_tokens)
        return choice.message.content or ""
