# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Abstract LLM provider interface and the model runner binding."""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Sequence

from reliaprompt.errors import ModelCallError
from reliaprompt.evaluation.parse import strip_code_fence
from reliaprompt.models import TestResultSummary
from reliaprompt.prompt.improvement import IMPROVER_SYSTEM_PROMPT, build_improvement_prompt

logger = logging.getLogger(__name__)


class LLMProvider(ABC):
    """Abstract base class for LLM providers (OpenAI, Anthropic, etc.).

    Only ``complete`` talks to the backend; ``improve_prompt`` is built on
    top of it and may be overridden by providers with a better strategy.
    """

    name = "LLM"

    @abstractmethod
    async def complete(self, system_prompt: str, user_input: str, model_id: str) -> str:
        """Return the model's raw text answer.

        Raises ModelCallError when the backend call fails.
        """

    async def improve_prompt(
        self,
        current_prompt: str,
        summaries: Sequence[TestResultSummary],
        model_id: str,
    ) -> str:
        """Ask the model for a rewritten version of ``current_prompt``."""
        request = build_improvement_prompt(current_prompt, summaries)
        content = await self.complete(IMPROVER_SYSTEM_PROMPT, request, model_id)
        text = strip_code_fence(content or "")
        if not text:
            raise ModelCallError(self.name, "Empty improvement response")
        return text


@dataclass
class ModelRunner:
    """One configured model: a provider bound to a model id."""
    provider: LLMProvider
    model_id: str
    display_name: Optional[str] = None

    def __post_init__(self):
        if not self.display_name:
            self.display_name = "{} ({})".format(self.provider.name, self.model_id)

    async def complete(self, system_prompt: str, user_input: str, model_id: Optional[str] = None) -> str:
        return await self.provider.complete(system_prompt, user_input, model_id or self.model_id)

    async def improve_prompt(
        self,
        current_prompt: str,
        summaries: Sequence[TestResultSummary],
        model_id: Optional[str] = None,
    ) -> str:
        return await self.provider.improve_prompt(
            current_prompt, summaries, model_id or self.model_id,
        )
