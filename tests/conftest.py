# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Shared fixtures: scripted providers instead of network calls."""
import asyncio

import pytest

from reliaprompt.providers.base import LLMProvider, ModelRunner


class ScriptedProvider(LLMProvider):
    """Answers from a lookup table (or a callable) and records every call.

    ``answers`` maps user input to raw output, or to an Exception to raise.
    ``respond(system_prompt, user_input)`` takes precedence when given.
    ``improvements`` is consumed one item per improve_prompt call; when it
    runs out the current prompt is returned unchanged.
    """

    name = "Fake"

    def __init__(self, answers=None, respond=None, improvements=None, delay=0.0):
        self._answers = dict(answers or {})
        self._respond = respond
        self._improvements = list(improvements or [])
        self._delay = delay
        self.calls = []
        self.improve_calls = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def complete(self, system_prompt, user_input, model_id):
        self.calls.append((system_prompt, user_input, model_id))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self._delay:
                await asyncio.sleep(self._delay)
            if self._respond is not None:
                result = self._respond(system_prompt, user_input)
            else:
                result = self._answers.get(user_input, "")
        finally:
            self.in_flight -= 1
        if isinstance(result, Exception):
            raise result
        return result

    async def improve_prompt(self, current_prompt, summaries, model_id):
        self.improve_calls.append((current_prompt, list(summaries)))
        if not self._improvements:
            return current_prompt
        proposal = self._improvements.pop(0)
        if isinstance(proposal, Exception):
            raise proposal
        return proposal


@pytest.fixture
def make_runner():
    """Factory: make_runner(name, **ScriptedProvider kwargs) -> ModelRunner."""

    def _make(name="Fake (fake-1)", model_id="fake-1", **kwargs):
        return ModelRunner(
            provider=ScriptedProvider(**kwargs),
            model_id=model_id,
            display_name=name,
        )

    return _make
