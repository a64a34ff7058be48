# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Job store interface: persistence for prompts and job history."""
from abc import ABC, abstractmethod
from typing import Optional

from reliaprompt.models import ImprovementUpdate, PromptVersion, TestResults


class JobStore(ABC):
    """Receives progress from running jobs and stores prompt versions.

    The engine calls these from the event loop; implementations must not
    block it.
    """

    @abstractmethod
    async def get_prompt(self, prompt_id: str) -> Optional[PromptVersion]:
        """Return the prompt or None."""

    @abstractmethod
    async def create_prompt(
        self,
        name: str,
        content: str,
        parent_id: Optional[str] = None,
    ) -> PromptVersion:
        """Store a prompt. With a parent, the version is the parent's + 1."""

    async def persist_new_prompt_version(self, parent_id: str, content: str) -> str:
        """Save ``content`` as a new version of ``parent_id``; return its id."""
        parent = await self.get_prompt(parent_id)
        name = parent.name if parent else "prompt"
        created = await self.create_prompt(name, content, parent_id=parent_id)
        return created.id

    @abstractmethod
    async def on_test_run_progress(self, job_id: str, completed_tests: int, total_tests: int) -> None:
        ...

    @abstractmethod
    async def on_test_run_complete(self, job_id: str, results: TestResults) -> None:
        ...

    @abstractmethod
    async def on_test_run_failed(self, job_id: str, error: str) -> None:
        ...

    @abstractmethod
    async def on_improvement_update(self, job_id: str, update: ImprovementUpdate) -> None:
        ...
