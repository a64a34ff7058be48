# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Dict-backed job store for library use and tests."""
import uuid
from typing import Any, Dict, List, Optional

from reliaprompt.models import ImprovementUpdate, PromptVersion, TestResults
from reliaprompt.store.base import JobStore


class MemoryJobStore(JobStore):
    """Keeps prompts and job history in process memory."""

    def __init__(self) -> None:
        self.prompts: Dict[str, PromptVersion] = {}
        self.test_runs: Dict[str, Dict[str, Any]] = {}
        self.improvements: Dict[str, Dict[str, Any]] = {}

    async def get_prompt(self, prompt_id: str) -> Optional[PromptVersion]:
        return self.prompts.get(prompt_id)

    async def create_prompt(
        self,
        name: str,
        content: str,
        parent_id: Optional[str] = None,
    ) -> PromptVersion:
        version = 1
        if parent_id is not None and parent_id in self.prompts:
            version = self.prompts[parent_id].version + 1
        prompt = PromptVersion(
            id=uuid.uuid4().hex[:12],
            name=name,
            content=content,
            version=version,
            parent_id=parent_id,
        )
        self.prompts[prompt.id] = prompt
        return prompt

    async def on_test_run_progress(self, job_id: str, completed_tests: int, total_tests: int) -> None:
        record = self.test_runs.setdefault(job_id, {"status": "running"})
        record["completed_tests"] = completed_tests
        record["total_tests"] = total_tests

    async def on_test_run_complete(self, job_id: str, results: TestResults) -> None:
        record = self.test_runs.setdefault(job_id, {})
        record["status"] = "completed"
        record["results"] = results

    async def on_test_run_failed(self, job_id: str, error: str) -> None:
        record = self.test_runs.setdefault(job_id, {})
        record["status"] = "failed"
        record["error"] = error

    async def on_improvement_update(self, job_id: str, update: ImprovementUpdate) -> None:
        record = self.improvements.setdefault(job_id, {"log": []})
        fields = update.model_dump(exclude_none=True, exclude={"append_log_line"})
        record.update(fields)
        if update.append_log_line is not None:
            record["log"].append(update.append_log_line)

    def improvement_log(self, job_id: str) -> List[str]:
        return list(self.improvements.get(job_id, {}).get("log", []))
