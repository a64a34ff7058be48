# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Engine: starts test runs and improvement jobs and answers status queries."""
import asyncio
import dataclasses
import logging
from typing import Dict, List, Optional, Sequence

from reliaprompt.config import EngineConfig
from reliaprompt.errors import ConfigurationError, NotFoundError, get_error_message
from reliaprompt.evaluation.judge import LLMJudge, resolve_judge
from reliaprompt.evaluation.loop import ImprovementLoop
from reliaprompt.evaluation.runner import TestOrchestrator
from reliaprompt.jobs import JobRegistry
from reliaprompt.models import EvaluationMode, ImprovementProgress, JobStatus, TestCase, TestRunProgress
from reliaprompt.providers import ModelRunner, build_model_runners
from reliaprompt.store.base import JobStore
from reliaprompt.store.memory import MemoryJobStore

logger = logging.getLogger(__name__)


class Engine:
    """Wires together: config → registry → store → orchestrator → loop.

    Jobs run as background tasks on the current event loop. Their
    progress is read back with ``get_test_progress`` and
    ``get_improvement_progress``.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        store: Optional[JobStore] = None,
        runners: Optional[Sequence[ModelRunner]] = None,
    ) -> None:
        self._config = config or EngineConfig()
        self._store = store if store is not None else MemoryJobStore()
        self._registry = JobRegistry(
            max_jobs=self._config.max_jobs,
            ttl_seconds=self._config.job_ttl_seconds,
        )
        self._orchestrator = TestOrchestrator(
            registry=self._registry,
            store=self._store,
            max_concurrency=self._config.max_concurrency,
            call_timeout=self._config.call_timeout,
        )
        self._loop = ImprovementLoop(self._orchestrator, self._registry, self._store)
        self._runners = list(runners) if runners is not None else None
        self._judge_runner: Optional[ModelRunner] = None
        # Strong references so running jobs are not garbage-collected
        self._tasks: Dict[str, asyncio.Task] = {}

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def registry(self) -> JobRegistry:
        return self._registry

    @property
    def store(self) -> JobStore:
        return self._store

    @property
    def orchestrator(self) -> TestOrchestrator:
        return self._orchestrator

    @property
    def improvement_loop(self) -> ImprovementLoop:
        return self._loop

    @property
    def runners(self) -> List[ModelRunner]:
        """Model runners from the config, built on first use."""
        if self._runners is None:
            self._runners = build_model_runners(self._config)
        return list(self._runners)

    @property
    def judge_runner(self) -> Optional[ModelRunner]:
        """Runner for ``config.judge_model``, built on first use."""
        if self._judge_runner is None and self._config.judge_model:
            judge_config = dataclasses.replace(self._config, models=[self._config.judge_model])
            built = build_model_runners(judge_config)
            self._judge_runner = built[0] if built else None
        return self._judge_runner

    def _resolve_runners(self, runners: Optional[Sequence[ModelRunner]]) -> List[ModelRunner]:
        resolved = list(runners) if runners is not None else self.runners
        if not resolved:
            raise ConfigurationError("No models configured")
        return resolved

    def _resolve_judge(
        self,
        evaluation_mode: Optional[EvaluationMode],
        evaluation_criteria: Optional[str],
        judge_runner: Optional[ModelRunner],
    ) -> Optional[LLMJudge]:
        if evaluation_mode is None or EvaluationMode(evaluation_mode) != EvaluationMode.LLM:
            return None
        if judge_runner is None:
            judge_runner = self.judge_runner
        return resolve_judge(evaluation_mode, evaluation_criteria, judge_runner)

    def _spawn(self, job_id: str, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks[job_id] = task
        task.add_done_callback(lambda _t: self._tasks.pop(job_id, None))
        return task

    # ── Test runs ─────────────────────────────────────────────

    async def start_test_run(
        self,
        prompt: str,
        test_cases: Sequence[TestCase],
        runners: Optional[Sequence[ModelRunner]] = None,
        runs_per_test: Optional[int] = None,
        expected_schema: Optional[str] = None,
        evaluation_mode: Optional[EvaluationMode] = None,
        evaluation_criteria: Optional[str] = None,
        judge_runner: Optional[ModelRunner] = None,
    ) -> str:
        """Start a tracked test run in the background; return its job id.

        With ``evaluation_mode="llm"`` and criteria, answers are reviewed by
        ``judge_runner``, defaulting to the configured judge model.
        """
        cases = list(test_cases)
        if not cases:
            raise ConfigurationError("No test cases provided")
        resolved = self._resolve_runners(runners)
        runs = runs_per_test if runs_per_test is not None else self._config.runs_per_test
        if runs < 1:
            raise ConfigurationError("runs_per_test must be at least 1")
        judge = self._resolve_judge(evaluation_mode, evaluation_criteria, judge_runner)

        job = self._registry.create_test_job(total_tests=len(resolved) * len(cases) * runs)
        logger.info("Starting test run %s", job.job_id)
        self._spawn(job.job_id, self._run_test_job(
            job, prompt, cases, resolved, runs, expected_schema, judge,
        ))
        return job.job_id

    async def _run_test_job(
        self,
        job: TestRunProgress,
        prompt: str,
        cases: List[TestCase],
        runners: List[ModelRunner],
        runs_per_test: int,
        expected_schema: Optional[str],
        judge: Optional[LLMJudge],
    ) -> None:
        try:
            await self._orchestrator.run_tests(
                prompt, cases, runners, runs_per_test,
                job_id=job.job_id, expected_schema=expected_schema, judge=judge,
            )
        except Exception as e:
            message = get_error_message(e)
            if job.status.is_terminal:
                logger.warning("Test run %s already %s: %s", job.job_id, job.status.value, message)
                return
            logger.exception("Test run %s failed", job.job_id)
            job.status = JobStatus.FAILED
            job.error = message
            self._registry.touch(job.job_id)
            try:
                await self._store.on_test_run_failed(job.job_id, message)
            except Exception:
                logger.exception("Could not record failure of test run %s", job.job_id)

    def get_test_progress(self, job_id: str) -> Optional[TestRunProgress]:
        return self._registry.get_test_progress(job_id)

    # ── Improvement jobs ──────────────────────────────────────

    async def start_improvement(
        self,
        prompt_id: str,
        test_cases: Sequence[TestCase],
        runners: Optional[Sequence[ModelRunner]] = None,
        max_iterations: Optional[int] = None,
        runs_per_test: Optional[int] = None,
        evaluation_mode: Optional[EvaluationMode] = None,
        evaluation_criteria: Optional[str] = None,
        judge_runner: Optional[ModelRunner] = None,
    ) -> str:
        """Validate setup, create a pending job and schedule the loop.

        Raises NotFoundError / ConfigurationError before any job exists.
        """
        prompt = await self._store.get_prompt(prompt_id)
        if prompt is None:
            raise NotFoundError("Prompt", prompt_id)
        cases = list(test_cases)
        if not cases:
            raise ConfigurationError("No test cases found for this prompt")
        resolved = self._resolve_runners(runners)
        iterations = max_iterations if max_iterations is not None else self._config.max_iterations
        runs = runs_per_test if runs_per_test is not None else self._config.runs_per_test
        if iterations < 1:
            raise ConfigurationError("max_iterations must be at least 1")
        if runs < 1:
            raise ConfigurationError("runs_per_test must be at least 1")
        judge = self._resolve_judge(evaluation_mode, evaluation_criteria, judge_runner)

        job = self._registry.create_improvement_job(max_iterations=iterations, prompt_id=prompt_id)
        logger.info("Starting improvement job %s for prompt %s", job.job_id, prompt_id)
        self._spawn(job.job_id, self._loop.run_improvement(
            job.job_id, prompt.content, cases, resolved, iterations, runs, judge=judge,
        ))
        return job.job_id

    def get_improvement_progress(self, job_id: str) -> Optional[ImprovementProgress]:
        return self._registry.get_improvement_progress(job_id)

    # ── Lifecycle ─────────────────────────────────────────────

    async def wait(self, job_id: str) -> None:
        """Block until the job's background task has finished."""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.shield(task)

    def acknowledge(self, job_id: str) -> bool:
        """Drop a finished job from the registry."""
        return self._registry.acknowledge(job_id)

    async def close(self) -> None:
        """Wait for running jobs, then close the store if it needs closing."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)
        close = getattr(self._store, "close", None)
        if close is not None:
            await close()


def create_engine(
    models: Optional[Sequence[str]] = None,
    store: Optional[JobStore] = None,
    **kwargs,
) -> Engine:
    """Convenience factory for creating an Engine."""
    config = EngineConfig(models=list(models or []), **kwargs)
    return Engine(config=config, store=store)
