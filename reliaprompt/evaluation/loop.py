# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Improvement loop: hill-climb a prompt by asking models to rewrite it.

Flow:
  1. Score the unmodified prompt (stop if already 100%)
  2. For each iteration:
     a. Ask every model runner for a rewrite, concurrently
     b. Drop failed requests and no-op rewrites
     c. Score every surviving candidate against the full suite
     d. Adopt the highest-scoring candidate only if it beats the current best
     e. Stop early at 100%
  3. Save the winner as a new prompt version when it beats the original

Only strictly better candidates are adopted, so the best score never
decreases. Ties go to the candidate proposed first (runner order).
"""
import asyncio
import logging
from typing import List, Optional, Sequence, Tuple

from reliaprompt.errors import NotFoundError, get_error_message
from reliaprompt.evaluation.judge import LLMJudge
from reliaprompt.evaluation.runner import TestOrchestrator, get_test_result_summary
from reliaprompt.jobs import JobRegistry
from reliaprompt.models import (
    ImprovementProgress, ImprovementUpdate, JobStatus, TestCase, TestResults, TestResultSummary,
)
from reliaprompt.store.base import JobStore

logger = logging.getLogger(__name__)


class _Candidate:
    __slots__ = ("proposer", "prompt", "results", "error")

    def __init__(self, proposer: str, prompt: str):
        self.proposer = proposer
        self.prompt = prompt
        self.results: Optional[TestResults] = None
        self.error: Optional[str] = None

    @property
    def score(self) -> int:
        return self.results.overall_score if self.results else 0


class ImprovementLoop:
    """Runs improvement jobs tracked in a JobRegistry.

    Usage:
        loop = ImprovementLoop(orchestrator, registry, store)
        job = registry.create_improvement_job(max_iterations=3)
        await loop.run_improvement(job.job_id, prompt, cases, runners, 3, 1)
        print(registry.get_improvement_progress(job.job_id).best_score)
    """

    def __init__(
        self,
        orchestrator: TestOrchestrator,
        registry: JobRegistry,
        store: Optional[JobStore] = None,
    ):
        self._orchestrator = orchestrator
        self._registry = registry
        self._store = store

    async def run_improvement(
        self,
        job_id: str,
        base_prompt: str,
        test_cases: Sequence[TestCase],
        model_runners: Sequence,
        max_iterations: int,
        runs_per_test: int = 1,
        judge: Optional[LLMJudge] = None,
    ) -> None:
        """Run the job to a terminal state. Never raises for job errors.

        Any exception escaping the loop marks the job ``failed`` with the
        message in ``error`` and the log, unless the job already reached a
        terminal state.
        """
        progress = self._registry.get_improvement_progress(job_id)
        if progress is None:
            raise NotFoundError("Improvement job", job_id)

        try:
            await self._improve(
                progress, base_prompt, list(test_cases), list(model_runners),
                max_iterations, runs_per_test, judge,
            )
        except Exception as e:
            message = get_error_message(e)
            if progress.status.is_terminal:
                logger.warning("Improvement job %s already %s: %s", job_id, progress.status.value, message)
                return
            logger.exception("Improvement job %s failed", job_id)
            progress.status = JobStatus.FAILED
            progress.error = message
            await self._log(progress, "ERROR: {}".format(message))
            await self._update(progress, status=JobStatus.FAILED, error=message)

    async def _improve(
        self,
        progress: ImprovementProgress,
        base_prompt: str,
        test_cases: List[TestCase],
        runners: list,
        max_iterations: int,
        runs_per_test: int,
        judge: Optional[LLMJudge],
    ) -> None:
        semaphore = self._orchestrator.new_semaphore()

        await self._update(progress, status=JobStatus.RUNNING)
        await self._log(progress, "Starting improvement (job: {})".format(progress.job_id))
        await self._log(progress, "Max iterations: {}".format(max_iterations))
        await self._log(progress, "Test cases: {}".format(len(test_cases)))
        await self._log(progress, "Models: {}".format(", ".join(r.display_name for r in runners)))

        await self._log(progress, "Testing original prompt...")
        original = await self._orchestrator.run_tests(
            base_prompt, test_cases, runners, runs_per_test, semaphore=semaphore, judge=judge,
        )
        original_score = original.overall_score
        await self._log(progress, "Original prompt score: {}%".format(original_score))
        await self._update(
            progress, original_score=original_score,
            best_score=original_score, best_prompt_content=base_prompt,
        )

        if original_score == 100:
            await self._log(progress, "Original prompt already has perfect score! No improvement needed.")
            await self._update(progress, status=JobStatus.COMPLETED)
            return

        current_prompt = base_prompt
        current_score = original_score
        current_results = original

        for iteration in range(1, max_iterations + 1):
            await self._update(progress, current_iteration=iteration)
            await self._log(progress, "--- Iteration {}/{} ---".format(iteration, max_iterations))

            summary = get_test_result_summary(current_results.llm_results)
            await self._log(progress, "Requesting improvements from all models...")
            candidates = await self._request_candidates(progress, runners, current_prompt, summary)

            if candidates:
                await self._log(progress, "Testing {} candidate(s)...".format(len(candidates)))
                await self._evaluate_candidates(
                    candidates, test_cases, runners, runs_per_test, semaphore, judge,
                )

            scored = []
            for cand in candidates:
                if cand.error is not None:
                    await self._log(progress, "{}: Testing failed - {}".format(cand.proposer, cand.error))
                    continue
                await self._log(progress, "{}: Score = {}% (was {}%)".format(
                    cand.proposer, cand.score, current_score,
                ))
                scored.append(cand)

            winner = select_best_candidate(scored, current_score)
            if winner is None:
                await self._log(progress, "No improvement found this iteration")
                if iteration < max_iterations:
                    await self._log(progress, "Will try again with fresh perspective...")
                continue

            await self._log(progress, "Best improvement this iteration: {} with score {}%".format(
                winner.proposer, winner.score,
            ))
            current_prompt = winner.prompt
            current_score = winner.score
            current_results = winner.results
            await self._update(progress, best_score=current_score, best_prompt_content=current_prompt)

            if current_score == 100:
                await self._log(progress, "Perfect score achieved!")
                break

        if current_score > original_score:
            await self._log(progress, "Improvement complete! Score improved from {}% to {}%".format(
                original_score, current_score,
            ))
            await self._save_best_prompt(progress, current_prompt)
        else:
            await self._log(progress, "No improvement achieved. Original score: {}%, Best attempt: {}%".format(
                original_score, current_score,
            ))

        await self._log(progress, "Improvement job completed")
        await self._update(progress, status=JobStatus.COMPLETED)

    async def _request_candidates(
        self,
        progress: ImprovementProgress,
        runners: list,
        current_prompt: str,
        summary: List[TestResultSummary],
    ) -> List[_Candidate]:
        proposals = await asyncio.gather(*[
            self._request_rewrite(runner, current_prompt, summary) for runner in runners
        ])

        candidates = []
        for runner, (text, error) in zip(runners, proposals):
            if error is not None:
                await self._log(progress, "{}: Failed to generate improvement - {}".format(
                    runner.display_name, error,
                ))
                continue
            if text.strip() == current_prompt.strip():
                await self._log(progress, "{}: No changes proposed".format(runner.display_name))
                continue
            candidates.append(_Candidate(runner.display_name, text))
        return candidates

    async def _request_rewrite(
        self,
        runner,
        current_prompt: str,
        summary: List[TestResultSummary],
    ) -> Tuple[Optional[str], Optional[str]]:
        """Return (prompt, None) or (None, error message)."""
        call = runner.improve_prompt(current_prompt, summary, runner.model_id)
        timeout = self._orchestrator.call_timeout
        try:
            if timeout is None:
                text = await call
            else:
                text = await asyncio.wait_for(call, timeout=timeout)
        except asyncio.TimeoutError:
            return None, "Improvement request timed out after {}s".format(timeout)
        except Exception as e:
            logger.warning("Improvement request to %s failed: %s", runner.display_name, e)
            return None, get_error_message(e)
        if not text or not text.strip():
            return None, "Empty response"
        return text, None

    async def _evaluate_candidates(
        self,
        candidates: List[_Candidate],
        test_cases: List[TestCase],
        runners: list,
        runs_per_test: int,
        semaphore: asyncio.Semaphore,
        judge: Optional[LLMJudge] = None,
    ) -> None:
        async def evaluate(cand: _Candidate) -> None:
            try:
                cand.results = await self._orchestrator.run_tests(
                    cand.prompt, test_cases, runners, runs_per_test,
                    semaphore=semaphore, judge=judge,
                )
            except Exception as e:
                logger.warning("Evaluating candidate from %s failed: %s", cand.proposer, e)
                cand.error = get_error_message(e)

        await asyncio.gather(*[evaluate(cand) for cand in candidates])

    async def _save_best_prompt(self, progress: ImprovementProgress, content: str) -> None:
        if self._store is None or progress.prompt_id is None:
            await self._log(progress, "No prompt store configured; improved prompt not saved")
            return
        await self._log(progress, "Saving improved prompt as new version...")
        version_id = await self._store.persist_new_prompt_version(progress.prompt_id, content)
        await self._update(progress, best_prompt_version_id=version_id)
        await self._log(progress, "New version saved with id: {}".format(version_id))

    async def _update(self, progress: ImprovementProgress, **fields) -> None:
        for name, value in fields.items():
            setattr(progress, name, value)
        self._registry.touch(progress.job_id)
        if self._store is not None:
            await self._store.on_improvement_update(progress.job_id, ImprovementUpdate(**fields))

    async def _log(self, progress: ImprovementProgress, message: str) -> None:
        logger.info("[%s] %s", progress.job_id[:8], message)
        progress.log.append(message)
        self._registry.touch(progress.job_id)
        if self._store is not None:
            await self._store.on_improvement_update(
                progress.job_id, ImprovementUpdate(append_log_line=message),
            )


def select_best_candidate(candidates: Sequence[_Candidate], current_score: int) -> Optional[_Candidate]:
    """Highest score strictly above ``current_score``; first proposer wins ties."""
    better = [c for c in candidates if c.score > current_score]
    if not better:
        return None
    # sorted() is stable, so equal scores keep proposal order
    return sorted(better, key=lambda c: c.score, reverse=True)[0]


def format_improvement_report(progress: ImprovementProgress) -> str:
    """Format a human-readable improvement report."""
    lines = [
        "=" * 60,
        "Prompt Improvement Report",
        "=" * 60,
        "Job: {}  Status: {}".format(progress.job_id, progress.status.value),
        "Iterations: {}/{}".format(progress.current_iteration, progress.max_iterations),
    ]
    if progress.original_score is not None:
        lines.append("Original score: {}%  Best score: {}%".format(
            progress.original_score, progress.best_score,
        ))
    if progress.best_prompt_version_id:
        lines.append("Saved as version: {}".format(progress.best_prompt_version_id))
    if progress.error:
        lines.append("Error: {}".format(progress.error))
    if progress.best_prompt_content is not None:
        lines.extend(["", "Best prompt:", progress.best_prompt_content])
    return "\n".join(lines)
