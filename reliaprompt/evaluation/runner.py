# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Test execution orchestrator: run (model x test case x repetition) trials.

Every trial is an independent unit of work:
  1. Call ``runner.complete(prompt, case.input, runner.model_id)``
  2. Parse the raw text as the case's expected type
  3. Score it with the structural comparator, or have a judge model list
     issues in it when an LLMJudge is given

A failing call becomes a zero-score run with ``error`` set; it never
aborts sibling trials. In-flight calls are bounded by a semaphore, either
one per ``run_tests`` call or one shared by every evaluation of a job.
"""
import asyncio
import json
import logging
import time
from typing import Dict, List, Optional, Sequence

from reliaprompt.audit import ModelCallAuditEntry
from reliaprompt.config import DEFAULT_MAX_CONCURRENCY
from reliaprompt.errors import (
    ConfigurationError, InvariantError, ModelCallError, ParseError, get_error_message,
)
from reliaprompt.evaluation.compare import compare
from reliaprompt.evaluation.judge import LLMJudge, judge_failed_run, judged_run, parse_judge_response
from reliaprompt.evaluation.parse import parse
from reliaprompt.jobs import JobRegistry
from reliaprompt.models import (
    DurationStats, ExpectedType, JobStatus, LLMTestResult, RunResult,
    TestCase, TestCaseResult, TestResults, TestResultSummary, to_percent,
)
from reliaprompt.store.base import JobStore

logger = logging.getLogger(__name__)


def resolve_expected_type(test_case: TestCase) -> ExpectedType:
    """Declared type wins; otherwise infer from the expected output text."""
    if test_case.expected_output_type is not None:
        return ExpectedType(test_case.expected_output_type)
    try:
        value = json.loads(test_case.expected_output.strip())
    except ValueError:
        return ExpectedType.STRING
    if isinstance(value, list):
        return ExpectedType.ARRAY
    if isinstance(value, dict):
        return ExpectedType.OBJECT
    return ExpectedType.STRING


def with_schema_hint(prompt_content: str, expected_schema: Optional[str]) -> str:
    """Append a compact JSON schema to the system prompt.

    Accepts a raw JSON schema object or a ``{"name", "schema": {...}}``
    wrapper. Anything else is ignored.
    """
    if not expected_schema:
        return prompt_content
    try:
        parsed = json.loads(expected_schema)
    except ValueError:
        logger.warning("Failed to parse expected schema, ignoring it")
        return prompt_content
    if isinstance(parsed, dict) and isinstance(parsed.get("schema"), dict):
        parsed = parsed["schema"]
    if not isinstance(parsed, dict):
        logger.warning("Expected schema must be a JSON object, ignoring it")
        return prompt_content
    return "{}\n\n## Response Schema:\n{}".format(
        prompt_content, json.dumps(parsed, separators=(",", ":")),
    )


def score_output(
    test_case: TestCase,
    expected_type: ExpectedType,
    actual_output: str,
    run_number: int,
    duration_ms: Optional[int] = None,
) -> RunResult:
    """Parse and score one raw model answer.

    Output that does not match the expected shape is a wrong answer
    (score 0), not a failure.
    """
    expected = parse(test_case.expected_output, expected_type)
    try:
        actual = parse(actual_output, expected_type)
    except ParseError:
        actual = None
    comparison = compare(expected, actual, expected_type)
    return RunResult(
        run_number=run_number,
        actual_output=actual_output,
        is_correct=comparison.score == 1,
        score=comparison.score,
        expected_found=comparison.expected_found,
        expected_total=comparison.expected_total,
        unexpected_found=comparison.unexpected_found,
        duration_ms=duration_ms,
    )


class TestOrchestrator:
    """Runs a prompt against test cases on every model runner.

    Usage:
        orchestrator = TestOrchestrator(registry, store, max_concurrency=8)
        results = await orchestrator.run_tests(prompt, cases, runners, runs_per_test=3)
        print(results.overall_score)
    """
    __test__ = False

    def __init__(
        self,
        registry: Optional[JobRegistry] = None,
        store: Optional[JobStore] = None,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        call_timeout: Optional[float] = None,
    ):
        self._registry = registry
        self._store = store
        self._max_concurrency = max(1, max_concurrency)
        self._call_timeout = call_timeout

    @property
    def call_timeout(self) -> Optional[float]:
        return self._call_timeout

    def new_semaphore(self) -> asyncio.Semaphore:
        return asyncio.Semaphore(self._max_concurrency)

    async def run_tests(
        self,
        prompt: str,
        test_cases: Sequence[TestCase],
        model_runners: Sequence,
        runs_per_test: int = 1,
        job_id: Optional[str] = None,
        expected_schema: Optional[str] = None,
        semaphore: Optional[asyncio.Semaphore] = None,
        judge: Optional[LLMJudge] = None,
    ) -> TestResults:
        """Evaluate ``prompt`` and aggregate the results.

        Parameters
        ----------
        prompt : str
            System prompt content under test.
        test_cases : list of TestCase
            Suite to run.
        model_runners : list of ModelRunner
            Anything exposing ``model_id``, ``display_name`` and ``complete``.
        runs_per_test : int
            Repetitions per (model, test case).
        job_id : str, optional
            When given, progress is recorded in the registry and forwarded
            to the store after every run.
        expected_schema : str, optional
            JSON schema appended to the system prompt as a hint.
        semaphore : asyncio.Semaphore, optional
            Shared cap on in-flight model calls. Defaults to a fresh
            semaphore of ``max_concurrency`` for this call.
        judge : LLMJudge, optional
            Score answers from the issues a judge model lists instead of
            comparing them structurally. Judge calls count against the
            same semaphore.
        """
        if runs_per_test < 1:
            raise ConfigurationError("runs_per_test must be at least 1")

        system_prompt = with_schema_hint(prompt, expected_schema)
        cases = list(test_cases)
        runners = list(model_runners)
        expected_types = [resolve_expected_type(case) for case in cases]
        total = len(runners) * len(cases) * runs_per_test

        job = self._registry.get_test_progress(job_id) if (self._registry is not None and job_id) else None
        if job is not None:
            job.status = JobStatus.RUNNING
            job.total_tests = total
            job.completed_tests = 0

        logger.info(
            "Running %d test(s): %d model(s) x %d case(s) x %d run(s)",
            total, len(runners), len(cases), runs_per_test,
        )

        if semaphore is None:
            semaphore = self.new_semaphore()
        completed = [0]

        async def run_one(runner, case: TestCase, expected_type: ExpectedType, run_number: int) -> RunResult:
            async with semaphore:
                result = await self._execute_run(
                    runner, system_prompt, case, expected_type, run_number, job_id,
                    judge=judge, prompt_content=prompt,
                )
            completed[0] += 1
            await self._report_progress(job, job_id, completed[0], total)
            return result

        coros = [
            run_one(runner, case, expected_types[i], run_number)
            for runner in runners
            for i, case in enumerate(cases)
            for run_number in range(1, runs_per_test + 1)
        ]
        all_runs = iter(await asyncio.gather(*coros))

        llm_results = []
        for runner in runners:
            case_results = []
            for case in cases:
                runs = [next(all_runs) for _ in range(runs_per_test)]
                case_results.append(_aggregate_test_case(case, runs))
            llm_results.append(_aggregate_model(runner.display_name, case_results))

        results = _aggregate_results(prompt, len(cases), llm_results)
        logger.info("Test run finished: overall score %d%%", results.overall_score)

        if job is not None:
            job.results = results
            job.status = JobStatus.COMPLETED
            self._registry.touch(job.job_id)
        if job_id and self._store is not None:
            await self._store.on_test_run_complete(job_id, results)

        return results

    async def _execute_run(
        self,
        runner,
        system_prompt: str,
        case: TestCase,
        expected_type: ExpectedType,
        run_number: int,
        job_id: Optional[str],
        judge: Optional[LLMJudge] = None,
        prompt_content: str = "",
    ) -> RunResult:
        audit = ModelCallAuditEntry(
            job_id=job_id,
            model=runner.display_name,
            test_case_id=case.id,
            run_number=run_number,
        )
        start = time.monotonic()
        try:
            output = await self._call_model(runner, system_prompt, case.input)
        except Exception as e:
            message = get_error_message(e)
            logger.warning(
                "Run %d of case %s on %s failed: %s",
                run_number, case.id, runner.display_name, message,
            )
            audit.ok = False
            audit.error = message
            audit.duration_ms = int((time.monotonic() - start) * 1000)
            audit.emit()
            return RunResult(run_number=run_number, error=message)

        duration_ms = int(round((time.monotonic() - start) * 1000))
        audit.duration_ms = duration_ms
        audit.emit()

        if judge is not None:
            return await self._judge_run(judge, prompt_content, case, output, run_number, duration_ms)

        try:
            return score_output(case, expected_type, output, run_number, duration_ms)
        except InvariantError:
            raise
        except Exception as e:
            # e.g. the expected output itself does not parse as its declared type
            message = get_error_message(e)
            logger.warning("Scoring case %s failed: %s", case.id, message)
            return RunResult(
                run_number=run_number,
                actual_output=output,
                error=message,
                duration_ms=duration_ms,
            )

    async def _judge_run(
        self,
        judge: LLMJudge,
        prompt_content: str,
        case: TestCase,
        output: str,
        run_number: int,
        duration_ms: int,
    ) -> RunResult:
        try:
            response = await self._call_model(
                judge.runner, judge.build_prompt(prompt_content, case.input), output,
            )
            issues = parse_judge_response(response)
        except Exception as e:
            message = get_error_message(e)
            logger.warning("Judging case %s failed: %s", case.id, message)
            return judge_failed_run(message, output, run_number, duration_ms)
        return judged_run(issues, output, run_number, duration_ms)

    async def _call_model(self, runner, system_prompt: str, user_input: str) -> str:
        call = runner.complete(system_prompt, user_input, runner.model_id)
        if self._call_timeout is None:
            return await call
        try:
            return await asyncio.wait_for(call, timeout=self._call_timeout)
        except asyncio.TimeoutError:
            raise ModelCallError(
                runner.display_name,
                "Model call timed out after {}s".format(self._call_timeout),
            ) from None

    async def _report_progress(self, job, job_id: Optional[str], completed: int, total: int) -> None:
        if job is not None:
            job.completed_tests = completed
            self._registry.touch(job.job_id)
        if job_id and self._store is not None:
            await self._store.on_test_run_progress(job_id, completed, total)


def _aggregate_test_case(case: TestCase, runs: List[RunResult]) -> TestCaseResult:
    correct = sum(1 for r in runs if r.is_correct)
    mean = sum(r.score for r in runs) / len(runs) if runs else 0.0
    return TestCaseResult(
        test_case_id=case.id,
        input=case.input,
        expected_output=case.expected_output,
        runs=runs,
        correct_runs=correct,
        average_score=to_percent(mean),
    )


def _duration_stats(case_results: List[TestCaseResult]) -> Optional[DurationStats]:
    durations = [
        r.duration_ms
        for tc in case_results
        for r in tc.runs
        if r.duration_ms is not None
    ]
    if not durations:
        return None
    return DurationStats(
        min_ms=min(durations),
        max_ms=max(durations),
        avg_ms=int(round(sum(durations) / len(durations))),
    )


def _aggregate_model(model_name: str, case_results: List[TestCaseResult]) -> LLMTestResult:
    correct = sum(tc.correct_runs for tc in case_results)
    total = sum(len(tc.runs) for tc in case_results)
    return LLMTestResult(
        model_name=model_name,
        correct_count=correct,
        total_runs=total,
        score=to_percent(correct / total) if total else 0,
        duration_stats=_duration_stats(case_results),
        test_case_results=case_results,
    )


def _aggregate_results(
    prompt: str,
    total_test_cases: int,
    llm_results: List[LLMTestResult],
) -> TestResults:
    # Weighted by runs, not an average of per-model percentages
    correct = sum(r.correct_count for r in llm_results)
    total = sum(r.total_runs for r in llm_results)
    return TestResults(
        prompt_content=prompt,
        total_test_cases=total_test_cases,
        overall_score=to_percent(correct / total) if total else 0,
        llm_results=llm_results,
    )


def get_test_result_summary(llm_results: Sequence[LLMTestResult]) -> List[TestResultSummary]:
    """One representative outcome per test case across all models.

    The first wrong run represents a case when any run is wrong, otherwise
    its first correct run does. Cases are matched by position, so
    duplicate ids stay distinct.
    """
    grouped: Dict[int, Dict] = {}
    for llm_result in llm_results:
        for position, tc in enumerate(llm_result.test_case_results):
            entry = grouped.setdefault(position, {
                "input": tc.input,
                "expected_output": tc.expected_output,
                "runs": [],
            })
            entry["runs"].extend(tc.runs)

    summary = []
    for entry in grouped.values():
        runs = entry["runs"]
        if not runs:
            continue
        wrong = [r for r in runs if not r.is_correct]
        representative = wrong[0] if wrong else runs[0]
        summary.append(TestResultSummary(
            input=entry["input"],
            expected_output=entry["expected_output"],
            actual_output=representative.actual_output,
            is_correct=representative.is_correct,
            error=representative.error,
            score=representative.score,
            expected_found=representative.expected_found,
            expected_total=representative.expected_total,
            unexpected_found=representative.unexpected_found,
            issues=representative.issues,
        ))
    return summary


def format_test_report(results: TestResults) -> str:
    """Format a human-readable test report."""
    lines = [
        "Overall score: {}%  Test cases: {}  Models: {}".format(
            results.overall_score, results.total_test_cases, len(results.llm_results),
        ),
    ]
    for llm in results.llm_results:
        line = "  {} - {}% ({}/{} correct)".format(
            llm.model_name, llm.score, llm.correct_count, llm.total_runs,
        )
        if llm.duration_stats:
            line += "  avg {}ms (min {}ms, max {}ms)".format(
                llm.duration_stats.avg_ms, llm.duration_stats.min_ms, llm.duration_stats.max_ms,
            )
        lines.append(line)

        failed = [tc for tc in llm.test_case_results if tc.correct_runs < len(tc.runs)]
        for tc in failed[:5]:
            errors = [r.error for r in tc.runs if r.error]
            issues = [i for r in tc.runs for i in r.issues]
            if errors:
                note = "  error: {}".format(errors[0][:100])
            elif issues:
                note = "  issue: {}".format(issues[0].explanation[:100])
            else:
                note = ""
            lines.append("    - case {} ({}/{} correct, avg {}%){}".format(
                tc.test_case_id, tc.correct_runs, len(tc.runs), tc.average_score, note,
            ))
    return "\n".join(lines)
