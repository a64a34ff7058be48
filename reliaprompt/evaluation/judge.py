# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Judge-model evaluation for free-form answers.

A second model reads each answer against user-written criteria and lists
problems as ``{"issues": [{"substring": ..., "explanation": ...}]}``. The
judge never scores. The score is derived from the issues:

    score = clamp(1 - sum(deduction(issue)), 0, 1)
    deduction = max(0.2, 1.2667 - 0.2667 * len(substring.strip()))

An issue quoting an empty substring costs nothing. Issues are
deduplicated case-insensitively on (substring, explanation) first.
"""
import json
import logging
from typing import List, Optional, Sequence

from reliaprompt.errors import ConfigurationError, ParseError
from reliaprompt.evaluation.parse import strip_code_fence
from reliaprompt.models import EvaluationIssue, EvaluationMode, RunResult

logger = logging.getLogger(__name__)

ISSUES_SCHEMA = {
    "type": "object",
    "additionalProperties": False,
    "required": ["issues"],
    "properties": {
        "issues": {
            "type": "array",
            "items": {
                "type": "object",
                "additionalProperties": False,
                "required": ["substring", "explanation"],
                "properties": {
                    "substring": {"type": "string"},
                    "explanation": {"type": "string"},
                },
            },
        },
    },
}

_JUDGE_PROMPT = """\
You are evaluating an extraction result and must identify issues only.
Return only a valid json object.

## Your task
{criteria}

## Initial task
{prompt}

## Initial input
{input}

## Required json schema
{schema}

## Evaluation json format
{{
  "issues": [
    {{
      "substring": "missing disclaimer text",
      "explanation": "The output is missing the required safety disclaimer"
    }},
    {{
      "substring": "incorrect value",
      "explanation": "The calculated value is incorrect"
    }}
  ]
}}
If no issues are found, return {{"issues": []}}.
Do not include markdown fences. Output only json."""

_SLOPE = 0.2667
_INTERCEPT = 1.2667
_MIN_DEDUCTION = 0.2


class LLMJudge:
    """Pairs a judge model runner with the criteria it applies.

    Usage:
        judge = LLMJudge(runner, "Every figure must match the source text.")
        results = await orchestrator.run_tests(prompt, cases, runners, judge=judge)
    """

    def __init__(self, runner, criteria: str):
        if not criteria or not criteria.strip():
            raise ConfigurationError("Evaluation criteria must not be empty")
        self.runner = runner
        self.criteria = criteria.strip()

    def build_prompt(self, prompt_content: str, case_input: str) -> str:
        """System prompt for the judge; the answer under review is the user message."""
        return _JUDGE_PROMPT.format(
            criteria=self.criteria,
            prompt=prompt_content,
            input=case_input,
            schema=json.dumps(ISSUES_SCHEMA, separators=(",", ":")),
        )


def resolve_judge(
    evaluation_mode: Optional[EvaluationMode],
    evaluation_criteria: Optional[str],
    judge_runner=None,
) -> Optional[LLMJudge]:
    """Build the judge a prompt asks for, or None for structural scoring.

    LLM mode without criteria falls back to structural scoring. LLM mode
    with criteria but no judge runner is a configuration error.
    """
    if evaluation_mode is None or EvaluationMode(evaluation_mode) != EvaluationMode.LLM:
        return None
    if not evaluation_criteria or not evaluation_criteria.strip():
        logger.warning("LLM evaluation mode without criteria, using structural comparison")
        return None
    if judge_runner is None:
        raise ConfigurationError("Evaluation model is required when running LLM evaluation mode")
    return LLMJudge(judge_runner, evaluation_criteria)


def parse_judge_response(text: str) -> List[EvaluationIssue]:
    """Read the judge's issue list.

    Malformed items and items with a blank substring or explanation are
    skipped. A response that is not a JSON object with an ``issues`` list
    raises ParseError.
    """
    try:
        data = json.loads(strip_code_fence(text or ""))
    except ValueError as e:
        raise ParseError("Failed to parse judge response JSON: {}".format(e)) from None
    if not isinstance(data, dict) or not isinstance(data.get("issues"), list):
        raise ParseError("Judge response has no 'issues' list")

    issues = []
    for item in data["issues"]:
        if not isinstance(item, dict):
            continue
        substring = item.get("substring")
        explanation = item.get("explanation")
        if not isinstance(substring, str) or not isinstance(explanation, str):
            continue
        substring, explanation = substring.strip(), explanation.strip()
        if substring and explanation:
            issues.append(EvaluationIssue(substring=substring, explanation=explanation))
    return issues


def deduplicate_issues(issues: Sequence[EvaluationIssue]) -> List[EvaluationIssue]:
    """Keep the first issue per case-insensitive (substring, explanation)."""
    seen = set()
    unique = []
    for issue in issues:
        key = (issue.substring.strip().lower(), issue.explanation.strip().lower())
        if key not in seen:
            seen.add(key)
            unique.append(issue)
    return unique


def issue_deduction(issue: EvaluationIssue) -> float:
    length = len(issue.substring.strip())
    if length == 0:
        return 0.0
    return max(_MIN_DEDUCTION, _INTERCEPT - _SLOPE * length)


def score_from_issues(issues: Sequence[EvaluationIssue]) -> float:
    total = sum(issue_deduction(issue) for issue in deduplicate_issues(issues))
    return max(0.0, min(1.0, round(1 - total, 6)))


def judged_run(
    issues: Sequence[EvaluationIssue],
    actual_output: str,
    run_number: int,
    duration_ms: Optional[int] = None,
) -> RunResult:
    """Build a run from judge issues.

    Issue counts fill the structural counters: one expected element that
    is found only when there are no issues, one unexpected per issue.
    """
    issues = deduplicate_issues(issues)
    score = score_from_issues(issues)
    return RunResult(
        run_number=run_number,
        actual_output=actual_output,
        is_correct=score == 1,
        score=score,
        expected_found=0 if issues else 1,
        expected_total=1,
        unexpected_found=len(issues),
        issues=issues,
        duration_ms=duration_ms,
    )


def judge_failed_run(
    message: str,
    actual_output: str,
    run_number: int,
    duration_ms: Optional[int] = None,
) -> RunResult:
    """A run whose judge call or judge response failed: wrong, score 0."""
    return RunResult(
        run_number=run_number,
        actual_output=actual_output,
        is_correct=False,
        score=0.0,
        expected_found=0,
        expected_total=1,
        unexpected_found=1,
        issues=[EvaluationIssue(substring="", explanation="Judge evaluation failed: {}".format(message))],
        duration_ms=duration_ms,
    )
