# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Prompt sent to a model when asking it to rewrite a failing prompt.

Sections:
  1. Current prompt
  2. Pass/fail summary
  3. Failure analysis (missing / unexpected element counts)
  4. Failed cases (input, expected, actual or error, judge issues), capped
  5. Output contract: raw prompt text only
"""
from typing import List, Sequence

from reliaprompt.models import TestResultSummary

MAX_FAILED_CASES = 10

IMPROVER_SYSTEM_PROMPT = (
    "You are an expert prompt engineer. Rewrite prompts so that language models "
    "produce outputs that exactly match the expected results. "
    "Output only the rewritten prompt text."
)

_TASK = """\
## Your Task:
Analyze why the prompt is failing for these test cases and provide an improved version of the prompt.
The improved prompt should:
1. Be clearer and more specific about the expected output format
2. Handle edge cases better
3. Produce valid JSON that exactly matches the expected structure
4. Not include extra fields or values beyond what is expected

IMPORTANT: Return ONLY the improved prompt text, nothing else. Do not include any explanations, \
markdown formatting, or code blocks. Just the raw prompt text."""


def _failure_analysis(failed: Sequence[TestResultSummary]) -> List[str]:
    errored = sum(1 for t in failed if t.error)
    missing = sum(1 for t in failed if not t.error and t.expected_found < t.expected_total)
    extra = sum(1 for t in failed if t.unexpected_found > 0)

    lines = ["## Failure Analysis:"]
    if errored:
        lines.append("- {} case(s) failed with a model error".format(errored))
    if missing:
        lines.append("- {} case(s) are missing expected values or keys".format(missing))
    if extra:
        lines.append("- {} case(s) contain unexpected extra values or keys".format(extra))
    if len(lines) == 1:
        lines.append("- Outputs did not match the expected values")
    return lines


def build_improvement_prompt(
    current_prompt: str,
    summaries: Sequence[TestResultSummary],
) -> str:
    """Render the improvement request for ``current_prompt``."""
    failed = [t for t in summaries if not t.is_correct]
    passed = [t for t in summaries if t.is_correct]
    total = len(summaries)

    parts = [
        "You are an expert prompt engineer. Your task is to improve the following prompt "
        "to make it produce better, more accurate outputs.",
        "",
        "## Current Prompt:",
        current_prompt,
        "",
        "## Test Results Summary:",
        "- Passed: {}/{}".format(len(passed), total),
        "- Failed: {}/{}".format(len(failed), total),
        "",
    ]

    if failed:
        parts.extend(_failure_analysis(failed))
        parts.append("")
        parts.append("## Failed Test Cases:")
        for test in failed[:MAX_FAILED_CASES]:
            if test.actual_output is not None:
                actual = test.actual_output
            else:
                actual = "ERROR: {}".format(test.error or "Unknown error")
            parts.extend([
                "",
                "### Test Input:",
                test.input,
                "",
                "### Expected Output:",
                test.expected_output,
                "",
                "### Actual Output:",
                actual,
                "",
                "(found {}/{} expected, {} unexpected)".format(
                    test.expected_found, test.expected_total, test.unexpected_found,
                ),
                "",
            ])
            if test.issues:
                parts.append("### Reviewer Issues:")
                for issue in test.issues:
                    if issue.substring:
                        parts.append('- "{}": {}'.format(issue.substring, issue.explanation))
                    else:
                        parts.append("- {}".format(issue.explanation))
                parts.append("")
            parts.append("---")
        if len(failed) > MAX_FAILED_CASES:
            parts.append("({} more failed case(s) omitted)".format(len(failed) - MAX_FAILED_CASES))
        parts.append("")

    parts.append(_TASK)
    return "\n".join(parts)
