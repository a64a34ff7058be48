# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Evaluation core: parse, compare, judge, run and improve."""
from reliaprompt.evaluation.compare import ComparisonResult, compare, values_equal
from reliaprompt.evaluation.judge import LLMJudge, parse_judge_response, resolve_judge, score_from_issues
from reliaprompt.evaluation.loop import ImprovementLoop, format_improvement_report
from reliaprompt.evaluation.parse import parse, strip_code_fence
from reliaprompt.evaluation.runner import (
    TestOrchestrator,
    format_test_report,
    get_test_result_summary,
    resolve_expected_type,
    to_percent,
)

__all__ = [
    "ComparisonResult", "compare", "values_equal",
    "LLMJudge", "parse_judge_response", "resolve_judge", "score_from_issues",
    "ImprovementLoop", "format_improvement_report",
    "parse", "strip_code_fence",
    "TestOrchestrator", "format_test_report", "get_test_result_summary",
    "resolve_expected_type", "to_percent",
]
