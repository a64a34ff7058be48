# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Tests for judge-model evaluation: issue parsing, scoring, orchestration."""
import json

import pytest

from reliaprompt.errors import ConfigurationError, ModelCallError, ParseError
from reliaprompt.evaluation.judge import (
    ISSUES_SCHEMA,
    LLMJudge,
    deduplicate_issues,
    issue_deduction,
    parse_judge_response,
    resolve_judge,
    score_from_issues,
)
from reliaprompt.evaluation.runner import TestOrchestrator, format_test_report, get_test_result_summary
from reliaprompt.models import EvaluationIssue, EvaluationMode, TestCase

CASE = TestCase(id="c1", input="Summarize the memo", expected_output="unused in judge mode")


def _issue(substring, explanation="problem"):
    return EvaluationIssue(substring=substring, explanation=explanation)


def _issues_json(*pairs):
    return json.dumps({"issues": [{"substring": s, "explanation": e} for s, e in pairs]})


# =====================================================================
# Scoring
# =====================================================================

class TestIssueDeduction:

    def test_empty_substring_is_free(self):
        assert issue_deduction(_issue("")) == 0
        assert issue_deduction(_issue("   ")) == 0

    def test_short_substrings_cost_most(self):
        assert issue_deduction(_issue("a")) == pytest.approx(1.0)
        assert issue_deduction(_issue("ab")) == pytest.approx(0.7333)
        assert issue_deduction(_issue("abc")) == pytest.approx(0.4666)

    def test_long_substrings_floor_at_point_two(self):
        assert issue_deduction(_issue("abcd")) == pytest.approx(0.2)
        assert issue_deduction(_issue("a much longer quoted passage")) == pytest.approx(0.2)

    def test_length_ignores_surrounding_whitespace(self):
        assert issue_deduction(_issue("  a  ")) == issue_deduction(_issue("a"))


class TestScoreFromIssues:

    def test_no_issues_is_perfect(self):
        assert score_from_issues([]) == 1

    def test_deductions_add_up(self):
        issues = [_issue("missing total"), _issue("wrong date", "bad date")]
        assert score_from_issues(issues) == pytest.approx(0.6)

    def test_clamped_at_zero(self):
        assert score_from_issues([_issue("a", "one"), _issue("b", "two")]) == 0

    def test_duplicates_counted_once(self):
        issues = [_issue("Wrong Date", "Bad"), _issue(" wrong date ", "bad ")]
        assert score_from_issues(issues) == pytest.approx(0.8)

    def test_dedup_keeps_first(self):
        issues = [_issue("X y", "Why"), _issue("x Y", "why"), _issue("z", "other")]
        unique = deduplicate_issues(issues)
        assert [i.substring for i in unique] == ["X y", "z"]


# =====================================================================
# Judge responses
# =====================================================================

class TestParseJudgeResponse:

    def test_reads_issues(self):
        issues = parse_judge_response(_issues_json(("42", "wrong total")))
        assert issues == [_issue("42", "wrong total")]

    def test_empty_list(self):
        assert parse_judge_response('{"issues": []}') == []

    def test_fenced_response(self):
        text = "```json\n" + _issues_json(("x", "y")) + "\n```"
        assert len(parse_judge_response(text)) == 1

    def test_skips_malformed_and_blank_items(self):
        text = json.dumps({"issues": [
            "not an object",
            {"substring": 3, "explanation": "number"},
            {"substring": "  ", "explanation": "blank quote"},
            {"substring": "ok", "explanation": "  "},
            {"substring": "  kept ", "explanation": " trimmed "},
        ]})
        assert parse_judge_response(text) == [_issue("kept", "trimmed")]

    def test_not_json_raises(self):
        with pytest.raises(ParseError, match="Failed to parse judge response JSON"):
            parse_judge_response("Looks fine to me!")

    def test_missing_issues_list_raises(self):
        with pytest.raises(ParseError):
            parse_judge_response('{"verdict": "ok"}')
        with pytest.raises(ParseError):
            parse_judge_response('["x"]')


# =====================================================================
# Judge setup
# =====================================================================

class TestResolveJudge:

    def test_schema_mode_has_no_judge(self, make_runner):
        assert resolve_judge(None, "criteria", make_runner()) is None
        assert resolve_judge(EvaluationMode.SCHEMA, "criteria", make_runner()) is None

    def test_llm_mode_without_criteria_falls_back(self, make_runner):
        assert resolve_judge("llm", "   ", make_runner()) is None

    def test_llm_mode_needs_runner(self):
        with pytest.raises(ConfigurationError, match="Evaluation model is required"):
            resolve_judge("llm", "Be exact.", None)

    def test_builds_judge(self, make_runner):
        runner = make_runner(name="Judge")
        judge = resolve_judge("llm", "  Be exact. ", runner)
        assert judge.runner is runner
        assert judge.criteria == "Be exact."

    def test_prompt_sections(self, make_runner):
        prompt = LLMJudge(make_runner(), "No invented figures.").build_prompt("Summarize.", "The memo")
        assert "## Your task\nNo invented figures." in prompt
        assert "## Initial task\nSummarize." in prompt
        assert "## Initial input\nThe memo" in prompt
        assert json.dumps(ISSUES_SCHEMA, separators=(",", ":")) in prompt
        assert 'If no issues are found, return {"issues": []}.' in prompt


# =====================================================================
# Orchestrated judge runs
# =====================================================================

class TestJudgedRuns:

    @pytest.mark.asyncio
    async def test_issues_become_partial_credit(self, make_runner):
        model = make_runner(name="A", answers={CASE.input: "Revenue rose 40%."})
        judge = make_runner(name="Judge", respond=lambda system, answer: _issues_json(("40%", "Memo says 4%")))

        results = await TestOrchestrator().run_tests(
            "Summarize.", [CASE], [model], judge=LLMJudge(judge, "Figures must match."),
        )
        run = results.llm_results[0].test_case_results[0].runs[0]
        assert run.score == pytest.approx(0.5334)
        assert not run.is_correct
        assert (run.expected_found, run.expected_total, run.unexpected_found) == (0, 1, 1)
        assert run.issues == [_issue("40%", "Memo says 4%")]
        assert run.actual_output == "Revenue rose 40%."
        assert run.error is None

    @pytest.mark.asyncio
    async def test_clean_review_is_correct(self, make_runner):
        model = make_runner(name="A", answers={CASE.input: "anything"})
        judge = make_runner(name="Judge", respond=lambda system, answer: '{"issues": []}')
        results = await TestOrchestrator().run_tests(
            "P", [CASE], [model], runs_per_test=2, judge=LLMJudge(judge, "c"),
        )
        assert results.overall_score == 100
        assert len(judge.provider.calls) == 2

    @pytest.mark.asyncio
    async def test_unparseable_review_scores_zero(self, make_runner):
        model = make_runner(name="A", answers={CASE.input: "anything"})
        judge = make_runner(name="Judge", respond=lambda system, answer: "All good!")
        results = await TestOrchestrator().run_tests("P", [CASE], [model], judge=LLMJudge(judge, "c"))

        run = results.llm_results[0].test_case_results[0].runs[0]
        assert run.score == 0
        assert not run.is_correct
        assert run.issues[0].substring == ""
        assert run.issues[0].explanation.startswith("Judge evaluation failed: Failed to parse judge response JSON")

    @pytest.mark.asyncio
    async def test_judge_call_failure_is_isolated(self, make_runner):
        other = TestCase(id="c2", input="Second memo", expected_output="-")
        model = make_runner(name="A", answers={CASE.input: "one", other.input: "two"})

        def review(system, answer):
            if answer == "one":
                return ModelCallError("Judge", "rate limited")
            return '{"issues": []}'

        judge = make_runner(name="Judge", respond=review)
        results = await TestOrchestrator().run_tests("P", [CASE, other], [model], judge=LLMJudge(judge, "c"))

        first, second = results.llm_results[0].test_case_results
        assert first.runs[0].score == 0
        assert "[Judge] rate limited" in first.runs[0].issues[0].explanation
        assert second.runs[0].is_correct
        assert results.overall_score == 50

    @pytest.mark.asyncio
    async def test_failed_model_call_skips_judge(self, make_runner):
        model = make_runner(name="A", answers={CASE.input: ModelCallError("Fake", "down")})
        judge = make_runner(name="Judge", respond=lambda system, answer: '{"issues": []}')
        results = await TestOrchestrator().run_tests("P", [CASE], [model], judge=LLMJudge(judge, "c"))

        run = results.llm_results[0].test_case_results[0].runs[0]
        assert run.error == "[Fake] down"
        assert judge.provider.calls == []

    @pytest.mark.asyncio
    async def test_judge_sees_prompt_without_schema_hint(self, make_runner):
        model = make_runner(name="A", answers={CASE.input: "x"})
        judge = make_runner(name="Judge", respond=lambda system, answer: '{"issues": []}')
        await TestOrchestrator().run_tests(
            "Summarize.", [CASE], [model],
            expected_schema='{"type": "string"}', judge=LLMJudge(judge, "c"),
        )
        judge_system = judge.provider.calls[0][0]
        assert "## Initial task\nSummarize.\n" in judge_system
        assert "## Response Schema:" not in judge_system

    @pytest.mark.asyncio
    async def test_judge_timeout(self, make_runner):
        model = make_runner(name="A", answers={CASE.input: "x"})
        judge = make_runner(name="Slow", respond=lambda system, answer: '{"issues": []}', delay=1.0)
        orchestrator = TestOrchestrator(call_timeout=0.01)
        results = await orchestrator.run_tests("P", [CASE], [model], judge=LLMJudge(judge, "c"))

        run = results.llm_results[0].test_case_results[0].runs[0]
        assert run.score == 0
        assert "timed out" in run.issues[0].explanation

    @pytest.mark.asyncio
    async def test_issues_reach_summary_and_report(self, make_runner):
        model = make_runner(name="A", answers={CASE.input: "Revenue rose 40%."})
        judge = make_runner(name="Judge", respond=lambda system, answer: _issues_json(("40%", "Memo says 4%")))
        results = await TestOrchestrator().run_tests("P", [CASE], [model], judge=LLMJudge(judge, "c"))

        summary = get_test_result_summary(results.llm_results)
        assert summary[0].issues == [_issue("40%", "Memo says 4%")]
        assert "issue: Memo says 4%" in format_test_report(results)
