# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Tests for the Engine facade: job start, background execution, status queries."""
from unittest.mock import AsyncMock

import pytest

from reliaprompt import Engine, EngineConfig, create_engine
from reliaprompt.errors import ConfigurationError, NotFoundError
from reliaprompt.models import JobStatus, TestCase
from reliaprompt.store.memory import MemoryJobStore

CASE = TestCase(id="c1", input="Capital of France?", expected_output="Paris")


def answer_by_prompt(system_prompt, user_input):
    return "Paris" if "capital city" in system_prompt else "I think Lyon"


class TestTestRuns:

    @pytest.mark.asyncio
    async def test_tracked_run_completes(self, make_runner):
        engine = Engine(runners=[make_runner(answers={CASE.input: "Paris"})])
        job_id = await engine.start_test_run("Answer briefly.", [CASE], runs_per_test=2)

        await engine.wait(job_id)
        job = engine.get_test_progress(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.progress == 100
        assert job.total_tests == 2
        assert job.results.overall_score == 100
        assert engine.store.test_runs[job_id]["status"] == "completed"

    @pytest.mark.asyncio
    async def test_runs_per_test_from_config(self, make_runner):
        runner = make_runner(answers={CASE.input: "Paris"})
        engine = Engine(config=EngineConfig(runs_per_test=3), runners=[runner])
        job_id = await engine.start_test_run("P", [CASE])
        await engine.wait(job_id)
        assert engine.get_test_progress(job_id).completed_tests == 3

    @pytest.mark.asyncio
    async def test_failure_recorded_on_job(self, make_runner):
        engine = Engine(runners=[make_runner()])
        engine.orchestrator.run_tests = AsyncMock(side_effect=RuntimeError("disk full"))

        job_id = await engine.start_test_run("P", [CASE])
        await engine.wait(job_id)
        job = engine.get_test_progress(job_id)
        assert job.status == JobStatus.FAILED
        assert job.error == "disk full"
        assert engine.store.test_runs[job_id] == {"status": "failed", "error": "disk full"}

    @pytest.mark.asyncio
    async def test_no_test_cases(self, make_runner):
        engine = Engine(runners=[make_runner()])
        with pytest.raises(ConfigurationError, match="No test cases"):
            await engine.start_test_run("P", [])
        assert len(engine.registry) == 0

    @pytest.mark.asyncio
    async def test_no_models(self):
        engine = Engine(config=EngineConfig())
        with pytest.raises(ConfigurationError, match="No models configured"):
            await engine.start_test_run("P", [CASE])

    def test_unknown_job(self):
        engine = Engine()
        assert engine.get_test_progress("nope") is None
        assert engine.get_improvement_progress("nope") is None


class TestImprovementJobs:

    @pytest.mark.asyncio
    async def test_improvement_job_runs_to_completion(self, make_runner):
        runner = make_runner(
            respond=answer_by_prompt,
            improvements=["Name the capital city only."],
        )
        engine = Engine(config=EngineConfig(max_iterations=2), runners=[runner])
        prompt = await engine.store.create_prompt("geo", "Answer the question.")

        job_id = await engine.start_improvement(prompt.id, [CASE])
        job = engine.get_improvement_progress(job_id)
        assert job.status == JobStatus.PENDING
        assert job.max_iterations == 2

        await engine.wait(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.original_score == 0
        assert job.best_score == 100
        assert job.current_iteration == 1
        saved = await engine.store.get_prompt(job.best_prompt_version_id)
        assert saved.content == "Name the capital city only."
        assert saved.parent_id == prompt.id

    @pytest.mark.asyncio
    async def test_missing_prompt(self, make_runner):
        engine = Engine(runners=[make_runner()])
        with pytest.raises(NotFoundError, match="Prompt 7 not found"):
            await engine.start_improvement("7", [CASE])
        assert len(engine.registry) == 0

    @pytest.mark.asyncio
    async def test_missing_test_cases(self, make_runner):
        engine = Engine(runners=[make_runner()])
        prompt = await engine.store.create_prompt("geo", "P")
        with pytest.raises(ConfigurationError, match="No test cases"):
            await engine.start_improvement(prompt.id, [])
        assert len(engine.registry) == 0

    @pytest.mark.asyncio
    async def test_missing_models(self):
        engine = Engine()
        prompt = await engine.store.create_prompt("geo", "P")
        with pytest.raises(ConfigurationError):
            await engine.start_improvement(prompt.id, [CASE])

    @pytest.mark.asyncio
    async def test_explicit_runners_override(self, make_runner):
        default = make_runner(name="Default", answers={CASE.input: "Paris"})
        override = make_runner(name="Override", answers={CASE.input: "Paris"})
        engine = Engine(runners=[default])
        prompt = await engine.store.create_prompt("geo", "P")

        job_id = await engine.start_improvement(prompt.id, [CASE], runners=[override], max_iterations=1)
        await engine.wait(job_id)
        assert default.provider.calls == []
        assert len(override.provider.calls) == 1

    @pytest.mark.asyncio
    async def test_acknowledge(self, make_runner):
        engine = Engine(runners=[make_runner(answers={CASE.input: "Paris"})])
        prompt = await engine.store.create_prompt("geo", "P")
        job_id = await engine.start_improvement(prompt.id, [CASE])
        await engine.wait(job_id)

        assert engine.acknowledge(job_id) is True
        assert engine.get_improvement_progress(job_id) is None


class TestJudgeMode:

    @pytest.mark.asyncio
    async def test_llm_mode_reviews_answers_with_judge(self, make_runner):
        model = make_runner(name="A", answers={CASE.input: "Paris, of course"})
        judge = make_runner(name="Judge", respond=lambda system, answer: '{"issues": []}')
        engine = Engine(runners=[model])

        job_id = await engine.start_test_run(
            "Answer briefly.", [CASE],
            evaluation_mode="llm", evaluation_criteria="Names the right city.", judge_runner=judge,
        )
        await engine.wait(job_id)
        assert engine.get_test_progress(job_id).results.overall_score == 100
        system_prompt, user_input, _ = judge.provider.calls[0]
        assert "Names the right city." in system_prompt
        assert user_input == "Paris, of course"

    @pytest.mark.asyncio
    async def test_llm_mode_without_judge(self, make_runner):
        engine = Engine(runners=[make_runner()])
        with pytest.raises(ConfigurationError, match="Evaluation model is required"):
            await engine.start_test_run("P", [CASE], evaluation_mode="llm", evaluation_criteria="Be right.")
        assert len(engine.registry) == 0

    @pytest.mark.asyncio
    async def test_llm_mode_without_criteria_compares_structurally(self, make_runner):
        judge = make_runner(name="Judge", respond=lambda system, answer: '{"issues": []}')
        engine = Engine(runners=[make_runner(answers={CASE.input: "Lyon"})])
        job_id = await engine.start_test_run("P", [CASE], evaluation_mode="llm", judge_runner=judge)
        await engine.wait(job_id)
        assert engine.get_test_progress(job_id).results.overall_score == 0
        assert judge.provider.calls == []

    @pytest.mark.asyncio
    async def test_improvement_with_judge(self, make_runner):
        runner = make_runner(respond=answer_by_prompt, improvements=["Name the capital city only."])

        def review(system, answer):
            if answer == "Paris":
                return '{"issues": []}'
            return '{"issues": [{"substring": "Lyon", "explanation": "Wrong city"}]}'

        judge = make_runner(name="Judge", respond=review)
        engine = Engine(config=EngineConfig(max_iterations=1), runners=[runner])
        prompt = await engine.store.create_prompt("geo", "Answer the question.")

        job_id = await engine.start_improvement(
            prompt.id, [CASE],
            evaluation_mode="llm", evaluation_criteria="Names the capital.", judge_runner=judge,
        )
        await engine.wait(job_id)
        job = engine.get_improvement_progress(job_id)
        assert (job.original_score, job.best_score) == (0, 100)
        summaries = runner.provider.improve_calls[0][1]
        assert summaries[0].issues[0].explanation == "Wrong city"

    def test_judge_runner_from_config(self):
        engine = Engine(config=EngineConfig(models=["ollama:mistral"], judge_model="ollama:llama3"))
        assert engine.judge_runner.display_name == "Ollama (llama3)"
        assert [r.display_name for r in engine.runners] == ["Ollama (mistral)"]


class TestEngineSetup:

    def test_runners_built_from_config(self):
        engine = Engine(config=EngineConfig(models=["ollama:mistral"]))
        assert [r.display_name for r in engine.runners] == ["Ollama (mistral)"]

    def test_create_engine(self):
        store = MemoryJobStore()
        engine = create_engine(models=["ollama"], store=store, max_concurrency=2)
        assert engine.config.models == ["ollama"]
        assert engine.config.max_concurrency == 2
        assert engine.store is store

    @pytest.mark.asyncio
    async def test_close_waits_for_jobs(self, make_runner):
        engine = Engine(runners=[make_runner(answers={CASE.input: "Paris"}, delay=0.01)])
        job_id = await engine.start_test_run("P", [CASE])
        await engine.close()
        assert engine.get_test_progress(job_id).status == JobStatus.COMPLETED
