# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Pydantic models for test runs and improvement jobs."""
import math
import time
import uuid
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field, computed_field

# JSON value produced by the output parser
ParsedValue = Union[str, int, float, bool, None, List[Any], Dict[str, Any]]


class EvaluationMode(str, Enum):
    """How model answers are scored."""
    SCHEMA = "schema"
    LLM = "llm"


class ExpectedType(str, Enum):
    """Structural type a test case expects the model to return."""
    STRING = "string"
    ARRAY = "array"
    OBJECT = "object"


class JobStatus(str, Enum):
    """Lifecycle of a tracked job."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


def to_percent(ratio: float) -> int:
    """Scale a 0-1 ratio to 0-100, rounding halves up."""
    return int(math.floor(ratio * 100 + 0.5))


def _new_id() -> str:
    return uuid.uuid4().hex[:8]


class TestCase(BaseModel):
    """One (input, expected output, expected type) triple."""
    __test__ = False  # not a pytest class

    model_config = {"frozen": True}

    id: str = Field(default_factory=_new_id)
    input: str
    expected_output: str
    expected_output_type: Optional[ExpectedType] = None


class EvaluationIssue(BaseModel):
    """One problem a judge model found in an answer."""

    model_config = {"frozen": True}

    substring: str
    explanation: str


class RunResult(BaseModel):
    """Outcome of one repetition of one test case against one model."""

    model_config = {"frozen": True}

    run_number: int
    actual_output: Optional[str] = None
    is_correct: bool = False
    score: float = Field(0.0, ge=0.0, le=1.0)
    expected_found: int = 0
    expected_total: int = 0
    unexpected_found: int = 0
    issues: List[EvaluationIssue] = Field(default_factory=list)
    error: Optional[str] = None
    duration_ms: Optional[int] = None


class TestCaseResult(BaseModel):
    __test__ = False

    test_case_id: str
    input: str
    expected_output: str
    runs: List[RunResult] = Field(default_factory=list)
    correct_runs: int = 0
    average_score: int = 0  # 0-100


class DurationStats(BaseModel):
    min_ms: int
    max_ms: int
    avg_ms: int


class LLMTestResult(BaseModel):
    """All test case results for one model."""

    model_config = {"protected_namespaces": ()}

    model_name: str
    correct_count: int = 0
    total_runs: int = 0
    score: int = 0  # 0-100
    duration_stats: Optional[DurationStats] = None
    test_case_results: List[TestCaseResult] = Field(default_factory=list)


class TestResults(BaseModel):
    """Aggregate across all models. overall_score is correct/total runs."""
    __test__ = False

    prompt_content: str = ""
    total_test_cases: int = 0
    overall_score: int = 0  # 0-100
    llm_results: List[LLMTestResult] = Field(default_factory=list)


class TestResultSummary(BaseModel):
    """Representative outcome of one test case, fed to improve_prompt."""
    __test__ = False

    input: str
    expected_output: str
    actual_output: Optional[str] = None
    is_correct: bool = False
    error: Optional[str] = None
    score: float = 0.0
    expected_found: int = 0
    expected_total: int = 0
    unexpected_found: int = 0
    issues: List[EvaluationIssue] = Field(default_factory=list)


class TestRunProgress(BaseModel):
    """Progress of a tracked test run job."""
    __test__ = False

    job_id: str
    status: JobStatus = JobStatus.PENDING
    completed_tests: int = 0
    total_tests: int = 0
    results: Optional[TestResults] = None
    error: Optional[str] = None
    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)

    @computed_field
    @property
    def progress(self) -> int:
        if self.total_tests <= 0:
            return 100 if self.status == JobStatus.COMPLETED else 0
        return to_percent(self.completed_tests / self.total_tests)


class ImprovementProgress(BaseModel):
    """Mutable state of one improvement job. Single writer: the loop."""

    job_id: str
    prompt_id: Optional[str] = None
    status: JobStatus = JobStatus.PENDING
    current_iteration: int = 0
    max_iterations: int = 0
    original_score: Optional[int] = None
    best_score: Optional[int] = None
    best_prompt_content: Optional[str] = None
    best_prompt_version_id: Optional[str] = None
    log: List[str] = Field(default_factory=list)
    error: Optional[str] = None
    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)


class ImprovementUpdate(BaseModel):
    """Partial update forwarded to the job store. None means unchanged."""

    status: Optional[JobStatus] = None
    current_iteration: Optional[int] = None
    original_score: Optional[int] = None
    best_score: Optional[int] = None
    best_prompt_content: Optional[str] = None
    best_prompt_version_id: Optional[str] = None
    error: Optional[str] = None
    append_log_line: Optional[str] = None


class PromptVersion(BaseModel):
    """A stored prompt. New versions point at their parent."""

    id: str
    name: str
    content: str
    version: int = 1
    parent_id: Optional[str] = None
    created_at: float = Field(default_factory=time.time)
