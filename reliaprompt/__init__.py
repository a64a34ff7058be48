# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""reliaprompt: measure and improve how reliably models follow a prompt."""
from reliaprompt.config import EngineConfig
from reliaprompt.engine import Engine, create_engine
from reliaprompt.errors import (
    ConfigurationError, InvariantError, ModelCallError, NotFoundError, ParseError, ReliaPromptError,
)
from reliaprompt.models import (
    EvaluationIssue, EvaluationMode, ExpectedType, ImprovementProgress, JobStatus,
    LLMTestResult, RunResult,
    TestCase, TestCaseResult, TestResults, TestRunProgress,
)

__version__ = "0.3.0"
__all__ = [
    "Engine", "EngineConfig", "create_engine",
    "ConfigurationError", "InvariantError", "ModelCallError",
    "NotFoundError", "ParseError", "ReliaPromptError",
    "EvaluationIssue", "EvaluationMode", "ExpectedType", "ImprovementProgress",
    "JobStatus", "LLMTestResult",
    "RunResult", "TestCase", "TestCaseResult", "TestResults", "TestRunProgress",
    "__version__",
]
