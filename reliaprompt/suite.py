# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Load a prompt and its test cases from a YAML suite file.

Format::

    prompt:
      name: extract-cities
      content: "Return the cities mentioned as a JSON array."
      expected_schema: {type: array, items: {type: string}}   # optional
      evaluation_mode: llm                                   # optional, default schema
      evaluation_criteria: "Only cities named in the input"  # required for llm mode
    test_cases:
      - input: "I flew from Paris to Rome"
        expected_output: ["Paris", "Rome"]
        expected_output_type: array                          # optional
"""
import json
from pathlib import Path
from typing import Any, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from reliaprompt.errors import ConfigurationError
from reliaprompt.models import EvaluationMode, TestCase


class SuitePrompt(BaseModel):
    id: Optional[str] = None
    name: str = "prompt"
    content: str
    expected_schema: Optional[str] = None
    evaluation_mode: Optional[EvaluationMode] = None
    evaluation_criteria: Optional[str] = None


class PromptSuite(BaseModel):
    """A prompt plus the test cases it is evaluated against."""
    prompt: SuitePrompt
    test_cases: List[TestCase] = Field(default_factory=list)


def _as_text(value: Any) -> Any:
    if value is None or isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False)


def parse_suite(data: Any) -> PromptSuite:
    """Build a PromptSuite from already-loaded YAML data."""
    if not isinstance(data, dict) or not isinstance(data.get("prompt"), dict):
        raise ConfigurationError("Suite must contain a 'prompt' mapping")

    prompt = dict(data["prompt"])
    prompt["expected_schema"] = _as_text(prompt.get("expected_schema"))
    if prompt.get("id") is not None:
        prompt["id"] = str(prompt["id"])

    cases = []
    for item in data.get("test_cases") or []:
        if not isinstance(item, dict):
            raise ConfigurationError("Each test case must be a mapping")
        case = dict(item)
        case["input"] = _as_text(case.get("input"))
        case["expected_output"] = _as_text(case.get("expected_output"))
        if case.get("id") is not None:
            case["id"] = str(case["id"])
        else:
            case.pop("id", None)
        cases.append(case)

    try:
        return PromptSuite(prompt=prompt, test_cases=cases)
    except ValidationError as e:
        raise ConfigurationError("Invalid suite: {}".format(e)) from e


def load_suite(path: str) -> PromptSuite:
    """Load a suite from a YAML file."""
    p = Path(path)
    if not p.exists():
        raise ConfigurationError("Suite not found: {}".format(path))

    with open(p, "r", encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError("Invalid YAML in {}: {}".format(path, e)) from e

    return parse_suite(data)
