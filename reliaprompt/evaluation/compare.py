# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Structural comparator with partial credit.

Arrays are compared as sets: both sides are deduplicated with an
order-insensitive deep equality, so ``[1, 1, 2]`` equals ``[2, 1]``.
Unexpected elements (or keys) are subtracted from the found count before
dividing by the number of unique expected elements, so a noisy but
complete answer can still score 0.
"""
from typing import Any, List, Optional, Union

from pydantic import BaseModel

from reliaprompt.errors import InvariantError
from reliaprompt.models import ExpectedType, ParsedValue


class ComparisonResult(BaseModel):
    model_config = {"frozen": True}

    score: float
    expected_total: int
    expected_found: int
    unexpected_found: int


def values_equal(a: Any, b: Any) -> bool:
    """Deep equality where arrays are unordered and duplicate-insensitive."""
    if isinstance(a, list) and isinstance(b, list):
        unique_a = unique_values(a)
        unique_b = unique_values(b)
        if len(unique_a) != len(unique_b):
            return False
        return all(contains(unique_b, item) for item in unique_a)

    if isinstance(a, dict) and isinstance(b, dict):
        if a.keys() != b.keys():
            return False
        return all(values_equal(a[key], b[key]) for key in a)

    if isinstance(a, (list, dict)) or isinstance(b, (list, dict)):
        return False

    # JSON true is not the number 1
    if isinstance(a, bool) or isinstance(b, bool):
        return type(a) is type(b) and a == b

    return a == b


def contains(items: List[Any], value: Any) -> bool:
    return any(values_equal(item, value) for item in items)


def unique_values(items: List[Any]) -> List[Any]:
    """Deduplicate preserving first occurrence."""
    unique: List[Any] = []
    for item in items:
        if not contains(unique, item):
            unique.append(item)
    return unique


def _compare_arrays(expected: list, actual: Any):
    unique_expected = unique_values(expected)
    if not isinstance(actual, list):
        return 0, len(unique_expected), 0

    unique_actual = unique_values(actual)
    found = sum(1 for item in unique_expected if contains(unique_actual, item))
    unexpected = sum(1 for item in unique_actual if not contains(unique_expected, item))
    return found, len(unique_expected), unexpected


def _compare_objects(expected: dict, actual: Any):
    if not isinstance(actual, dict):
        return 0, len(expected), 0

    found = sum(
        1 for key, value in expected.items()
        if key in actual and values_equal(value, actual[key])
    )
    # Value mismatches on shared keys are misses, not extras
    unexpected = sum(1 for key in actual if key not in expected)
    return found, len(expected), unexpected


def compare(
    expected: ParsedValue,
    actual: Optional[ParsedValue],
    expected_type: Union[ExpectedType, str],
) -> ComparisonResult:
    """Score ``actual`` against ``expected``.

    ``actual`` is None when the model output could not be parsed; that
    scores 0 for any non-empty expectation.
    """
    if expected is None:
        raise InvariantError("Expected value is undefined")

    expected_type = ExpectedType(expected_type)

    if expected_type == ExpectedType.ARRAY and isinstance(expected, list):
        found, total, unexpected = _compare_arrays(expected, actual)
    elif expected_type == ExpectedType.OBJECT and isinstance(expected, dict):
        found, total, unexpected = _compare_objects(expected, actual)
    elif expected_type == ExpectedType.STRING and isinstance(expected, str):
        matched = isinstance(actual, str) and actual == expected
        found, total, unexpected = (1 if matched else 0), 1, 0
    else:
        found, total, unexpected = 0, 0, 0

    if total == 0:
        score = 1.0 if unexpected == 0 else 0.0
    else:
        score = (found - unexpected) / total
        score = max(0.0, min(1.0, score))

    return ComparisonResult(
        score=score,
        expected_total=total,
        expected_found=found,
        unexpected_found=unexpected,
    )
