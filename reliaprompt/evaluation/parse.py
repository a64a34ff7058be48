# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Output parser: extract a typed value from raw model text.

String expectations never fail: a JSON string literal is unwrapped, any
other text is returned trimmed. Array and object expectations tolerate one
enclosing markdown code fence and must decode to the requested shape.
"""
import json
import re
from typing import Union

from reliaprompt.errors import ParseError
from reliaprompt.models import ExpectedType, ParsedValue

_FENCE_RE = re.compile(r'^```(?:json)?[ \t]*\n?(.*?)\n?[ \t]*```$', re.DOTALL | re.IGNORECASE)


def strip_code_fence(text: str) -> str:
    """Remove a single enclosing ``` or ```json fence, trimming whitespace."""
    stripped = text.strip()
    match = _FENCE_RE.match(stripped)
    if match:
        return match.group(1).strip()
    return stripped


def parse(raw_text: str, expected_type: Union[ExpectedType, str]) -> ParsedValue:
    """Parse ``raw_text`` as ``expected_type``.

    Raises
    ------
    ParseError
        When an array/object expectation cannot be satisfied.
    """
    expected_type = ExpectedType(expected_type)
    trimmed = (raw_text or "").strip()

    if expected_type == ExpectedType.STRING:
        try:
            value = json.loads(trimmed)
        except ValueError:
            return trimmed
        return value if isinstance(value, str) else trimmed

    candidate = strip_code_fence(trimmed)
    try:
        value = json.loads(candidate)
    except ValueError:
        raise ParseError() from None

    if expected_type == ExpectedType.ARRAY and isinstance(value, list):
        return value
    if expected_type == ExpectedType.OBJECT and isinstance(value, dict):
        return value
    raise ParseError()
