# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Tests for per-call audit logging."""
import json
import logging

import pytest

from reliaprompt.audit import ModelCallAuditEntry
from reliaprompt.errors import ModelCallError
from reliaprompt.evaluation.runner import TestOrchestrator
from reliaprompt.models import TestCase


def _records(caplog):
    return [json.loads(r.getMessage()) for r in caplog.records if r.name == "reliaprompt.audit"]


class TestAuditEntry:

    def test_emit_json(self, caplog):
        entry = ModelCallAuditEntry(job_id="j1", model="A", test_case_id="c1", run_number=2, duration_ms=40)
        with caplog.at_level(logging.INFO, logger="reliaprompt.audit"):
            entry.emit()
        record = _records(caplog)[0]
        assert record["event"] == "model_call"
        assert record["job_id"] == "j1"
        assert record["run"] == 2
        assert record["ok"] is True
        assert "error" not in record

    def test_error_truncated(self, caplog):
        entry = ModelCallAuditEntry(ok=False, error="x" * 500)
        with caplog.at_level(logging.INFO, logger="reliaprompt.audit"):
            entry.emit()
        assert len(_records(caplog)[0]["error"]) == 200

    def test_silent_below_info(self, caplog):
        with caplog.at_level(logging.WARNING, logger="reliaprompt.audit"):
            ModelCallAuditEntry().emit()
        assert _records(caplog) == []


@pytest.mark.asyncio
async def test_one_entry_per_run(caplog, make_runner):
    case = TestCase(id="c1", input="q", expected_output="a")
    runner = make_runner(name="A", answers={"q": ModelCallError("Fake", "down")})
    with caplog.at_level(logging.INFO, logger="reliaprompt.audit"):
        await TestOrchestrator().run_tests("P", [case], [runner], runs_per_test=3, job_id="j9")

    records = _records(caplog)
    assert len(records) == 3
    assert {r["run"] for r in records} == {1, 2, 3}
    assert all(r["ok"] is False and r["error"] == "[Fake] down" for r in records)
    assert all(r["job_id"] == "j9" and r["model"] == "A" for r in records)
