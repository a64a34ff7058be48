# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Structured audit logging for model calls."""
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Optional

logger = logging.getLogger("reliaprompt.audit")


@dataclass
class ModelCallAuditEntry:
    """One model call audit record.

    Emitted as structured JSON to the ``reliaprompt.audit`` logger at INFO level.
    """
    timestamp: float = field(default_factory=time.time)
    job_id: Optional[str] = None
    model: str = ""
    test_case_id: str = ""
    run_number: int = 0
    duration_ms: int = 0
    ok: bool = True
    error: Optional[str] = None

    def emit(self) -> None:
        """Emit this entry as a structured JSON log line."""
        if not logger.isEnabledFor(logging.INFO):
            return
        record = {
            "event": "model_call",
            "ts": self.timestamp,
            "job_id": self.job_id,
            "model": self.model,
            "test_case_id": self.test_case_id,
            "run": self.run_number,
            "duration_ms": self.duration_ms,
            "ok": self.ok,
        }
        if self.error:
            record["error"] = self.error[:200]
        logger.info(json.dumps(record, ensure_ascii=False))
