# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""SQLite-backed job store: prompts and job history survive restarts."""
import logging
import os
import time
import uuid
from typing import Any, Dict, List, Optional

import aiosqlite

from reliaprompt.models import ImprovementUpdate, PromptVersion, TestResults
from reliaprompt.store.base import JobStore

logger = logging.getLogger(__name__)

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS prompts (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    content TEXT NOT NULL,
    version INTEGER NOT NULL DEFAULT 1,
    parent_id TEXT REFERENCES prompts(id),
    created_at REAL
);

CREATE TABLE IF NOT EXISTS test_jobs (
    job_id TEXT PRIMARY KEY,
    status TEXT,
    completed_tests INTEGER DEFAULT 0,
    total_tests INTEGER DEFAULT 0,
    results TEXT,
    error TEXT,
    updated_at REAL
);

CREATE TABLE IF NOT EXISTS improvement_jobs (
    job_id TEXT PRIMARY KEY,
    status TEXT,
    current_iteration INTEGER DEFAULT 0,
    original_score INTEGER,
    best_score INTEGER,
    best_prompt_content TEXT,
    best_prompt_version_id TEXT,
    error TEXT,
    updated_at REAL
);

CREATE TABLE IF NOT EXISTS improvement_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id TEXT REFERENCES improvement_jobs(job_id),
    line TEXT,
    created_at REAL
);

CREATE INDEX IF NOT EXISTS idx_improvement_logs_job ON improvement_logs(job_id, id);
"""

# Columns of improvement_jobs that ImprovementUpdate may set
_IMPROVEMENT_COLUMNS = (
    "status", "current_iteration", "original_score", "best_score",
    "best_prompt_content", "best_prompt_version_id", "error",
)


class SQLiteJobStore(JobStore):
    """Async SQLite job store."""

    def __init__(self, db_path: str = "~/.reliaprompt/reliaprompt.db") -> None:
        self._db_path = os.path.expanduser(db_path)
        self._db: Optional[aiosqlite.Connection] = None

    async def init(self) -> None:
        """Open database and create tables."""
        directory = os.path.dirname(self._db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        self._db = await aiosqlite.connect(self._db_path)
        await self._db.executescript(_SCHEMA)
        await self._db.commit()

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None

    async def _ensure_db(self) -> aiosqlite.Connection:
        if self._db is None:
            await self.init()
        return self._db

    # ── Prompts ───────────────────────────────────────────────

    async def get_prompt(self, prompt_id: str) -> Optional[PromptVersion]:
        db = await self._ensure_db()
        cursor = await db.execute(
            "SELECT id, name, content, version, parent_id, created_at FROM prompts WHERE id = ?",
            (prompt_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return PromptVersion(
            id=row[0], name=row[1], content=row[2],
            version=row[3], parent_id=row[4], created_at=row[5],
        )

    async def create_prompt(
        self,
        name: str,
        content: str,
        parent_id: Optional[str] = None,
    ) -> PromptVersion:
        db = await self._ensure_db()
        version = 1
        if parent_id is not None:
            parent = await self.get_prompt(parent_id)
            if parent is not None:
                version = parent.version + 1
        prompt = PromptVersion(
            id=uuid.uuid4().hex[:12],
            name=name,
            content=content,
            version=version,
            parent_id=parent_id,
        )
        await db.execute(
            "INSERT INTO prompts (id, name, content, version, parent_id, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (prompt.id, prompt.name, prompt.content, prompt.version, prompt.parent_id, prompt.created_at),
        )
        await db.commit()
        return prompt

    async def list_versions(self, name: str) -> List[PromptVersion]:
        """All stored versions of a prompt name, oldest first."""
        db = await self._ensure_db()
        cursor = await db.execute(
            "SELECT id, name, content, version, parent_id, created_at FROM prompts "
            "WHERE name = ? ORDER BY version ASC",
            (name,),
        )
        rows = await cursor.fetchall()
        return [
            PromptVersion(
                id=r[0], name=r[1], content=r[2],
                version=r[3], parent_id=r[4], created_at=r[5],
            )
            for r in rows
        ]

    # ── Test runs ─────────────────────────────────────────────

    async def on_test_run_progress(self, job_id: str, completed_tests: int, total_tests: int) -> None:
        db = await self._ensure_db()
        await db.execute(
            "INSERT INTO test_jobs (job_id, status, completed_tests, total_tests, updated_at) "
            "VALUES (?, 'running', ?, ?, ?) "
            "ON CONFLICT(job_id) DO UPDATE SET completed_tests = excluded.completed_tests, "
            "total_tests = excluded.total_tests, updated_at = excluded.updated_at",
            (job_id, completed_tests, total_tests, time.time()),
        )
        await db.commit()

    async def on_test_run_complete(self, job_id: str, results: TestResults) -> None:
        db = await self._ensure_db()
        await db.execute(
            "INSERT INTO test_jobs (job_id, status, results, updated_at) "
            "VALUES (?, 'completed', ?, ?) "
            "ON CONFLICT(job_id) DO UPDATE SET status = 'completed', "
            "results = excluded.results, updated_at = excluded.updated_at",
            (job_id, results.model_dump_json(), time.time()),
        )
        await db.commit()

    async def on_test_run_failed(self, job_id: str, error: str) -> None:
        db = await self._ensure_db()
        await db.execute(
            "INSERT INTO test_jobs (job_id, status, error, updated_at) "
            "VALUES (?, 'failed', ?, ?) "
            "ON CONFLICT(job_id) DO UPDATE SET status = 'failed', "
            "error = excluded.error, updated_at = excluded.updated_at",
            (job_id, error, time.time()),
        )
        await db.commit()

    async def get_test_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        db = await self._ensure_db()
        cursor = await db.execute(
            "SELECT status, completed_tests, total_tests, results, error FROM test_jobs WHERE job_id = ?",
            (job_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return {
            "status": row[0],
            "completed_tests": row[1],
            "total_tests": row[2],
            "results": TestResults.model_validate_json(row[3]) if row[3] else None,
            "error": row[4],
        }

    # ── Improvement jobs ──────────────────────────────────────

    async def on_improvement_update(self, job_id: str, update: ImprovementUpdate) -> None:
        db = await self._ensure_db()
        now = time.time()
        await db.execute(
            "INSERT OR IGNORE INTO improvement_jobs (job_id, updated_at) VALUES (?, ?)",
            (job_id, now),
        )

        fields = update.model_dump(mode="json", exclude_none=True, exclude={"append_log_line"})
        columns = [c for c in _IMPROVEMENT_COLUMNS if c in fields]
        if columns:
            assignments = ", ".join("{} = ?".format(c) for c in columns)
            await db.execute(
                "UPDATE improvement_jobs SET {}, updated_at = ? WHERE job_id = ?".format(assignments),
                [fields[c] for c in columns] + [now, job_id],
            )

        if update.append_log_line is not None:
            await db.execute(
                "INSERT INTO improvement_logs (job_id, line, created_at) VALUES (?, ?, ?)",
                (job_id, update.append_log_line, now),
            )
        await db.commit()

    async def get_improvement_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        db = await self._ensure_db()
        cursor = await db.execute(
            "SELECT status, current_iteration, original_score, best_score, best_prompt_content, "
            "best_prompt_version_id, error FROM improvement_jobs WHERE job_id = ?",
            (job_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        cursor = await db.execute(
            "SELECT line FROM improvement_logs WHERE job_id = ? ORDER BY id ASC",
            (job_id,),
        )
        log = [r[0] for r in await cursor.fetchall()]
        return {
            "status": row[0],
            "current_iteration": row[1],
            "original_score": row[2],
            "best_score": row[3],
            "best_prompt_content": row[4],
            "best_prompt_version_id": row[5],
            "error": row[6],
            "log": log,
        }
