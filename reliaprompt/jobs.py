# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""In-memory job registry with TTL eviction of finished jobs."""
import time
import uuid
from typing import Dict, Optional, Union

from reliaprompt.config import DEFAULT_JOB_TTL_SECONDS, DEFAULT_MAX_JOBS
from reliaprompt.models import ImprovementProgress, JobStatus, TestRunProgress

Progress = Union[TestRunProgress, ImprovementProgress]


class JobRegistry:
    """Holds progress records for test runs and improvement jobs.

    Each record has a single writer (the job that owns it) and any number
    of readers. Finished jobs are evicted after ``ttl_seconds`` or, oldest
    first, when more than ``max_jobs`` are held. Running jobs are never
    evicted.
    """

    def __init__(
        self,
        max_jobs: int = DEFAULT_MAX_JOBS,
        ttl_seconds: int = DEFAULT_JOB_TTL_SECONDS,
    ) -> None:
        self._jobs: Dict[str, Progress] = {}
        self._max_jobs = max_jobs
        self._ttl = ttl_seconds

    def __len__(self) -> int:
        return len(self._jobs)

    def __contains__(self, job_id: str) -> bool:
        return job_id in self._jobs

    def cleanup(self) -> None:
        """Remove expired finished jobs and enforce the max limit."""
        now = time.time()
        expired = [
            job_id for job_id, job in self._jobs.items()
            if job.status.is_terminal and now - job.updated_at > self._ttl
        ]
        for job_id in expired:
            self._jobs.pop(job_id, None)

        overflow = len(self._jobs) - self._max_jobs
        if overflow > 0:
            finished = sorted(
                (job for job in self._jobs.values() if job.status.is_terminal),
                key=lambda j: j.updated_at,
            )
            for job in finished[:overflow]:
                self._jobs.pop(job.job_id, None)

    def create_test_job(self, total_tests: int) -> TestRunProgress:
        self.cleanup()
        job = TestRunProgress(job_id=uuid.uuid4().hex, total_tests=total_tests)
        self._jobs[job.job_id] = job
        return job

    def create_improvement_job(
        self,
        max_iterations: int,
        prompt_id: Optional[str] = None,
    ) -> ImprovementProgress:
        self.cleanup()
        job = ImprovementProgress(
            job_id=uuid.uuid4().hex,
            prompt_id=prompt_id,
            max_iterations=max_iterations,
        )
        self._jobs[job.job_id] = job
        return job

    def get_test_progress(self, job_id: str) -> Optional[TestRunProgress]:
        job = self._jobs.get(job_id)
        return job if isinstance(job, TestRunProgress) else None

    def get_improvement_progress(self, job_id: str) -> Optional[ImprovementProgress]:
        job = self._jobs.get(job_id)
        return job if isinstance(job, ImprovementProgress) else None

    def touch(self, job_id: str) -> None:
        job = self._jobs.get(job_id)
        if job is not None:
            job.updated_at = time.time()

    def acknowledge(self, job_id: str) -> bool:
        """Drop a finished job. Returns False if unknown or still running."""
        job = self._jobs.get(job_id)
        if job is None or not job.status.is_terminal:
            return False
        del self._jobs[job_id]
        return True

    def running_jobs(self) -> int:
        return sum(1 for job in self._jobs.values() if job.status == JobStatus.RUNNING)
