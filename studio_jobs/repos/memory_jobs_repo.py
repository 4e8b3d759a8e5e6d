from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from studio_jobs.domain.enums import JobStatus
from studio_jobs.domain.errors import ValidationError
from studio_jobs.domain.models import Job, JobProgress, JobTiming, utcnow
from studio_jobs.repos.base import JobPatch, JobQuery


def apply_patch(job: Job, patch: JobPatch) -> Job:
    data = job.model_copy(deep=True)
    if patch.status is not None:
        data.status = JobStatus(patch.status)
    if patch.progress is not None and patch.progress.percentage >= data.progress.percentage:
        data.progress = patch.progress.model_copy()
    if patch.results is not None:
        data.results = [r.model_copy(deep=True) for r in patch.results]
    if patch.clear_error:
        data.error = None
    if patch.error is not None:
        data.error = patch.error.model_copy(deep=True)
    if patch.provider_task_id is not None:
        data.provider_task_id = patch.provider_task_id
    if patch.started_at is not None:
        data.timing.started_at = patch.started_at
    if patch.completed_at is not None:
        data.timing.completed_at = patch.completed_at
    if patch.metadata:
        data.metadata = {**data.metadata, **patch.metadata}
    data.updated_at = utcnow()
    return data


class InMemoryJobsRepo:
    """
    Process-local job store with the same conditional-write semantics as the
    Postgres repo. Used for local development and tests; not durable.
    """

    def __init__(self) -> None:
        self._jobs: Dict[str, Job] = {}
        self._lock = asyncio.Lock()

    async def create(self, job: Job) -> Job:
        async with self._lock:
            if job.id in self._jobs:
                raise ValidationError(f"job already exists: {job.id}")
            self._jobs[job.id] = job.model_copy(deep=True)
            return job.model_copy(deep=True)

    async def get(self, job_id: str) -> Optional[Job]:
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    async def update(
        self,
        job_id: str,
        patch: JobPatch,
        *,
        expect_status: Optional[Iterable[JobStatus]] = None,
    ) -> Optional[Job]:
        async with self._lock:
            current = self._jobs.get(job_id)
            if current is None:
                return None
            if expect_status is not None and current.status not in set(expect_status):
                return None
            updated = apply_patch(current, patch)
            self._jobs[job_id] = updated
            return updated.model_copy(deep=True)

    async def claim_retry(self, job_id: str, *, queued_at: datetime) -> Optional[Job]:
        async with self._lock:
            current = self._jobs.get(job_id)
            if current is None or current.status != JobStatus.failed:
                return None
            if current.retry_count >= current.max_retries:
                return None
            updated = current.model_copy(deep=True)
            updated.status = JobStatus.queued
            updated.progress = JobProgress(percentage=0, stage="queued")
            updated.error = None
            updated.results = []
            updated.provider_task_id = None
            updated.timing = JobTiming(queued_at=queued_at)
            updated.retry_count = current.retry_count + 1
            updated.updated_at = utcnow()
            self._jobs[job_id] = updated
            return updated.model_copy(deep=True)

    async def query(self, q: JobQuery) -> List[Job]:
        rows = [
            j
            for j in self._jobs.values()
            if (q.owner is None or j.owner == q.owner)
            and (q.kind is None or j.kind == q.kind)
            and (q.status is None or j.status == q.status)
        ]
        rows.sort(key=lambda j: j.created_at, reverse=True)
        return [j.model_copy(deep=True) for j in rows[q.offset : q.offset + q.limit]]
