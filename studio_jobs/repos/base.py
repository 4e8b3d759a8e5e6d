from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Protocol

from studio_jobs.domain.enums import JobKind, JobStatus
from studio_jobs.domain.models import Job, JobError, JobProgress, ResultItem


@dataclass
class JobPatch:
    """
    Partial update for a job record.

    Merge rules (both stores apply them identically):
      - progress only replaces the stored value when its percentage is >= the stored one
      - metadata is merged key by key
      - clear_error drops a stored error
    """

    status: Optional[JobStatus] = None
    progress: Optional[JobProgress] = None
    results: Optional[List[ResultItem]] = None
    error: Optional[JobError] = None
    clear_error: bool = False
    provider_task_id: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    metadata: Optional[Dict[str, Any]] = None


@dataclass
class JobQuery:
    owner: Optional[str] = None
    kind: Optional[JobKind] = None
    status: Optional[JobStatus] = None
    limit: int = 20
    offset: int = 0


class JobStore(Protocol):
    async def create(self, job: Job) -> Job:
        ...

    async def get(self, job_id: str) -> Optional[Job]:
        ...

    async def update(
        self,
        job_id: str,
        patch: JobPatch,
        *,
        expect_status: Optional[Iterable[JobStatus]] = None,
    ) -> Optional[Job]:
        """
        Apply `patch` atomically. When `expect_status` is given the write only
        happens if the stored status is one of them. Returns the updated job, or
        None when the job is missing or the condition did not hold.
        """
        ...

    async def claim_retry(self, job_id: str, *, queued_at: datetime) -> Optional[Job]:
        """
        Reset a failed job for another attempt if its retry budget allows it.
        Returns None when the job is not failed or the budget is spent.
        """
        ...

    async def query(self, q: JobQuery) -> List[Job]:
        ...
