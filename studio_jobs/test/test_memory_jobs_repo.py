import uuid
from datetime import timedelta

import pytest

from studio_jobs.domain.enums import JobKind, JobStatus
from studio_jobs.domain.models import Job, JobError, JobProgress, utcnow
from studio_jobs.repos.base import JobPatch, JobQuery
from studio_jobs.repos.memory_jobs_repo import InMemoryJobsRepo


def new_job(owner="owner-a", kind=JobKind.image, **kw):
    return Job(id=str(uuid.uuid4()), owner=owner, kind=kind, parameters={"prompt": "fox"}, **kw)


@pytest.mark.asyncio
async def test_conditional_update_refuses_unexpected_status():
    """A write guarded on `processing` does nothing once the job is cancelled"""
    repo = InMemoryJobsRepo()
    job = await repo.create(new_job())

    await repo.update(job.id, JobPatch(status=JobStatus.cancelled))
    res = await repo.update(
        job.id,
        JobPatch(status=JobStatus.completed),
        expect_status=[JobStatus.processing],
    )

    assert res is None
    assert (await repo.get(job.id)).status == JobStatus.cancelled


@pytest.mark.asyncio
async def test_progress_never_moves_backwards():
    repo = InMemoryJobsRepo()
    job = await repo.create(new_job())

    await repo.update(job.id, JobPatch(progress=JobProgress(percentage=75, stage="generated")))
    await repo.update(job.id, JobPatch(progress=JobProgress(percentage=25, stage="submitted")))

    stored = await repo.get(job.id)
    assert stored.progress.percentage == 75
    assert stored.progress.stage == "generated"


@pytest.mark.asyncio
async def test_metadata_is_merged():
    repo = InMemoryJobsRepo()
    job = await repo.create(new_job(metadata={"image_provider": "fal"}))

    await repo.update(job.id, JobPatch(metadata={"portrait_url": "https://cdn/x.png"}))

    stored = await repo.get(job.id)
    assert stored.metadata == {"image_provider": "fal", "portrait_url": "https://cdn/x.png"}


@pytest.mark.asyncio
async def test_returned_jobs_are_copies():
    repo = InMemoryJobsRepo()
    job = await repo.create(new_job())

    fetched = await repo.get(job.id)
    fetched.status = JobStatus.completed

    assert (await repo.get(job.id)).status == JobStatus.pending


@pytest.mark.asyncio
async def test_claim_retry_resets_failed_job():
    repo = InMemoryJobsRepo()
    job = await repo.create(new_job(max_retries=1))
    await repo.update(
        job.id,
        JobPatch(
            status=JobStatus.failed,
            progress=JobProgress(percentage=25, stage="submitted"),
            error=JobError(message="quota exceeded", code="GENERATION_FAILED"),
            provider_task_id="t-1",
            completed_at=utcnow(),
        ),
    )

    claimed = await repo.claim_retry(job.id, queued_at=utcnow())

    assert claimed.status == JobStatus.queued
    assert claimed.retry_count == 1
    assert claimed.progress.percentage == 0
    assert claimed.error is None
    assert claimed.provider_task_id is None
    assert claimed.timing.completed_at is None


@pytest.mark.asyncio
async def test_claim_retry_respects_budget_and_status():
    repo = InMemoryJobsRepo()
    job = await repo.create(new_job(max_retries=0))

    assert await repo.claim_retry(job.id, queued_at=utcnow()) is None  # still pending

    await repo.update(job.id, JobPatch(status=JobStatus.failed))
    assert await repo.claim_retry(job.id, queued_at=utcnow()) is None  # budget spent


@pytest.mark.asyncio
async def test_query_filters_and_orders_newest_first():
    repo = InMemoryJobsRepo()
    now = utcnow()
    older = await repo.create(new_job(created_at=now - timedelta(minutes=5)))
    newer = await repo.create(new_job(created_at=now))
    await repo.create(new_job(owner="owner-b"))
    await repo.create(new_job(kind=JobKind.video))

    rows = await repo.query(JobQuery(owner="owner-a", kind=JobKind.image))

    assert [j.id for j in rows] == [newer.id, older.id]
    assert len(await repo.query(JobQuery(owner="owner-a", limit=1))) == 1
