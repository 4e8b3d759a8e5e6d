from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status

from studio_jobs.api.deps import get_current_user_id, get_orchestrator, http_error
from studio_jobs.domain.enums import JobKind, JobStatus
from studio_jobs.domain.errors import StudioError
from studio_jobs.domain.models import JobCreateRequest, JobSubmitResponse, JobView
from studio_jobs.services.job_orchestrator import JobOrchestrator

logger = logging.getLogger("jobs_routes")

router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.post("", status_code=status.HTTP_202_ACCEPTED, response_model=JobSubmitResponse)
async def submit_job(
    req: JobCreateRequest,
    user_id: str = Depends(get_current_user_id),
    orch: JobOrchestrator = Depends(get_orchestrator),
) -> JobSubmitResponse:
    try:
        job = await orch.submit(req.kind, req.parameters, user_id, max_retries=req.max_retries)
    except StudioError as e:
        raise http_error(e)
    return JobSubmitResponse(job_id=job.id, status=job.status)


@router.get("", response_model=List[JobView])
async def list_jobs(
    kind: Optional[JobKind] = None,
    job_status: Optional[JobStatus] = Query(default=None, alias="status"),
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    user_id: str = Depends(get_current_user_id),
    orch: JobOrchestrator = Depends(get_orchestrator),
) -> List[JobView]:
    """Caller's generation history, newest first."""
    try:
        return await orch.list_jobs(user_id, kind=kind, status=job_status, limit=limit, offset=offset)
    except StudioError as e:
        raise http_error(e)


@router.get("/{job_id}", response_model=JobView)
async def get_job(
    job_id: str,
    user_id: str = Depends(get_current_user_id),
    orch: JobOrchestrator = Depends(get_orchestrator),
) -> JobView:
    try:
        return await orch.get_status(job_id, user_id)
    except StudioError as e:
        raise http_error(e)


@router.post("/{job_id}/cancel", response_model=JobView)
async def cancel_job(
    job_id: str,
    user_id: str = Depends(get_current_user_id),
    orch: JobOrchestrator = Depends(get_orchestrator),
) -> JobView:
    try:
        job = await orch.cancel(job_id, user_id)
    except StudioError as e:
        raise http_error(e)
    return JobView.from_job(job)


@router.post("/{job_id}/retry", status_code=status.HTTP_202_ACCEPTED, response_model=JobView)
async def retry_job(
    job_id: str,
    user_id: str = Depends(get_current_user_id),
    orch: JobOrchestrator = Depends(get_orchestrator),
) -> JobView:
    try:
        job = await orch.retry(job_id, user_id)
    except StudioError as e:
        raise http_error(e)
    logger.info("job_retry_requested", extra={"job_id": job_id, "retry_count": job.retry_count})
    return JobView.from_job(job)
