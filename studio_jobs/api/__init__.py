from __future__ import annotations

from fastapi import APIRouter

from studio_jobs.api.health import router as health_router
from studio_jobs.api.routes.artifacts import router as artifacts_router
from studio_jobs.api.routes.events import router as events_router
from studio_jobs.api.routes.jobs import router as jobs_router
from studio_jobs.api.routes.providers import router as providers_router


def build_router() -> APIRouter:
    r = APIRouter()
    r.include_router(health_router)
    r.include_router(jobs_router)
    r.include_router(providers_router)
    r.include_router(artifacts_router)
    r.include_router(events_router)
    return r
