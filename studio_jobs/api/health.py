from __future__ import annotations

from fastapi import APIRouter

from studio_jobs.config import settings

router = APIRouter(tags=["health"])


@router.get("/health")
async def health():
    return {"status": "ok", "service": settings.SERVICE_NAME}
