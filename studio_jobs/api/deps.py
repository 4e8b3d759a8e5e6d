from __future__ import annotations

from uuid import UUID

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from studio_jobs.domain.errors import (
    Forbidden,
    InvalidTransition,
    JobNotFound,
    PollTimeout,
    StudioError,
    ValidationError,
)
from studio_jobs.security import decode_access_jwt
from studio_jobs.services.blob_store import BlobStore
from studio_jobs.services.job_orchestrator import JobOrchestrator
from studio_jobs.services.notifier import Notifier
from studio_jobs.services.providers.registry import ProviderRegistry

bearer = HTTPBearer(auto_error=False)


def get_current_claims(creds: HTTPAuthorizationCredentials = Depends(bearer)) -> dict:
    if not creds or not creds.credentials:
        raise HTTPException(status_code=401, detail="missing_token")
    try:
        return decode_access_jwt(creds.credentials)
    except Exception:
        raise HTTPException(status_code=401, detail="invalid_token")


async def get_current_user_id(
    request: Request,
    claims: dict = Depends(get_current_claims),
) -> str:
    """
    USER JWT:
      - use claims.sub (UUID)

    SERVICE token:
      - REQUIRE header X-Actor-User-Id (UUID)
    """
    is_service = bool(claims.get("is_service")) or (claims.get("token_type") == "service")

    if is_service:
        actor = (request.headers.get("X-Actor-User-Id") or "").strip()
        if not actor:
            raise HTTPException(status_code=401, detail="missing_actor_user_id")
        try:
            return str(UUID(actor))
        except ValueError:
            raise HTTPException(status_code=401, detail="invalid_actor_user_id")

    sub = claims.get("sub")
    if not sub:
        raise HTTPException(status_code=401, detail="missing_sub")
    try:
        return str(UUID(str(sub)))
    except ValueError:
        raise HTTPException(status_code=401, detail="invalid_sub")


def get_orchestrator(request: Request) -> JobOrchestrator:
    return request.app.state.orchestrator


def get_notifier(request: Request) -> Notifier:
    return request.app.state.notifier


def get_registry(request: Request) -> ProviderRegistry:
    return request.app.state.registry


def get_blob_store(request: Request) -> BlobStore:
    return request.app.state.blob_store


def http_error(e: StudioError) -> HTTPException:
    if isinstance(e, JobNotFound):
        return HTTPException(status_code=404, detail="Job not found")
    if isinstance(e, Forbidden):
        return HTTPException(status_code=403, detail=e.message)
    if isinstance(e, (ValidationError, InvalidTransition)):
        return HTTPException(status_code=400, detail={"code": e.error_code, "message": e.message})
    if isinstance(e, PollTimeout):
        return HTTPException(status_code=504, detail=e.message)
    return HTTPException(status_code=500, detail=e.message)
