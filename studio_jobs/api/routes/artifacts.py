from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Response

from studio_jobs.api.deps import get_blob_store
from studio_jobs.services.blob_store import BlobStore

router = APIRouter(prefix="/artifacts", tags=["artifacts"])


@router.get("/{artifact_id}")
async def get_artifact(artifact_id: str, blob_store: BlobStore = Depends(get_blob_store)) -> Response:
    """
    Serve artifact bytes kept by the database / in-memory blob stores.

    Unauthenticated on purpose: providers fetch intermediate portraits from here.
    Azure-backed artifacts are served by their SAS URLs instead.
    """
    blob = await blob_store.get(artifact_id)
    if not blob:
        raise HTTPException(status_code=404, detail="Artifact not found")

    headers = {"Cache-Control": "private, max-age=3600"}
    if blob.get("filename"):
        headers["Content-Disposition"] = f'inline; filename="{blob["filename"]}"'
    return Response(content=blob["data"], media_type=blob.get("content_type") or "application/octet-stream", headers=headers)
