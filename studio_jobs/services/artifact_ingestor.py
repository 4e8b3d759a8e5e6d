from __future__ import annotations

import base64
import binascii
import hashlib
import logging
import os
import tempfile
import uuid
from pathlib import Path
from typing import Optional

import httpx

from studio_jobs.config import settings
from studio_jobs.domain.errors import IngestionFailed
from studio_jobs.domain.media import ext_for_content_type, is_known_image, sniff_image_type
from studio_jobs.domain.models import Artifact
from studio_jobs.services.blob_store import BlobKey, BlobStore

logger = logging.getLogger("artifact_ingestor")

_HEAD_BYTES = 16


def _header_content_type(resp: httpx.Response) -> str:
    return (resp.headers.get("content-type") or "").split(";")[0].strip().lower()


def _resolve_content_type(head: bytes, header_ct: str, fallback: str) -> str:
    # Magic bytes win for images; the header is only trusted for non-image media.
    if is_known_image(head):
        return sniff_image_type(head)[0]
    if header_ct and not header_ct.startswith("image/") and header_ct != "application/octet-stream":
        return header_ct
    if fallback.startswith("image/"):
        return sniff_image_type(head)[0]
    return header_ct or fallback


class ArtifactIngestor:
    """
    Turns provider output into a persisted Artifact.

      - ingest_bytes: raw bytes -> sniff format -> blob store
      - ingest_remote: fetch once -> blob store; falls back to the remote URL verbatim
      - ingest_data_url: base64 data URLs returned by some image providers
    """

    def __init__(
        self,
        blob_store: BlobStore,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        max_bytes: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
    ) -> None:
        self.blob_store = blob_store
        self.transport = transport
        self.max_bytes = int(max_bytes or settings.INGEST_MAX_BYTES)
        self.timeout_seconds = float(timeout_seconds or settings.INGEST_TIMEOUT_SECONDS)

    async def ingest_bytes(
        self,
        data: bytes,
        *,
        owner: Optional[str] = None,
        job_id: Optional[str] = None,
        width: Optional[int] = None,
        height: Optional[int] = None,
        filename_stem: Optional[str] = None,
    ) -> Artifact:
        if not data:
            raise IngestionFailed("artifact payload is empty")

        content_type, ext = sniff_image_type(data)
        artifact_id = str(uuid.uuid4())
        filename = f"{filename_stem or artifact_id}.{ext}"
        sha256_hex = hashlib.sha256(data).hexdigest()
        key = BlobKey(
            artifact_id=artifact_id,
            owner=owner,
            job_id=job_id,
            filename=filename,
            width=width,
            height=height,
            sha256=sha256_hex,
        )

        try:
            stored = await self.blob_store.put(data, content_type, key)
        except Exception as e:
            logger.exception("artifact_persist_failed", extra={"job_id": job_id, "blob_store": self.blob_store.name})
            raise IngestionFailed(f"artifact persistence failed: {e}") from e

        logger.info(
            "artifact_ingested",
            extra={"job_id": job_id, "artifact_id": artifact_id, "content_type": content_type, "size_bytes": len(data)},
        )
        return Artifact(
            id=artifact_id,
            job_id=job_id,
            owner=owner,
            content_type=content_type,
            width=width,
            height=height,
            size_bytes=len(data),
            url=stored.url,
            storage_ref=stored.storage_ref,
            filename=filename,
            sha256=sha256_hex,
        )

    async def ingest_data_url(
        self,
        data_url: str,
        *,
        owner: Optional[str] = None,
        job_id: Optional[str] = None,
        width: Optional[int] = None,
        height: Optional[int] = None,
        filename_stem: Optional[str] = None,
    ) -> Artifact:
        header, sep, payload = (data_url or "").partition(",")
        if not sep or not header.startswith("data:") or ";base64" not in header:
            raise IngestionFailed("unsupported data url")
        try:
            data = base64.b64decode(payload, validate=False)
        except (binascii.Error, ValueError) as e:
            raise IngestionFailed(f"invalid base64 payload: {e}") from e
        return await self.ingest_bytes(
            data, owner=owner, job_id=job_id, width=width, height=height, filename_stem=filename_stem
        )

    async def ingest_remote(
        self,
        url: Optional[str],
        *,
        owner: Optional[str] = None,
        job_id: Optional[str] = None,
        width: Optional[int] = None,
        height: Optional[int] = None,
        filename_stem: Optional[str] = None,
        fallback_content_type: str = "video/mp4",
    ) -> Artifact:
        """
        Fetch a provider-hosted artifact once and persist it.

        Any failure after a usable URL is known (download, size cap, blob store)
        returns an artifact that points at the remote URL verbatim.
        """
        src = (url or "").strip()
        if not src:
            raise IngestionFailed("provider returned no usable result url")
        if src.startswith("data:"):
            return await self.ingest_data_url(
                src, owner=owner, job_id=job_id, width=width, height=height, filename_stem=filename_stem
            )

        artifact_id = str(uuid.uuid4())
        tmp_path: Optional[str] = None
        try:
            fd, tmp_path = tempfile.mkstemp(prefix="studio_artifact_")
            os.close(fd)

            h = hashlib.sha256()
            size_bytes = 0
            head = b""
            header_ct = ""

            timeout = httpx.Timeout(connect=30.0, read=self.timeout_seconds, write=30.0, pool=30.0)
            async with httpx.AsyncClient(timeout=timeout, follow_redirects=True, transport=self.transport) as client:
                async with client.stream("GET", src) as resp:
                    resp.raise_for_status()
                    header_ct = _header_content_type(resp)
                    with open(tmp_path, "wb") as f:
                        async for chunk in resp.aiter_bytes(chunk_size=1024 * 1024):
                            if not chunk:
                                continue
                            if len(head) < _HEAD_BYTES:
                                head += chunk[: _HEAD_BYTES - len(head)]
                            size_bytes += len(chunk)
                            if size_bytes > self.max_bytes:
                                raise IngestionFailed(f"artifact exceeds {self.max_bytes} bytes")
                            f.write(chunk)
                            h.update(chunk)

            if size_bytes <= 0:
                raise IngestionFailed("downloaded artifact is empty")

            content_type = _resolve_content_type(head, header_ct, fallback_content_type)
            filename = f"{filename_stem or artifact_id}.{ext_for_content_type(content_type)}"
            sha256_hex = h.hexdigest()
            key = BlobKey(
                artifact_id=artifact_id,
                owner=owner,
                job_id=job_id,
                filename=filename,
                width=width,
                height=height,
                sha256=sha256_hex,
            )
            stored = await self.blob_store.put_file(Path(tmp_path), content_type, key)

            logger.info(
                "artifact_ingested",
                extra={"job_id": job_id, "artifact_id": artifact_id, "content_type": content_type, "size_bytes": size_bytes},
            )
            return Artifact(
                id=artifact_id,
                job_id=job_id,
                owner=owner,
                content_type=content_type,
                width=width,
                height=height,
                size_bytes=size_bytes,
                url=stored.url,
                storage_ref=stored.storage_ref,
                filename=filename,
                sha256=sha256_hex,
            )
        except Exception as e:
            logger.warning(
                "artifact_ingest_fallback_remote_url",
                extra={"job_id": job_id, "url": src[:200], "error": str(e)},
            )
            ext = ext_for_content_type(fallback_content_type)
            return Artifact(
                id=artifact_id,
                job_id=job_id,
                owner=owner,
                content_type=fallback_content_type,
                width=width,
                height=height,
                size_bytes=None,
                url=src,
                storage_ref="remote",
                filename=f"{filename_stem or artifact_id}.{ext}",
            )
        finally:
            if tmp_path and os.path.exists(tmp_path):
                try:
                    os.remove(tmp_path)
                except OSError:
                    logger.warning("artifact_tmp_cleanup_failed", extra={"path": tmp_path})
