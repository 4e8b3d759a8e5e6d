from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

import asyncpg
from azure.storage.blob import BlobSasPermissions, BlobServiceClient, ContentSettings, generate_blob_sas

from studio_jobs.config import settings
from studio_jobs.domain.media import ext_for_content_type
from studio_jobs.repos.artifacts_repo import ArtifactsRepo

logger = logging.getLogger("blob_store")


@dataclass(frozen=True)
class BlobKey:
    artifact_id: str
    owner: Optional[str] = None
    job_id: Optional[str] = None
    filename: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    sha256: Optional[str] = None


@dataclass(frozen=True)
class StoredBlob:
    url: str
    storage_ref: str


class BlobStore(Protocol):
    name: str

    async def put(self, data: bytes, content_type: str, key: BlobKey) -> StoredBlob:
        ...

    async def put_file(self, path: Path, content_type: str, key: BlobKey) -> StoredBlob:
        ...

    async def get(self, artifact_id: str) -> Optional[Dict[str, Any]]:
        """Return {data, content_type, filename} for stores that serve bytes themselves."""
        ...


def _artifact_url(artifact_id: str) -> str:
    return f"{settings.PUBLIC_BASE_URL.rstrip('/')}/artifacts/{artifact_id}"


# -----------------------------
# Azure Blob
# -----------------------------
@dataclass
class SasConfig:
    account_name: str
    account_key: str


class AzureBlobStore:
    """
    Artifacts uploaded to Azure Blob Storage; the returned URL is a read SAS.

    Blob path: <owner>/<job_id>/<artifact_id>.<ext> (or misc/<artifact_id>.<ext>).
    The SDK is synchronous, so uploads run in a worker thread.
    """

    name = "azure"

    def __init__(self, *, connection_string: Optional[str] = None, container: Optional[str] = None) -> None:
        self.connection_string = connection_string or settings.AZURE_STORAGE_CONNECTION_STRING
        self.container = container or settings.AZURE_ARTIFACT_CONTAINER
        self._bsc: Optional[BlobServiceClient] = None
        self._sas_cfg: Optional[SasConfig] = None

    def _get_blob_service(self) -> BlobServiceClient:
        if self._bsc:
            return self._bsc
        if not self.connection_string:
            raise RuntimeError("azure_storage_not_configured: AZURE_STORAGE_CONNECTION_STRING is not set")
        self._bsc = BlobServiceClient.from_connection_string(self.connection_string)
        return self._bsc

    def _get_sas_cfg(self) -> SasConfig:
        if self._sas_cfg:
            return self._sas_cfg
        cred = getattr(self._get_blob_service(), "credential", None)
        account_name = getattr(cred, "account_name", None)
        account_key = getattr(cred, "account_key", None)
        if not account_name or not account_key:
            raise RuntimeError("azure_storage_sas_not_configured: connection string has no account key")
        self._sas_cfg = SasConfig(account_name=str(account_name), account_key=str(account_key))
        return self._sas_cfg

    def _blob_name(self, content_type: str, key: BlobKey) -> str:
        ext = ext_for_content_type(content_type)
        if key.owner and key.job_id:
            return f"{key.owner}/{key.job_id}/{key.artifact_id}.{ext}"
        return f"misc/{key.artifact_id}.{ext}"

    def _sas_url(self, blob: str) -> str:
        cfg = self._get_sas_cfg()
        expiry = datetime.now(timezone.utc) + timedelta(hours=int(settings.AZURE_SAS_EXPIRY_HOURS))
        sas = generate_blob_sas(
            account_name=cfg.account_name,
            container_name=self.container,
            blob_name=blob,
            account_key=cfg.account_key,
            permission=BlobSasPermissions(read=True),
            expiry=expiry,
        )
        return f"https://{cfg.account_name}.blob.core.windows.net/{self.container}/{blob}?{sas}"

    async def put(self, data: bytes, content_type: str, key: BlobKey) -> StoredBlob:
        blob = self._blob_name(content_type, key)
        blob_client = self._get_blob_service().get_blob_client(container=self.container, blob=blob)

        def _upload_sync() -> None:
            blob_client.upload_blob(data, overwrite=True, content_settings=ContentSettings(content_type=content_type))

        await asyncio.to_thread(_upload_sync)
        return StoredBlob(url=self._sas_url(blob), storage_ref=f"az://{self.container}/{blob}")

    async def put_file(self, path: Path, content_type: str, key: BlobKey) -> StoredBlob:
        blob = self._blob_name(content_type, key)
        blob_client = self._get_blob_service().get_blob_client(container=self.container, blob=blob)

        def _upload_sync() -> None:
            with open(path, "rb") as f:
                blob_client.upload_blob(f, overwrite=True, content_settings=ContentSettings(content_type=content_type))

        await asyncio.to_thread(_upload_sync)
        return StoredBlob(url=self._sas_url(blob), storage_ref=f"az://{self.container}/{blob}")

    async def get(self, artifact_id: str) -> Optional[Dict[str, Any]]:
        return None


# -----------------------------
# Postgres (bytea)
# -----------------------------
class DatabaseBlobStore:
    name = "database"

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.artifacts = ArtifactsRepo(pool)

    async def put(self, data: bytes, content_type: str, key: BlobKey) -> StoredBlob:
        artifact_id = await self.artifacts.add_artifact(
            artifact_id=key.artifact_id,
            data=data,
            content_type=content_type,
            job_id=key.job_id,
            owner=key.owner,
            filename=key.filename,
            width=key.width,
            height=key.height,
            sha256=key.sha256,
        )
        return StoredBlob(url=_artifact_url(artifact_id), storage_ref=f"db://{artifact_id}")

    async def put_file(self, path: Path, content_type: str, key: BlobKey) -> StoredBlob:
        data = await asyncio.to_thread(path.read_bytes)
        return await self.put(data, content_type, key)

    async def get(self, artifact_id: str) -> Optional[Dict[str, Any]]:
        row = await self.artifacts.get_artifact_by_id(artifact_id)
        if not row:
            return None
        return {"data": bytes(row["data"]), "content_type": row["content_type"], "filename": row.get("filename")}


# -----------------------------
# In-process
# -----------------------------
class InMemoryBlobStore:
    name = "memory"

    def __init__(self) -> None:
        self._blobs: Dict[str, Dict[str, Any]] = {}

    async def put(self, data: bytes, content_type: str, key: BlobKey) -> StoredBlob:
        self._blobs[key.artifact_id] = {"data": bytes(data), "content_type": content_type, "filename": key.filename}
        return StoredBlob(url=_artifact_url(key.artifact_id), storage_ref=f"mem://{key.artifact_id}")

    async def put_file(self, path: Path, content_type: str, key: BlobKey) -> StoredBlob:
        data = await asyncio.to_thread(path.read_bytes)
        return await self.put(data, content_type, key)

    async def get(self, artifact_id: str) -> Optional[Dict[str, Any]]:
        return self._blobs.get(artifact_id)
