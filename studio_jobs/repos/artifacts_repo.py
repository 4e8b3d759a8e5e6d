from __future__ import annotations

import uuid
from typing import Any, Dict, Optional

import asyncpg


class ArtifactsRepo:
    """Binary artifacts stored inline in `generation_artifacts` (bytea)."""

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def add_artifact(
        self,
        *,
        artifact_id: str,
        data: bytes,
        content_type: str,
        job_id: Optional[str] = None,
        owner: Optional[str] = None,
        filename: Optional[str] = None,
        width: Optional[int] = None,
        height: Optional[int] = None,
        sha256: Optional[str] = None,
    ) -> str:
        sql = """
        INSERT INTO generation_artifacts (
          id, job_id, owner, content_type, filename, width, height, size_bytes, sha256, data, created_at
        )
        VALUES ($1::uuid, $2::uuid, $3, $4, $5, $6, $7, $8, $9, $10, now())
        RETURNING id::text
        """
        async with self.pool.acquire() as conn:
            return await conn.fetchval(
                sql,
                artifact_id,
                job_id,
                owner,
                content_type,
                filename,
                width,
                height,
                len(data),
                sha256,
                data,
            )

    async def get_artifact_by_id(self, artifact_id: str) -> Optional[Dict[str, Any]]:
        try:
            uuid.UUID(str(artifact_id))
        except (TypeError, ValueError):
            return None
        sql = """
        SELECT id::text AS id, job_id::text AS job_id, owner, content_type, filename,
               width, height, size_bytes, sha256, data, created_at
        FROM generation_artifacts
        WHERE id = $1::uuid
        """
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(sql, artifact_id)
        return dict(row) if row else None
