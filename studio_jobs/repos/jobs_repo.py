from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, List, Optional

import asyncpg

from studio_jobs.domain.enums import JobStatus
from studio_jobs.domain.models import Job, JobTiming
from studio_jobs.repos.base import JobPatch, JobQuery

logger = logging.getLogger("jobs_repo")

_SCHEMA_PATH = Path(__file__).with_name("schema.sql")

_COLUMNS = """
  id, owner, kind, status, parameters, progress, results, error,
  provider, provider_task_id, queued_at, started_at, completed_at,
  retry_count, max_retries, metadata, created_at, updated_at
"""


def _looks_like_uuid(s: str) -> bool:
    try:
        uuid.UUID(str(s))
        return True
    except (TypeError, ValueError):
        return False


def _json_value(val: Any, default: Any) -> Any:
    if val is None:
        return default
    if isinstance(val, (dict, list)):
        return val
    if isinstance(val, str):
        s = val.strip()
        if not s:
            return default
        return json.loads(s)
    return val


def _dumps(val: Any) -> Optional[str]:
    if val is None:
        return None
    return json.dumps(val, default=str)


def _row_to_job(row: asyncpg.Record) -> Job:
    d = dict(row)
    return Job(
        id=str(d["id"]),
        owner=str(d["owner"]),
        kind=d["kind"],
        status=d["status"],
        parameters=_json_value(d.get("parameters"), {}),
        progress=_json_value(d.get("progress"), {}),
        results=_json_value(d.get("results"), []),
        error=_json_value(d.get("error"), None),
        provider=d.get("provider"),
        provider_task_id=d.get("provider_task_id"),
        timing=JobTiming(
            queued_at=d.get("queued_at"),
            started_at=d.get("started_at"),
            completed_at=d.get("completed_at"),
        ),
        retry_count=int(d.get("retry_count") or 0),
        max_retries=int(d.get("max_retries") or 0),
        metadata=_json_value(d.get("metadata"), {}),
        created_at=d["created_at"],
        updated_at=d["updated_at"],
    )


async def ensure_schema(pool: asyncpg.Pool) -> None:
    sql = _SCHEMA_PATH.read_text(encoding="utf-8")
    async with pool.acquire() as conn:
        await conn.execute(sql)
    logger.info("schema_ready")


class JobsRepo:
    """asyncpg-backed job record store. One row per job in `generation_jobs`."""

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def create(self, job: Job) -> Job:
        sql = f"""
        INSERT INTO generation_jobs (
          id, owner, kind, status, parameters, progress, results, error,
          provider, provider_task_id, queued_at, retry_count, max_retries,
          metadata, created_at, updated_at
        )
        VALUES (
          $1::uuid, $2, $3, $4, $5::jsonb, $6::jsonb, $7::jsonb, $8::jsonb,
          $9, $10, $11, $12, $13, $14::jsonb, $15, $16
        )
        RETURNING {_COLUMNS}
        """
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                sql,
                job.id,
                job.owner,
                job.kind.value,
                job.status.value,
                _dumps(job.parameters),
                _dumps(job.progress.model_dump(mode="json")),
                _dumps([r.model_dump(mode="json") for r in job.results]),
                _dumps(job.error.model_dump(mode="json") if job.error else None),
                job.provider,
                job.provider_task_id,
                job.timing.queued_at,
                job.retry_count,
                job.max_retries,
                _dumps(job.metadata),
                job.created_at,
                job.updated_at,
            )
        return _row_to_job(row)

    async def get(self, job_id: str) -> Optional[Job]:
        if not _looks_like_uuid(job_id):
            return None
        sql = f"SELECT {_COLUMNS} FROM generation_jobs WHERE id = $1::uuid"
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(sql, job_id)
        return _row_to_job(row) if row else None

    async def update(
        self,
        job_id: str,
        patch: JobPatch,
        *,
        expect_status: Optional[Iterable[JobStatus]] = None,
    ) -> Optional[Job]:
        """
        Single-statement conditional update.

        Progress is only replaced when the new percentage is not lower than the
        stored one, so concurrent readers never observe progress going backwards.
        """
        if not _looks_like_uuid(job_id):
            return None

        expected: Optional[List[str]] = None
        if expect_status is not None:
            expected = [JobStatus(s).value for s in expect_status]

        sql = f"""
        UPDATE generation_jobs
        SET status = COALESCE($2, status),
            progress = CASE
              WHEN $3::jsonb IS NOT NULL
               AND ($3::jsonb->>'percentage')::int >= COALESCE((progress->>'percentage')::int, 0)
              THEN $3::jsonb
              ELSE progress
            END,
            results = COALESCE($4::jsonb, results),
            error = COALESCE($5::jsonb, CASE WHEN $6::boolean THEN NULL ELSE error END),
            provider_task_id = COALESCE($7, provider_task_id),
            started_at = COALESCE($8, started_at),
            completed_at = COALESCE($9, completed_at),
            metadata = metadata || COALESCE($10::jsonb, '{{}}'::jsonb),
            updated_at = now()
        WHERE id = $1::uuid
          AND ($11::text[] IS NULL OR status = ANY($11::text[]))
        RETURNING {_COLUMNS}
        """
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                sql,
                job_id,
                JobStatus(patch.status).value if patch.status is not None else None,
                _dumps(patch.progress.model_dump(mode="json")) if patch.progress is not None else None,
                _dumps([r.model_dump(mode="json") for r in patch.results]) if patch.results is not None else None,
                _dumps(patch.error.model_dump(mode="json")) if patch.error is not None else None,
                bool(patch.clear_error),
                patch.provider_task_id,
                patch.started_at,
                patch.completed_at,
                _dumps(patch.metadata) if patch.metadata else None,
                expected,
            )
        return _row_to_job(row) if row else None

    async def claim_retry(self, job_id: str, *, queued_at: datetime) -> Optional[Job]:
        if not _looks_like_uuid(job_id):
            return None
        sql = f"""
        UPDATE generation_jobs
        SET status = 'queued',
            progress = '{{"percentage": 0, "stage": "queued", "eta_seconds": null}}'::jsonb,
            error = NULL,
            results = '[]'::jsonb,
            provider_task_id = NULL,
            queued_at = $2,
            started_at = NULL,
            completed_at = NULL,
            retry_count = retry_count + 1,
            updated_at = now()
        WHERE id = $1::uuid
          AND status = 'failed'
          AND retry_count < max_retries
        RETURNING {_COLUMNS}
        """
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(sql, job_id, queued_at)
        return _row_to_job(row) if row else None

    async def query(self, q: JobQuery) -> List[Job]:
        where: List[str] = []
        args: List[Any] = []
        if q.owner is not None:
            args.append(q.owner)
            where.append(f"owner = ${len(args)}")
        if q.kind is not None:
            args.append(q.kind.value)
            where.append(f"kind = ${len(args)}")
        if q.status is not None:
            args.append(q.status.value)
            where.append(f"status = ${len(args)}")

        args.append(int(q.limit))
        limit_idx = len(args)
        args.append(int(q.offset))
        offset_idx = len(args)

        where_sql = f"WHERE {' AND '.join(where)}" if where else ""
        sql = f"""
        SELECT {_COLUMNS}
        FROM generation_jobs
        {where_sql}
        ORDER BY created_at DESC
        LIMIT ${limit_idx} OFFSET ${offset_idx}
        """
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(sql, *args)
        return [_row_to_job(r) for r in rows]
