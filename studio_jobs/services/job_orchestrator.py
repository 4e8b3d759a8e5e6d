from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from studio_jobs.config import settings
from studio_jobs.domain.enums import (
    ACTIVE_STATUSES,
    ErrorCode,
    JobKind,
    JobStatus,
    ProgressStage,
    ProviderState,
)
from studio_jobs.domain.errors import (
    Forbidden,
    GenerationFailed,
    IngestionFailed,
    InvalidTransition,
    JobNotFound,
    PollTimeout,
    StudioError,
    ValidationError,
)
from studio_jobs.domain.media import dimensions_for
from studio_jobs.domain.models import Artifact, Job, JobError, JobProgress, JobTiming, JobView, utcnow
from studio_jobs.domain.state_machine import is_terminal, sources_for
from studio_jobs.domain.validators import parse_parameters, validate_max_retries
from studio_jobs.repos.base import JobPatch, JobQuery, JobStore
from studio_jobs.services.artifact_ingestor import ArtifactIngestor
from studio_jobs.services.notifier import Notifier
from studio_jobs.services.polling import PollOutcomeKind, poll_until_terminal
from studio_jobs.services.providers.base import ProviderClient, ProviderStatus
from studio_jobs.services.providers.registry import ProviderRegistry
from studio_jobs.workers.job_runner import JobTaskRunner

logger = logging.getLogger("job_orchestrator")

# Fixed progress milestones
PCT_STARTING = 10
PCT_SUBMITTED = 25
PCT_INTERMEDIATE = 50
PCT_GENERATED = 75
PCT_INGESTED = 90
PCT_COMPLETED = 100


@dataclass(frozen=True)
class PollPolicy:
    interval_seconds: float
    max_attempts: int


def default_poll_policies() -> Dict[JobKind, PollPolicy]:
    return {
        JobKind.image: PollPolicy(settings.IMAGE_POLL_INTERVAL_SECONDS, settings.IMAGE_POLL_MAX_ATTEMPTS),
        JobKind.avatar: PollPolicy(settings.AVATAR_POLL_INTERVAL_SECONDS, settings.AVATAR_POLL_MAX_ATTEMPTS),
        JobKind.video: PollPolicy(settings.VIDEO_POLL_INTERVAL_SECONDS, settings.VIDEO_POLL_MAX_ATTEMPTS),
    }


class _JobSuperseded(Exception):
    """A conditional write found the job no longer active (cancelled, or gone)."""


def _classify_error(e: BaseException) -> Tuple[str, str, Dict[str, Any]]:
    if isinstance(e, StudioError):
        return e.message, e.error_code, dict(e.details)
    return (str(e) or type(e).__name__), ErrorCode.worker_crash.value, {"exception": type(e).__name__}


class JobOrchestrator:
    """
    Creates generation jobs and drives each one to a terminal state from its
    own detached background task.

    Background task, per job:
      processing (10) -> provider submit (25) -> poll loop -> generated (75)
      -> artifact ingest (90) -> completed (100)

    Text-only avatars run two provider stages: a portrait image (25..50), then
    avatar training on that portrait (50..75).

    Every write made by the task is conditional on the job still being active,
    so a concurrent cancel always wins and the task stops at its next write or poll.
    """

    def __init__(
        self,
        store: JobStore,
        registry: ProviderRegistry,
        ingestor: ArtifactIngestor,
        *,
        notifier: Optional[Notifier] = None,
        poll_policies: Optional[Dict[JobKind, PollPolicy]] = None,
        max_concurrent: int = 0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.registry = registry
        self.ingestor = ingestor
        self.notifier = notifier
        self.poll_policies = {**default_poll_policies(), **(poll_policies or {})}
        self._sleep = sleep
        self.runner = JobTaskRunner(
            on_crash=self._mark_crashed,
            on_interrupt=self._mark_interrupted,
            max_concurrent=max_concurrent,
        )

    # -----------------------------
    # Public operations
    # -----------------------------
    async def submit(
        self,
        kind: Any,
        parameters: Dict[str, Any],
        owner: str,
        *,
        max_retries: Optional[int] = None,
    ) -> Job:
        try:
            job_kind = JobKind(kind)
        except ValueError:
            raise ValidationError(f"unsupported job kind: {kind}", details={"kind": str(kind)})

        params = parse_parameters(job_kind, parameters)
        snapshot = params.model_dump(mode="json", exclude_none=True)
        provider, extra_meta = self._resolve_providers(job_kind, snapshot)
        retries = validate_max_retries(
            settings.DEFAULT_MAX_RETRIES if max_retries is None else max_retries,
            settings.MAX_RETRIES_CEILING,
        )

        now = utcnow()
        job = Job(
            id=str(uuid.uuid4()),
            owner=str(owner),
            kind=job_kind,
            status=JobStatus.pending,
            parameters=snapshot,
            progress=JobProgress(percentage=0, stage=ProgressStage.pending.value),
            provider=provider,
            timing=JobTiming(queued_at=now),
            max_retries=retries,
            metadata=extra_meta,
            created_at=now,
            updated_at=now,
        )
        job = await self.store.create(job)
        logger.info(
            "job_created",
            extra={"job_id": job.id, "kind": job_kind.value, "provider": provider, "owner": job.owner},
        )
        self._publish(job, "job.created")
        await self._start(job.id)
        return job

    async def get_status(self, job_id: str, owner: str) -> JobView:
        return JobView.from_job(await self._owned(job_id, owner))

    async def cancel(self, job_id: str, owner: str) -> Job:
        job = await self._owned(job_id, owner)
        if is_terminal(job.status):
            raise InvalidTransition(f"job is already {job.status.value}", details={"status": job.status.value})

        updated = await self.store.update(
            job_id,
            JobPatch(status=JobStatus.cancelled, completed_at=utcnow()),
            expect_status=sources_for(JobStatus.cancelled),
        )
        if updated is None:
            # reached a terminal state between the read and the write
            latest = await self.store.get(job_id)
            current = latest.status.value if latest else "missing"
            raise InvalidTransition(f"job is already {current}", details={"status": current})

        logger.info("job_cancelled", extra={"job_id": job_id, "previous_status": job.status.value})
        self._publish(updated)
        return updated

    async def retry(self, job_id: str, owner: str) -> Job:
        job = await self._owned(job_id, owner)
        if job.status != JobStatus.failed:
            raise InvalidTransition(
                f"only failed jobs can be retried (status={job.status.value})",
                details={"status": job.status.value},
            )
        if job.retry_count >= job.max_retries:
            raise InvalidTransition(
                "Maximum retry attempts reached",
                details={"retry_count": job.retry_count, "max_retries": job.max_retries},
            )

        claimed = await self.store.claim_retry(job_id, queued_at=utcnow())
        if claimed is None:
            raise InvalidTransition("job is no longer retryable")

        logger.info("job_retry_queued", extra={"job_id": job_id, "retry_count": claimed.retry_count})
        self._publish(claimed)
        await self._start(job_id)
        return claimed

    async def list_jobs(
        self,
        owner: str,
        *,
        kind: Optional[JobKind] = None,
        status: Optional[JobStatus] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[JobView]:
        if limit < 1 or limit > 100:
            raise ValidationError("limit must be between 1 and 100")
        if offset < 0:
            raise ValidationError("offset must be >= 0")
        jobs = await self.store.query(JobQuery(owner=owner, kind=kind, status=status, limit=limit, offset=offset))
        return [JobView.from_job(j) for j in jobs]

    async def wait_for_terminal(
        self,
        job_id: str,
        owner: str,
        *,
        interval_seconds: Optional[float] = None,
        max_attempts: Optional[int] = None,
    ) -> JobView:
        """
        Block (cooperatively) until the job is terminal, re-reading the record
        store on every attempt. Used by in-process callers such as chat-triggered
        generation.
        """
        job = await self._owned(job_id, owner)
        if is_terminal(job.status):
            return JobView.from_job(job)

        policy = self.poll_policies[job.kind]
        if max_attempts is not None and max_attempts < 1:
            raise ValidationError("max_attempts must be >= 1", details={"max_attempts": max_attempts})

        def _classify(j: Job) -> str:
            if j.status == JobStatus.completed:
                return PollOutcomeKind.succeeded.value
            if is_terminal(j.status):
                return PollOutcomeKind.failed.value
            return "pending"

        outcome = await poll_until_terminal(
            lambda: self._owned(job_id, owner),
            interval_seconds=policy.interval_seconds if interval_seconds is None else interval_seconds,
            max_attempts=policy.max_attempts if max_attempts is None else max_attempts,
            classify=_classify,
            sleep=self._sleep,
        )
        if outcome.kind == PollOutcomeKind.timeout:
            raise PollTimeout(
                f"job {job_id} did not finish after {outcome.attempts} checks",
                details={"job_id": job_id, "attempts": outcome.attempts},
            )
        return JobView.from_job(outcome.status)  # type: ignore[arg-type]

    async def shutdown(self) -> None:
        await self.runner.shutdown()

    # -----------------------------
    # Selection
    # -----------------------------
    def _resolve_providers(self, kind: JobKind, params: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
        client = self.registry.select(kind, params)
        meta: Dict[str, Any] = {}
        if kind == JobKind.avatar and not params.get("source_image_url"):
            portrait = self.registry.select(
                JobKind.image,
                {"prompt": params.get("prompt"), "aspect_ratio": params.get("aspect_ratio")},
            )
            meta["image_provider"] = portrait.name
        return client.name, meta

    # -----------------------------
    # Store helpers
    # -----------------------------
    async def _owned(self, job_id: str, owner: str) -> Job:
        job = await self.store.get(job_id)
        if job is None:
            raise JobNotFound(f"job not found: {job_id}")
        if job.owner != str(owner):
            raise Forbidden("job belongs to another user")
        return job

    def _publish(self, job: Job, event: str = "job.updated") -> None:
        if self.notifier is None:
            return
        self.notifier.publish(job.owner, event, JobView.from_job(job).model_dump(mode="json"))

    async def _checkpoint(
        self,
        job_id: str,
        percentage: int,
        stage: ProgressStage,
        *,
        expect: Any = (JobStatus.processing,),
        **fields: Any,
    ) -> Job:
        patch = JobPatch(progress=JobProgress(percentage=percentage, stage=stage.value), **fields)
        job = await self.store.update(job_id, patch, expect_status=expect)
        if job is None:
            raise _JobSuperseded(job_id)
        self._publish(job)
        return job

    async def _fail(self, job_id: str, message: str, code: str, details: Optional[Dict[str, Any]] = None) -> None:
        job = await self.store.update(
            job_id,
            JobPatch(
                status=JobStatus.failed,
                error=JobError(message=message, code=code, details=details or {}),
                completed_at=utcnow(),
            ),
            expect_status=sources_for(JobStatus.failed),
        )
        if job is None:
            logger.info("job_fail_skipped_not_active", extra={"job_id": job_id, "code": code})
            return
        logger.warning("job_failed", extra={"job_id": job_id, "code": code, "error": message})
        self._publish(job)

    async def _mark_crashed(self, job_id: str, exc: BaseException) -> None:
        message, _, details = _classify_error(exc)
        await self._fail(job_id, message, ErrorCode.worker_crash.value, details)

    async def _mark_interrupted(self, job_id: str) -> None:
        await self._fail(job_id, "service shut down while the job was running", ErrorCode.interrupted.value)

    async def _is_cancelled(self, job_id: str) -> bool:
        job = await self.store.get(job_id)
        return job is None or job.status not in ACTIVE_STATUSES

    # -----------------------------
    # Background task
    # -----------------------------
    async def _start(self, job_id: str) -> None:
        async def _waiting() -> None:
            job = await self.store.update(
                job_id,
                JobPatch(
                    status=JobStatus.queued,
                    progress=JobProgress(percentage=0, stage=ProgressStage.waiting_for_slot.value),
                ),
                expect_status=(JobStatus.pending,),
            )
            if job is not None:
                self._publish(job)

        try:
            self.runner.spawn(job_id, lambda: self._run_job(job_id), on_waiting=_waiting)
        except RuntimeError:
            # no worker will ever pick this job up
            await self._mark_interrupted(job_id)
            raise

    async def _run_job(self, job_id: str) -> None:
        job = await self.store.get(job_id)
        if job is None:
            logger.warning("job_not_found", extra={"job_id": job_id})
            return
        if is_terminal(job.status):
            logger.info("job_terminal_skip", extra={"job_id": job_id, "status": job.status.value})
            return

        try:
            job = await self._checkpoint(
                job_id,
                PCT_STARTING,
                ProgressStage.starting,
                expect=(JobStatus.pending, JobStatus.queued),
                status=JobStatus.processing,
                started_at=utcnow(),
            )
            logger.info("job_started", extra={"job_id": job_id, "kind": job.kind.value, "provider": job.provider})

            results, metadata = await self._execute(job)

            done = await self._checkpoint(
                job_id,
                PCT_COMPLETED,
                ProgressStage.completed,
                status=JobStatus.completed,
                results=results,
                completed_at=utcnow(),
                metadata=metadata or None,
            )
            logger.info(
                "job_completed",
                extra={"job_id": job_id, "results": len(done.results), "duration_seconds": done.timing.duration_seconds},
            )

        except _JobSuperseded:
            logger.info("job_superseded", extra={"job_id": job_id})

        except StudioError as e:
            message, code, details = _classify_error(e)
            await self._fail(job_id, message, code, details)

    async def _execute(self, job: Job) -> Tuple[List[Any], Dict[str, Any]]:
        if job.kind == JobKind.image:
            return await self._execute_image(job)
        if job.kind == JobKind.avatar:
            return await self._execute_avatar(job)
        return await self._execute_video(job)

    async def _execute_image(self, job: Job) -> Tuple[List[Any], Dict[str, Any]]:
        client = self.registry.get(job.provider or "")
        status = await self._generate(job, client, JobKind.image, dict(job.parameters), (PCT_SUBMITTED, PCT_GENERATED))
        await self._checkpoint(job.id, PCT_GENERATED, ProgressStage.generated)

        artifact = await self._ingest(job, status, fallback_content_type="image/png")
        await self._checkpoint(job.id, PCT_INGESTED, ProgressStage.ingested)

        return [artifact.to_result_item({"provider": client.name, **_public_meta(status)})], {}

    async def _execute_avatar(self, job: Job) -> Tuple[List[Any], Dict[str, Any]]:
        params = dict(job.parameters)
        window = (PCT_SUBMITTED, PCT_GENERATED)
        portrait: Optional[Artifact] = None

        if not params.get("source_image_url"):
            portrait_url = job.metadata.get("portrait_url")
            if not portrait_url:
                image_client = self.registry.get(job.metadata.get("image_provider") or "")
                image_params = {"prompt": params.get("prompt"), "aspect_ratio": params.get("aspect_ratio")}
                st = await self._generate(job, image_client, JobKind.image, image_params, (PCT_SUBMITTED, PCT_INTERMEDIATE))
                portrait = await self._ingest(job, st, fallback_content_type="image/png", stem_suffix="portrait")
                portrait_url = portrait.url
                await self._checkpoint(
                    job.id,
                    PCT_INTERMEDIATE,
                    ProgressStage.intermediate,
                    metadata={"portrait_url": portrait_url, "portrait_artifact_id": portrait.id},
                )
            params["source_image_url"] = portrait_url
            window = (PCT_INTERMEDIATE, PCT_GENERATED)

        client = self.registry.get(job.provider or "")
        status = await self._generate(job, client, JobKind.avatar, params, window)
        avatar_meta = {k: v for k, v in status.metadata.items() if v is not None}
        await self._checkpoint(job.id, PCT_GENERATED, ProgressStage.generated, metadata=avatar_meta or None)

        if portrait is not None and status.result_url in (None, portrait.url):
            artifact = portrait
        else:
            if not status.result_url and status.payload is None:
                status.result_url = params["source_image_url"]
            artifact = await self._ingest(job, status, fallback_content_type="image/png")
        await self._checkpoint(job.id, PCT_INGESTED, ProgressStage.ingested)

        item = artifact.to_result_item({"provider": client.name, "name": params.get("name"), **avatar_meta})
        return [item], avatar_meta

    async def _execute_video(self, job: Job) -> Tuple[List[Any], Dict[str, Any]]:
        client = self.registry.get(job.provider or "")
        status = await self._generate(job, client, JobKind.video, dict(job.parameters), (PCT_SUBMITTED, PCT_GENERATED))
        await self._checkpoint(job.id, PCT_GENERATED, ProgressStage.generated)

        artifact = await self._ingest(job, status, fallback_content_type="video/mp4")
        await self._checkpoint(job.id, PCT_INGESTED, ProgressStage.ingested)

        return [artifact.to_result_item({"provider": client.name, **_public_meta(status)})], {}

    async def _generate(
        self,
        job: Job,
        client: ProviderClient,
        kind: JobKind,
        params: Dict[str, Any],
        window: Tuple[int, int],
    ) -> ProviderStatus:
        """One provider round trip: submit, then poll until terminal inside `window` percent."""
        lo, hi = window
        handle = await client.submit(kind, params)
        await self._checkpoint(
            job.id,
            lo,
            ProgressStage.submitted,
            provider_task_id=handle.task_id,
            metadata={f"{kind.value}_task_id": handle.task_id},
        )
        logger.info(
            "provider_task_submitted",
            extra={"job_id": job.id, "provider": client.name, "kind": kind.value, "task_id": handle.task_id},
        )

        if handle.immediate is not None:
            status = handle.immediate
        else:
            policy = self.poll_policies[kind]

            async def _on_pending(st: ProviderStatus, attempt: int) -> None:
                if st.progress is None:
                    return
                upstream = max(0, min(100, int(st.progress)))
                pct = min(hi - 1, lo + (hi - lo) * upstream // 100)
                if pct > lo:
                    await self._checkpoint(job.id, pct, ProgressStage.generating)

            outcome = await poll_until_terminal(
                lambda: client.poll(handle),
                interval_seconds=policy.interval_seconds,
                max_attempts=policy.max_attempts,
                classify=lambda st: st.state.value,
                is_cancelled=lambda: self._is_cancelled(job.id),
                on_pending=_on_pending,
                sleep=self._sleep,
            )

            if outcome.kind == PollOutcomeKind.cancelled:
                raise _JobSuperseded(job.id)
            if outcome.kind == PollOutcomeKind.timeout:
                raise PollTimeout(
                    f"{client.name} did not finish within {outcome.attempts} polls",
                    details={"provider": client.name, "task_id": handle.task_id, "attempts": outcome.attempts},
                )
            status = outcome.status  # type: ignore[assignment]

        if status.state == ProviderState.failed:
            # provider message is kept verbatim
            raise GenerationFailed(
                status.error_detail or f"{client.name} reported failure",
                details={"provider": client.name, "task_id": handle.task_id},
            )
        return status

    async def _ingest(
        self,
        job: Job,
        status: ProviderStatus,
        *,
        fallback_content_type: str,
        stem_suffix: Optional[str] = None,
    ) -> Artifact:
        width, height = dimensions_for(job.parameters.get("aspect_ratio"))
        stem = f"{job.kind.value}_{job.id}" + (f"_{stem_suffix}" if stem_suffix else "")
        common = dict(owner=job.owner, job_id=job.id, width=width, height=height, filename_stem=stem)

        if status.payload:
            return await self.ingestor.ingest_bytes(status.payload, **common)
        if status.result_url:
            return await self.ingestor.ingest_remote(
                status.result_url, fallback_content_type=fallback_content_type, **common
            )
        raise IngestionFailed("provider finished without a result", details={"provider": job.provider})


def _public_meta(status: ProviderStatus) -> Dict[str, Any]:
    return {k: v for k, v in status.metadata.items() if v is not None and isinstance(v, (str, int, float, bool))}
