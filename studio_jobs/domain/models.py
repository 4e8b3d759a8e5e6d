from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, HttpUrl, computed_field, model_validator

from studio_jobs.domain.enums import AspectRatio, JobKind, JobStatus, ProviderName


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# -----------------------------------------------------------------------------
# Request parameters (one model per job kind)
# -----------------------------------------------------------------------------

class ImageParameters(BaseModel):
    prompt: str = Field(min_length=1, max_length=4000)
    negative_prompt: Optional[str] = Field(default=None, max_length=4000)
    aspect_ratio: AspectRatio = AspectRatio.ar_1_1
    style: Optional[str] = Field(default=None, max_length=64)
    provider: Optional[ProviderName] = None

    @model_validator(mode="after")
    def normalize(self) -> "ImageParameters":
        self.prompt = self.prompt.strip()
        if not self.prompt:
            raise ValueError("prompt must not be blank")
        if self.negative_prompt is not None and not self.negative_prompt.strip():
            self.negative_prompt = None
        return self


class AvatarParameters(BaseModel):
    """
    Avatar (digital twin) training request.

    Source (one required):
      - source_image_url: train directly on an existing portrait
      - prompt: generate a portrait first, then train on it
    """

    name: str = Field(min_length=1, max_length=120)
    source_image_url: Optional[HttpUrl] = None
    prompt: Optional[str] = Field(default=None, max_length=4000)
    gender: Optional[str] = Field(default=None, max_length=16)
    aspect_ratio: AspectRatio = AspectRatio.ar_1_1
    provider: Optional[ProviderName] = None

    @model_validator(mode="after")
    def require_source(self) -> "AvatarParameters":
        self.name = self.name.strip()
        if not self.name:
            raise ValueError("name must not be blank")
        if self.prompt is not None and not self.prompt.strip():
            self.prompt = None
        if self.source_image_url is None and not self.prompt:
            raise ValueError("avatar requires one of: source_image_url, prompt")
        return self


class VideoParameters(BaseModel):
    """
    Talking-head video.

    Face (one required): avatar_id (trained anchor) or source_image_url.
    Voice (one required): script (rendered through TTS) or audio_url.
    """

    script: Optional[str] = Field(default=None, max_length=4000)
    audio_url: Optional[HttpUrl] = None
    voice_id: Optional[str] = Field(default=None, max_length=128)
    avatar_id: Optional[str] = Field(default=None, max_length=128)
    source_image_url: Optional[HttpUrl] = None
    aspect_ratio: AspectRatio = AspectRatio.ar_9_16
    provider: Optional[ProviderName] = None

    @model_validator(mode="after")
    def require_face_and_voice(self) -> "VideoParameters":
        if self.script is not None and not self.script.strip():
            self.script = None
        if self.avatar_id is not None and not self.avatar_id.strip():
            self.avatar_id = None

        if not (self.avatar_id or self.source_image_url is not None):
            raise ValueError("video requires one of: avatar_id, source_image_url")
        if not (self.script or self.audio_url is not None):
            raise ValueError("video requires one of: script, audio_url")
        return self


# -----------------------------------------------------------------------------
# Job
# -----------------------------------------------------------------------------

class JobProgress(BaseModel):
    percentage: int = Field(default=0, ge=0, le=100)
    stage: str = "pending"
    eta_seconds: Optional[int] = None

    @model_validator(mode="before")
    @classmethod
    def clamp_percentage(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("percentage") is not None:
            data = dict(data)
            data["percentage"] = max(0, min(100, int(data["percentage"])))
        return data


class ResultItem(BaseModel):
    url: str
    thumbnail_url: Optional[str] = None
    filename: Optional[str] = None
    format: Optional[str] = None
    size_bytes: Optional[int] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class JobError(BaseModel):
    message: str
    code: str
    details: Dict[str, Any] = Field(default_factory=dict)


class JobTiming(BaseModel):
    queued_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @computed_field  # type: ignore[misc]
    @property
    def duration_seconds(self) -> Optional[int]:
        if self.started_at is None or self.completed_at is None:
            return None
        return max(0, math.floor((self.completed_at - self.started_at).total_seconds()))


class Job(BaseModel):
    id: str
    owner: str
    kind: JobKind
    status: JobStatus = JobStatus.pending
    parameters: Dict[str, Any] = Field(default_factory=dict)
    progress: JobProgress = Field(default_factory=JobProgress)
    results: List[ResultItem] = Field(default_factory=list)
    error: Optional[JobError] = None
    provider: Optional[str] = None
    provider_task_id: Optional[str] = None
    timing: JobTiming = Field(default_factory=JobTiming)
    retry_count: int = 0
    max_retries: int = 3
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# -----------------------------------------------------------------------------
# API contracts
# -----------------------------------------------------------------------------

class JobCreateRequest(BaseModel):
    kind: JobKind
    parameters: Dict[str, Any] = Field(default_factory=dict)
    # bounds come from MAX_RETRIES_CEILING at submit time
    max_retries: Optional[int] = None


class JobSubmitResponse(BaseModel):
    job_id: str
    status: JobStatus


class JobView(BaseModel):
    """Read-only projection of a Job. Never carries binary payloads."""

    job_id: str
    kind: JobKind
    status: JobStatus
    parameters: Dict[str, Any] = Field(default_factory=dict)
    progress: JobProgress
    results: List[ResultItem] = Field(default_factory=list)
    error: Optional[JobError] = None
    provider: Optional[str] = None
    provider_task_id: Optional[str] = None
    timing: JobTiming
    retry_count: int = 0
    max_retries: int = 3
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_job(cls, job: Job) -> "JobView":
        return cls(
            job_id=job.id,
            kind=job.kind,
            status=job.status,
            parameters=job.parameters,
            progress=job.progress,
            results=job.results,
            error=job.error,
            provider=job.provider,
            provider_task_id=job.provider_task_id,
            timing=job.timing,
            retry_count=job.retry_count,
            max_retries=job.max_retries,
            created_at=job.created_at,
            updated_at=job.updated_at,
        )


class Artifact(BaseModel):
    id: str
    job_id: Optional[str] = None
    owner: Optional[str] = None
    content_type: str
    width: Optional[int] = None
    height: Optional[int] = None
    size_bytes: Optional[int] = None
    url: str
    storage_ref: str
    filename: Optional[str] = None
    sha256: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    def to_result_item(self, extra_meta: Optional[Dict[str, Any]] = None) -> ResultItem:
        meta: Dict[str, Any] = {
            "artifact_id": self.id,
            "content_type": self.content_type,
            "width": self.width,
            "height": self.height,
            "size_bytes": self.size_bytes,
            "storage_ref": self.storage_ref,
        }
        if extra_meta:
            meta.update(extra_meta)
        fmt = (self.filename or "").rsplit(".", 1)[-1] if self.filename and "." in self.filename else None
        return ResultItem(
            url=self.url,
            filename=self.filename,
            format=fmt,
            size_bytes=self.size_bytes,
            metadata=meta,
        )
