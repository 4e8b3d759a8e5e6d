from __future__ import annotations

from enum import Enum


class JobKind(str, Enum):
    image = "image"
    avatar = "avatar"
    video = "video"


class JobStatus(str, Enum):
    pending = "pending"
    queued = "queued"
    processing = "processing"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"


TERMINAL_STATUSES = frozenset({JobStatus.completed, JobStatus.failed, JobStatus.cancelled})
ACTIVE_STATUSES = frozenset({JobStatus.pending, JobStatus.queued, JobStatus.processing})


class ErrorCode(str, Enum):
    provider_unavailable = "PROVIDER_UNAVAILABLE"
    timeout = "TIMEOUT"
    validation = "VALIDATION"
    generation_failed = "GENERATION_FAILED"
    ingestion_failed = "INGESTION_FAILED"
    worker_crash = "WORKER_CRASH"
    interrupted = "INTERRUPTED"


class ProviderName(str, Enum):
    openai = "openai"
    fal = "fal"
    a2e = "a2e"
    heygen = "heygen"


class ProviderState(str, Enum):
    pending = "pending"
    succeeded = "succeeded"
    failed = "failed"


class AspectRatio(str, Enum):
    ar_1_1 = "1:1"
    ar_4_3 = "4:3"
    ar_3_4 = "3:4"
    ar_16_9 = "16:9"
    ar_9_16 = "9:16"


class ProgressStage(str, Enum):
    pending = "pending"
    queued = "queued"
    waiting_for_slot = "waiting_for_slot"
    starting = "starting"
    submitted = "submitted"
    generating = "generating"
    intermediate = "intermediate_ready"
    generated = "generated"
    ingested = "ingested"
    completed = "completed"
