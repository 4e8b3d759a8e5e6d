from __future__ import annotations

from typing import Dict, FrozenSet

from studio_jobs.domain.enums import TERMINAL_STATUSES, JobStatus
from studio_jobs.domain.errors import InvalidTransition

# failed -> queued is only taken by an explicit job-level retry
_ALLOWED: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.pending: frozenset({JobStatus.queued, JobStatus.processing, JobStatus.failed, JobStatus.cancelled}),
    JobStatus.queued: frozenset({JobStatus.processing, JobStatus.failed, JobStatus.cancelled}),
    JobStatus.processing: frozenset({JobStatus.completed, JobStatus.failed, JobStatus.cancelled}),
    JobStatus.failed: frozenset({JobStatus.queued}),
    JobStatus.completed: frozenset(),
    JobStatus.cancelled: frozenset(),
}


def is_terminal(status: JobStatus) -> bool:
    return JobStatus(status) in TERMINAL_STATUSES


def can_transition(src: JobStatus, dst: JobStatus) -> bool:
    return JobStatus(dst) in _ALLOWED[JobStatus(src)]


def sources_for(dst: JobStatus) -> FrozenSet[JobStatus]:
    """Statuses a job may be in for a write that moves it to `dst`."""
    dst = JobStatus(dst)
    return frozenset(src for src, targets in _ALLOWED.items() if dst in targets)


def assert_transition(src: JobStatus, dst: JobStatus) -> None:
    if not can_transition(src, dst):
        raise InvalidTransition(f"cannot move job from {JobStatus(src).value} to {JobStatus(dst).value}")
