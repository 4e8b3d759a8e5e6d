from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Iterable, Mapping, Optional, Protocol, Sequence

from studio_jobs.domain.enums import JobKind, ProviderState
from studio_jobs.domain.errors import StudioError

logger = logging.getLogger("provider_base")


@dataclass
class TaskHandle:
    """
    Opaque correlation handle returned by `submit`.

    `immediate` carries the final status for providers that answer synchronously
    (their poll just replays it).
    """

    provider: str
    kind: JobKind
    task_id: str
    raw_response: Dict[str, Any] = field(default_factory=dict)
    context: Dict[str, Any] = field(default_factory=dict)
    immediate: Optional["ProviderStatus"] = None


@dataclass
class ProviderStatus:
    state: ProviderState
    result_url: Optional[str] = None
    payload: Optional[bytes] = None
    error_detail: Optional[str] = None
    progress: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    raw_response: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def pending(cls, raw: Optional[Dict[str, Any]] = None, progress: Optional[int] = None) -> "ProviderStatus":
        return cls(state=ProviderState.pending, raw_response=raw or {}, progress=progress)


class ProviderClient(Protocol):
    name: str
    kinds: FrozenSet[JobKind]

    @property
    def configured(self) -> bool:
        ...

    def accepts(self, kind: JobKind, params: Dict[str, Any]) -> bool:
        """Whether this provider can serve these (already validated) parameters."""
        ...

    async def submit(self, kind: JobKind, params: Dict[str, Any]) -> TaskHandle:
        ...

    async def poll(self, handle: TaskHandle) -> ProviderStatus:
        ...


# -----------------------------
# Shared response helpers
# -----------------------------
def dig(obj: Any, path: str) -> Any:
    """Follow a dotted path through dicts and lists ("images.0.url")."""
    cur = obj
    for part in path.split("."):
        if isinstance(cur, Mapping):
            cur = cur.get(part)
        elif isinstance(cur, Sequence) and not isinstance(cur, (str, bytes)) and part.isdigit():
            idx = int(part)
            cur = cur[idx] if idx < len(cur) else None
        else:
            return None
        if cur is None:
            return None
    return cur


def first_non_empty(obj: Any, paths: Iterable[str]) -> Optional[str]:
    """First non-empty string value among `paths`, in the given priority order."""
    for path in paths:
        val = dig(obj, path)
        if val is None:
            continue
        s = str(val).strip()
        if s:
            return s
    return None


def normalize_state(raw_status: Any, *, succeeded: Iterable[str], failed: Iterable[str]) -> ProviderState:
    s = str(raw_status or "").strip().lower()
    if s and s in {x.lower() for x in succeeded}:
        return ProviderState.succeeded
    if s and s in {x.lower() for x in failed}:
        return ProviderState.failed
    # empty, unknown and in-flight states all mean "keep polling"
    return ProviderState.pending


async def poll_with_fallback(
    primary: Callable[[], Awaitable[Optional[ProviderStatus]]],
    secondary: Callable[[], Awaitable[ProviderStatus]],
    *,
    provider: str,
    task_id: str,
) -> ProviderStatus:
    """
    Try the direct-status shape first; if it errors or reports itself
    unavailable (None), ask the batch-result shape before giving up.
    """
    primary_error: Optional[StudioError] = None
    try:
        res = await primary()
    except StudioError as e:
        primary_error = e
        res = None
        logger.info(
            "provider_primary_poll_failed",
            extra={"provider": provider, "task_id": task_id, "error": str(e)},
        )
    if res is not None:
        return res

    try:
        return await secondary()
    except StudioError:
        if primary_error is not None:
            logger.warning("provider_secondary_poll_failed", extra={"provider": provider, "task_id": task_id})
        raise
