from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Generic, Optional, TypeVar

logger = logging.getLogger("poll_loop")

T = TypeVar("T")


class PollOutcomeKind(str, Enum):
    succeeded = "succeeded"
    failed = "failed"
    cancelled = "cancelled"
    timeout = "timeout"


@dataclass(frozen=True)
class PollOutcome(Generic[T]):
    kind: PollOutcomeKind
    attempts: int
    status: Optional[T] = None


async def _never_cancelled() -> bool:
    return False


async def poll_until_terminal(
    poll: Callable[[], Awaitable[T]],
    *,
    interval_seconds: float,
    max_attempts: int,
    classify: Callable[[T], str],
    is_cancelled: Optional[Callable[[], Awaitable[bool]]] = None,
    on_pending: Optional[Callable[[T, int], Awaitable[None]]] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> PollOutcome[T]:
    """
    Bounded polling primitive shared by every provider wait.

    Each attempt: check cancellation, sleep `interval_seconds`, check cancellation
    again, call `poll` once. `classify` maps a poll result to "succeeded",
    "failed" or anything else (pending). `poll` is invoked at most
    `max_attempts` times; exhausting them yields a timeout outcome.

    Exceptions raised by `poll` propagate to the caller unchanged.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    cancelled = is_cancelled or _never_cancelled
    last: Optional[T] = None

    for attempt in range(1, max_attempts + 1):
        if await cancelled():
            return PollOutcome(PollOutcomeKind.cancelled, attempts=attempt - 1, status=last)

        await sleep(interval_seconds)

        if await cancelled():
            return PollOutcome(PollOutcomeKind.cancelled, attempts=attempt - 1, status=last)

        last = await poll()
        state = str(classify(last) or "").lower()

        if state == PollOutcomeKind.succeeded.value:
            return PollOutcome(PollOutcomeKind.succeeded, attempts=attempt, status=last)
        if state == PollOutcomeKind.failed.value:
            return PollOutcome(PollOutcomeKind.failed, attempts=attempt, status=last)

        if on_pending is not None:
            await on_pending(last, attempt)

    logger.info("poll_budget_exhausted", extra={"max_attempts": max_attempts, "interval_seconds": interval_seconds})
    return PollOutcome(PollOutcomeKind.timeout, attempts=max_attempts, status=last)
