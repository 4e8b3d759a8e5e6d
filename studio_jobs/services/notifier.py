from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Set

from studio_jobs.config import settings
from studio_jobs.domain.models import utcnow

logger = logging.getLogger("notifier")


@dataclass(frozen=True)
class JobEvent:
    event: str
    owner: str
    payload: Dict[str, Any]
    at: datetime = field(default_factory=utcnow)


class Notifier:
    """
    Best-effort fan-out of job updates to live listeners of the same owner.

    Each subscriber gets its own bounded queue. A full queue drops the event for
    that subscriber only; the job record stays authoritative.
    """

    def __init__(self, *, queue_size: int = 0) -> None:
        self.queue_size = int(queue_size or settings.SSE_QUEUE_SIZE)
        self._subscribers: Dict[str, Set["asyncio.Queue[JobEvent]"]] = {}

    def subscriber_count(self, owner: str) -> int:
        return len(self._subscribers.get(owner, ()))

    def publish(self, owner: str, event: str, payload: Dict[str, Any]) -> int:
        """Returns how many subscribers received the event."""
        queues = self._subscribers.get(owner)
        if not queues:
            return 0

        msg = JobEvent(event=event, owner=owner, payload=payload)
        delivered = 0
        for q in list(queues):
            try:
                q.put_nowait(msg)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning("notifier_queue_full", extra={"owner": owner, "event": event})
        return delivered

    @asynccontextmanager
    async def subscribe(self, owner: str) -> AsyncIterator["asyncio.Queue[JobEvent]"]:
        q: "asyncio.Queue[JobEvent]" = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers.setdefault(owner, set()).add(q)
        logger.info("notifier_subscribed", extra={"owner": owner})
        try:
            yield q
        finally:
            queues = self._subscribers.get(owner)
            if queues is not None:
                queues.discard(q)
                if not queues:
                    self._subscribers.pop(owner, None)
            logger.info("notifier_unsubscribed", extra={"owner": owner})
