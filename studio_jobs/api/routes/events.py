from __future__ import annotations

import asyncio
import json
import logging
from typing import AsyncIterator, Awaitable, Callable

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from studio_jobs.api.deps import get_current_user_id, get_notifier
from studio_jobs.config import settings
from studio_jobs.services.notifier import JobEvent, Notifier

logger = logging.getLogger("events_routes")

router = APIRouter(tags=["events"])


def _sse(event: str, data: object) -> bytes:
    return f"event: {event}\ndata: {json.dumps(data, default=str)}\n\n".encode("utf-8")


async def _event_stream(
    notifier: Notifier,
    owner: str,
    *,
    is_disconnected: Callable[[], Awaitable[bool]],
    keepalive_seconds: float,
) -> AsyncIterator[bytes]:
    async with notifier.subscribe(owner) as queue:
        yield _sse("ready", {"owner": owner})
        while not await is_disconnected():
            try:
                msg: JobEvent = await asyncio.wait_for(queue.get(), timeout=keepalive_seconds)
            except asyncio.TimeoutError:
                yield b": keep-alive\n\n"
                continue
            yield _sse(msg.event, msg.payload)


@router.get("/events")
async def stream_events(
    request: Request,
    user_id: str = Depends(get_current_user_id),
    notifier: Notifier = Depends(get_notifier),
) -> StreamingResponse:
    """Stream the caller's job updates as Server-Sent Events."""
    logger.info("events_stream_opened", extra={"owner": user_id})
    generator = _event_stream(
        notifier,
        user_id,
        is_disconnected=request.is_disconnected,
        keepalive_seconds=settings.SSE_KEEPALIVE_SECONDS,
    )
    return StreamingResponse(
        generator,
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
