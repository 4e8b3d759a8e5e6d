from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from studio_jobs.config import settings
from studio_jobs.domain.enums import JobKind, ProviderName, ProviderState
from studio_jobs.domain.errors import ProviderRejected
from studio_jobs.domain.media import dimensions_for
from studio_jobs.services.providers.base import (
    ProviderStatus,
    TaskHandle,
    first_non_empty,
    normalize_state,
    poll_with_fallback,
)
from studio_jobs.services.providers.transport import EndpointPool, raise_for_rejection, safe_json

logger = logging.getLogger("heygen_av4")

VIDEO_ID_FIELDS = ("data.video_id", "video_id", "data.id", "id")
VIDEO_URL_FIELDS = ("video_url", "url", "result.video_url", "data.video_url", "data.url")
ERROR_FIELDS = (
    "error_message",
    "error",
    "data.error_message",
    "data.error",
    "result.error_message",
    "result.error",
)
TALKING_PHOTO_FIELDS = ("data.talking_photo_id", "talking_photo_id", "data.id")

_SUCCEEDED = ("completed", "complete", "done", "succeeded", "success")
_FAILED = ("failed", "error")


def _status_core(data: Dict[str, Any]) -> Dict[str, Any]:
    core = data.get("data") if isinstance(data.get("data"), dict) else data
    if isinstance(core.get("data"), dict):
        core = core["data"]
    return core


class HeyGenVideoClient:
    """
    HeyGen Avatar IV talking-photo renders.

      upload:    POST {upload}/v1/talking_photo (raw image bytes) -> talking_photo_id
      submit:    POST /v2/video/av4/generate                      -> video_id
      primary:   GET  /v1/video_status.get?video_id=
      secondary: GET  /v1/video.list (scan for video_id)
    """

    name = ProviderName.heygen.value
    kinds = frozenset({JobKind.video})

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        upload_base_url: Optional[str] = None,
        default_voice_id: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.api_key = api_key if api_key is not None else settings.HEYGEN_API_KEY
        self.upload_base = (upload_base_url or settings.HEYGEN_UPLOAD_BASE_URL).rstrip("/")
        self.default_voice_id = default_voice_id if default_voice_id is not None else settings.HEYGEN_DEFAULT_VOICE_ID
        self.endpoints = EndpointPool(
            self.name,
            [base_url or settings.HEYGEN_BASE_URL],
            transport=transport,
            sleep=sleep,
        )

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def accepts(self, kind: JobKind, params: Dict[str, Any]) -> bool:
        if kind != JobKind.video:
            return False
        if not params.get("source_image_url"):
            return False
        if params.get("audio_url"):
            return True
        return bool(params.get("script") and (params.get("voice_id") or self.default_voice_id))

    def _headers(self) -> Dict[str, str]:
        return {
            "X-Api-Key": self.api_key,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    # -----------------------------
    # assets
    # -----------------------------
    async def upload_talking_photo(self, image_url: str) -> str:
        src = await self.endpoints.send("GET", image_url)
        raise_for_rejection(src, provider=self.name, operation="source_image.download")
        content_type = (src.headers.get("content-type") or "").split(";")[0].strip()
        if not content_type.startswith("image/"):
            content_type = "image/jpeg"

        r = await self.endpoints.send(
            "POST",
            f"{self.upload_base}/v1/talking_photo",
            headers={"X-Api-Key": self.api_key, "Accept": "application/json", "Content-Type": content_type},
            content=src.content,
        )
        raise_for_rejection(r, provider=self.name, operation="talking_photo.upload")
        data = safe_json(r, provider=self.name)
        tpid = first_non_empty(data, TALKING_PHOTO_FIELDS)
        if not tpid:
            raise ProviderRejected(f"heygen talking_photo upload missing talking_photo_id: {str(data)[:300]}")
        return tpid

    # -----------------------------
    # submit
    # -----------------------------
    async def submit(self, kind: JobKind, params: Dict[str, Any]) -> TaskHandle:
        if kind != JobKind.video:
            raise ProviderRejected(f"heygen does not support job kind {kind}")

        talking_photo_id = await self.upload_talking_photo(str(params["source_image_url"]))
        width, height = dimensions_for(params.get("aspect_ratio"))

        payload: Dict[str, Any] = {
            "test": False,
            "video_title": f"studio_video_{uuid.uuid4().hex[:12]}",
            "image_key": talking_photo_id,
            "dimension": {"width": width, "height": height},
        }
        if params.get("audio_url"):
            payload["audio_url"] = str(params["audio_url"])
        else:
            payload["voice_id"] = params.get("voice_id") or self.default_voice_id
            payload["script"] = params.get("script")

        headers = self._headers()
        headers["Idempotency-Key"] = uuid.uuid4().hex
        r = await self.endpoints.request("POST", "/v2/video/av4/generate", headers=headers, json=payload)
        raise_for_rejection(r, provider=self.name, operation="av4.generate")
        data = safe_json(r, provider=self.name)

        video_id = first_non_empty(data, VIDEO_ID_FIELDS)
        if not video_id:
            raise ProviderRejected(f"heygen submit missing video_id: {str(data)[:300]}")

        logger.info("heygen_video_submitted", extra={"video_id": video_id, "talking_photo_id": talking_photo_id})
        return TaskHandle(
            provider=self.name,
            kind=kind,
            task_id=video_id,
            raw_response=data,
            context={"talking_photo_id": talking_photo_id},
        )

    # -----------------------------
    # poll
    # -----------------------------
    async def poll(self, handle: TaskHandle) -> ProviderStatus:
        return await poll_with_fallback(
            lambda: self._poll_via_status(handle.task_id),
            lambda: self._poll_via_list(handle.task_id),
            provider=self.name,
            task_id=handle.task_id,
        )

    def _status_from(self, core: Dict[str, Any], outer: Optional[Dict[str, Any]] = None) -> ProviderStatus:
        raw_status = core.get("status") or core.get("state") or core.get("video_status")
        state = normalize_state(raw_status, succeeded=_SUCCEEDED, failed=_FAILED)

        if state == ProviderState.succeeded:
            url = first_non_empty(core, VIDEO_URL_FIELDS) or first_non_empty(outer or {}, VIDEO_URL_FIELDS)
            if not url:
                return ProviderStatus.pending(raw=core)
            return ProviderStatus(state=ProviderState.succeeded, result_url=url, raw_response=core)

        if state == ProviderState.failed:
            msg = first_non_empty(core, ERROR_FIELDS) or first_non_empty(outer or {}, ERROR_FIELDS)
            return ProviderStatus(
                state=ProviderState.failed,
                error_detail=msg or "provider failed",
                raw_response=core,
            )

        return ProviderStatus.pending(raw=core)

    async def _poll_via_status(self, video_id: str) -> Optional[ProviderStatus]:
        r = await self.endpoints.request(
            "GET", "/v1/video_status.get", headers=self._headers(), params={"video_id": video_id}
        )
        if r.status_code in (404, 405):
            logger.info("heygen_status_endpoint_unavailable", extra={"status_code": r.status_code})
            return None
        raise_for_rejection(r, provider=self.name, operation="video_status.get")

        data = safe_json(r, provider=self.name)
        return self._status_from(_status_core(data), data)

    async def _poll_via_list(self, video_id: str) -> ProviderStatus:
        r = await self.endpoints.request("GET", "/v1/video.list", headers=self._headers(), params={"limit": 50})
        raise_for_rejection(r, provider=self.name, operation="video.list")
        data = safe_json(r, provider=self.name)

        container = data.get("data")
        videos = None
        if isinstance(container, dict):
            videos = container.get("videos") or container.get("list") or container.get("items")
        elif isinstance(container, list):
            videos = container
        if videos is None:
            videos = data.get("videos") or data.get("list") or data.get("items")

        if not isinstance(videos, list):
            return ProviderStatus.pending(raw={"note": "unexpected video.list shape"})

        for v in videos:
            if isinstance(v, dict) and str(v.get("video_id") or v.get("id")) == str(video_id):
                return self._status_from(v)

        return ProviderStatus.pending(raw={"note": "video_id not found in list", "video_id": video_id})
