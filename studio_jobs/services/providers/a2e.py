from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

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

logger = logging.getLogger("a2e_client")

# Result location priority per task family (first non-empty wins)
IMAGE_RESULT_FIELDS = ("image_urls.0", "image_url", "result_url", "url")
VIDEO_RESULT_FIELDS = ("result_url", "video_url", "url", "result")
ANCHOR_ID_FIELDS = ("anchor_id", "_id")
TWIN_ID_FIELDS = ("user_video_twin_id", "video_twin_id")
ERROR_FIELDS = ("failed_message", "error_message", "message", "msg")

_SUCCEEDED = ("completed", "success", "succeeded", "done", "finished")
_FAILED = ("failed", "fail", "error")

# Upstream training phases, as reported by userVideoTwin
TRAINING_PROGRESS = {"initialized": 60, "processing": 70, "training": 80, "generating": 85}


def _record_from(data: Any, task_id: str) -> Dict[str, Any]:
    """awsResult answers with either one record or a list of them."""
    if isinstance(data, dict):
        items = data.get("list") if isinstance(data.get("list"), list) else None
        if items is None:
            return data
        data = items
    if isinstance(data, list):
        for item in data:
            if isinstance(item, dict) and str(item.get("_id") or item.get("id") or "") == task_id:
                return item
        if len(data) == 1 and isinstance(data[0], dict):
            return data[0]
    return {}


def _int_or_none(val: Any) -> Optional[int]:
    try:
        return int(float(val))
    except (TypeError, ValueError):
        return None


class A2EClient:
    """
    A2E covers all three job kinds:

      image   POST userNanoBanana/start         poll GET userNanoBanana/{id}
      avatar  POST userVideoTwin/startTraining  poll GET userVideoTwin/{id}, then anchor lookup
      video   POST video/send_tts (when no audio) + POST video/generate
              poll GET video/status/{id}

    Every poll falls back to the batch shape POST video/awsResult {_id}.
    Responses are wrapped as {"code": 0, "data": {...}}; any other code is a rejection.
    """

    name = ProviderName.a2e.value
    kinds = frozenset({JobKind.image, JobKind.avatar, JobKind.video})

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        base_urls: Optional[Sequence[str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.api_key = api_key if api_key is not None else settings.A2E_API_KEY
        self.endpoints = EndpointPool(
            self.name,
            list(base_urls or settings.a2e_base_urls()),
            transport=transport,
            sleep=sleep,
        )

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def accepts(self, kind: JobKind, params: Dict[str, Any]) -> bool:
        if kind == JobKind.video:
            # talking heads are rendered from a trained anchor
            return bool(params.get("avatar_id"))
        return kind in self.kinds

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "x-lang": "en-US",
        }

    async def _call(self, method: str, path: str, operation: str, **kwargs: Any) -> Any:
        r = await self.endpoints.request(method, path, headers=self._headers(), **kwargs)
        raise_for_rejection(r, provider=self.name, operation=operation)
        body = safe_json(r, provider=self.name)
        code = body.get("code")
        if code is not None and _int_or_none(code) != 0:
            msg = first_non_empty(body, ("message", "msg")) or str(body)[:300]
            raise ProviderRejected(f"a2e {operation} rejected: {msg}", details={"code": code})
        return body.get("data") if "data" in body else body

    # -----------------------------
    # submit
    # -----------------------------
    async def submit(self, kind: JobKind, params: Dict[str, Any]) -> TaskHandle:
        if kind == JobKind.image:
            return await self._submit_image(params)
        if kind == JobKind.avatar:
            return await self._submit_avatar(params)
        if kind == JobKind.video:
            return await self._submit_video(params)
        raise ProviderRejected(f"a2e does not support job kind {kind}")

    def _handle(self, kind: JobKind, data: Any, operation: str, context: Dict[str, Any]) -> TaskHandle:
        task_id = first_non_empty(data, ("_id", "id", "task_id")) if isinstance(data, dict) else None
        if not task_id:
            raise ProviderRejected(f"a2e {operation} missing task id: {str(data)[:300]}")
        logger.info("a2e_task_submitted", extra={"kind": kind.value, "task_id": task_id, "operation": operation})
        return TaskHandle(
            provider=self.name,
            kind=kind,
            task_id=task_id,
            raw_response=data if isinstance(data, dict) else {},
            context=context,
        )

    async def _submit_image(self, params: Dict[str, Any]) -> TaskHandle:
        body = {
            "name": f"studio_image_{uuid.uuid4().hex[:12]}",
            "prompt": str(params.get("prompt") or ""),
        }
        data = await self._call("POST", "/userNanoBanana/start", "userNanoBanana.start", json=body)
        return self._handle(JobKind.image, data, "userNanoBanana.start", {})

    async def _submit_avatar(self, params: Dict[str, Any]) -> TaskHandle:
        image_url = str(params.get("source_image_url") or "").strip()
        if not image_url:
            raise ProviderRejected("a2e avatar training requires an image url")
        gender = "male" if str(params.get("gender") or "").lower() == "male" else "female"
        body = {
            "name": str(params.get("name") or f"avatar_{uuid.uuid4().hex[:8]}"),
            "gender": gender,
            "image_url": image_url,
            "video_backgroud_color": "rgb(255,255,255)",
            "model_version": "V2.1",
        }
        data = await self._call("POST", "/userVideoTwin/startTraining", "userVideoTwin.startTraining", json=body)
        return self._handle(JobKind.avatar, data, "userVideoTwin.startTraining", {"image_url": image_url})

    async def synthesize_speech(self, script: str, voice_id: Optional[str] = None) -> str:
        body: Dict[str, Any] = {"msg": script, "country": "en", "region": "US", "speechRate": 1.0}
        voice = voice_id or settings.A2E_DEFAULT_VOICE_ID
        if voice:
            body["tts_id"] = voice
        data = await self._call("POST", "/video/send_tts", "video.send_tts", json=body)
        audio = first_non_empty(data, ("audioSrc", "audio_src")) if isinstance(data, dict) else None
        if not audio and isinstance(data, str) and data.strip():
            audio = data.strip()
        if not audio:
            raise ProviderRejected(f"a2e send_tts returned no audio: {str(data)[:300]}")
        return audio

    async def _submit_video(self, params: Dict[str, Any]) -> TaskHandle:
        anchor_id = str(params.get("avatar_id") or "").strip()
        if not anchor_id:
            raise ProviderRejected("a2e talking-head video requires avatar_id")

        audio_url = str(params.get("audio_url") or "").strip()
        if not audio_url:
            audio_url = await self.synthesize_speech(str(params.get("script") or ""), params.get("voice_id"))

        width, height = dimensions_for(params.get("aspect_ratio"))
        body = {
            "title": f"studio_video_{uuid.uuid4().hex[:12]}",
            "anchor_id": anchor_id,
            "anchor_type": 0,
            "audioSrc": audio_url,
            "resolution": max(width, height),
            "web_bg_width": width,
            "web_bg_height": height,
        }
        data = await self._call("POST", "/video/generate", "video.generate", json=body)
        return self._handle(JobKind.video, data, "video.generate", {"audio_url": audio_url})

    # -----------------------------
    # poll
    # -----------------------------
    async def poll(self, handle: TaskHandle) -> ProviderStatus:
        if handle.kind == JobKind.image:
            primary_path = f"/userNanoBanana/{handle.task_id}"
        elif handle.kind == JobKind.avatar:
            primary_path = f"/userVideoTwin/{handle.task_id}"
        else:
            primary_path = f"/video/status/{handle.task_id}"

        status = await poll_with_fallback(
            lambda: self._poll_direct(handle, primary_path),
            lambda: self._poll_batch(handle),
            provider=self.name,
            task_id=handle.task_id,
        )
        if handle.kind == JobKind.avatar and status.state == ProviderState.succeeded:
            return await self._resolve_anchor(handle, status)
        return status

    async def _poll_direct(self, handle: TaskHandle, path: str) -> ProviderStatus:
        data = await self._call("GET", path, "status")
        return self._status_from_record(handle, data if isinstance(data, dict) else {})

    async def _poll_batch(self, handle: TaskHandle) -> ProviderStatus:
        data = await self._call("POST", "/video/awsResult", "video.awsResult", json={"_id": handle.task_id})
        return self._status_from_record(handle, _record_from(data, handle.task_id))

    def _status_from_record(self, handle: TaskHandle, rec: Dict[str, Any]) -> ProviderStatus:
        raw_status = rec.get("current_status") or rec.get("status")
        state = normalize_state(raw_status, succeeded=_SUCCEEDED, failed=_FAILED)

        if state == ProviderState.failed:
            msg = first_non_empty(rec, ERROR_FIELDS) or "a2e task failed"
            return ProviderStatus(state=ProviderState.failed, error_detail=msg, raw_response=rec)

        if state == ProviderState.succeeded:
            if handle.kind == JobKind.avatar:
                return ProviderStatus(
                    state=ProviderState.succeeded,
                    result_url=handle.context.get("image_url"),
                    metadata={"user_video_twin_id": first_non_empty(rec, TWIN_ID_FIELDS)},
                    raw_response=rec,
                )
            fields = IMAGE_RESULT_FIELDS if handle.kind == JobKind.image else VIDEO_RESULT_FIELDS
            url = first_non_empty(rec, fields)
            if not url:
                # reported done before the result link is attached
                return ProviderStatus.pending(raw=rec)
            return ProviderStatus(state=ProviderState.succeeded, result_url=url, raw_response=rec)

        progress = _int_or_none(rec.get("progress"))
        if progress is None:
            progress = TRAINING_PROGRESS.get(str(raw_status or "").lower())
        return ProviderStatus.pending(raw=rec, progress=progress)

    async def _resolve_anchor(self, handle: TaskHandle, status: ProviderStatus) -> ProviderStatus:
        """Trained twins are addressed by their anchor id for later video renders."""
        twin_id = status.metadata.get("user_video_twin_id")
        query: Dict[str, Any] = {"type": "custom"}
        if twin_id:
            query["user_video_twin_id"] = twin_id

        data = await self._call("GET", "/anchor/character_list", "anchor.character_list", params=query)
        items: List[Any] = []
        if isinstance(data, list):
            items = data
        elif isinstance(data, dict) and isinstance(data.get("list"), list):
            items = data["list"]

        anchor_id: Optional[str] = None
        for item in items:
            if not isinstance(item, dict):
                continue
            if twin_id and first_non_empty(item, TWIN_ID_FIELDS) == twin_id:
                anchor_id = first_non_empty(item, ANCHOR_ID_FIELDS)
                break
        if anchor_id is None and items and isinstance(items[0], dict):
            # newest custom anchor first
            anchor_id = first_non_empty(items[0], ANCHOR_ID_FIELDS)

        if not anchor_id:
            return ProviderStatus(
                state=ProviderState.failed,
                error_detail="could not retrieve anchor id from a2e",
                raw_response=status.raw_response,
            )

        return ProviderStatus(
            state=ProviderState.succeeded,
            result_url=status.result_url,
            metadata={
                "anchor_id": anchor_id,
                "user_video_twin_id": twin_id,
                "training_task_id": handle.task_id,
            },
            raw_response=status.raw_response,
        )
