from __future__ import annotations

import asyncio
import logging
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

logger = logging.getLogger("fal_images")

RESULT_URL_FIELDS = ("images.0.url", "image.url", "url")
ERROR_FIELDS = ("error", "detail", "message")

_SUCCEEDED = ("completed", "ok", "success")
_FAILED = ("failed", "error", "cancelled")


class FalImageClient:
    """
    fal queue API.

      submit:   POST {base}/{model}                -> request_id, status_url, response_url
      primary:  GET  status_url                    -> {"status": IN_QUEUE|IN_PROGRESS|COMPLETED|FAILED}
      secondary GET  {base}/{model}/requests/{id}  -> final result (404/202 while running)

    The queue expects the model payload as top-level JSON.
    """

    name = ProviderName.fal.value
    kinds = frozenset({JobKind.image})

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.api_key = api_key if api_key is not None else settings.FAL_KEY
        self.model = (model or settings.FAL_IMAGE_MODEL).strip().strip("/")
        self.endpoints = EndpointPool(
            self.name,
            [base_url or settings.FAL_QUEUE_BASE_URL],
            transport=transport,
            sleep=sleep,
        )

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def accepts(self, kind: JobKind, params: Dict[str, Any]) -> bool:
        return kind == JobKind.image

    def _headers(self) -> Dict[str, str]:
        # fal auth uses "Key <FAL_KEY>", not Bearer
        return {"Authorization": f"Key {self.api_key}", "Content-Type": "application/json"}

    async def submit(self, kind: JobKind, params: Dict[str, Any]) -> TaskHandle:
        width, height = dimensions_for(params.get("aspect_ratio"))
        body: Dict[str, Any] = {
            "prompt": str(params.get("prompt") or ""),
            "image_size": {"width": width, "height": height},
            "num_images": 1,
        }
        if params.get("negative_prompt"):
            body["negative_prompt"] = params["negative_prompt"]

        r = await self.endpoints.request("POST", f"/{self.model}", headers=self._headers(), json=body)
        raise_for_rejection(r, provider=self.name, operation="queue.submit")
        data = safe_json(r, provider=self.name)

        request_id = str(data.get("request_id") or "").strip()
        if not request_id:
            raise ProviderRejected(f"fal submit missing request_id: {str(data)[:300]}")

        base = self.endpoints.preferred_base_url
        return TaskHandle(
            provider=self.name,
            kind=kind,
            task_id=request_id,
            raw_response=data,
            context={
                "status_url": str(data.get("status_url") or f"{base}/{self.model}/requests/{request_id}/status"),
                "response_url": str(data.get("response_url") or f"{base}/{self.model}/requests/{request_id}"),
            },
        )

    async def poll(self, handle: TaskHandle) -> ProviderStatus:
        return await poll_with_fallback(
            lambda: self._poll_via_status(handle),
            lambda: self._poll_via_result(handle),
            provider=self.name,
            task_id=handle.task_id,
        )

    async def _poll_via_status(self, handle: TaskHandle) -> Optional[ProviderStatus]:
        r = await self.endpoints.send("GET", handle.context["status_url"], headers=self._headers())
        if r.status_code in (404, 405):
            logger.info("fal_status_endpoint_unavailable", extra={"status_code": r.status_code})
            return None
        # 202 means queued / in progress
        if r.status_code >= 400:
            raise_for_rejection(r, provider=self.name, operation="queue.status")

        data = safe_json(r, provider=self.name)
        state = normalize_state(data.get("status"), succeeded=_SUCCEEDED, failed=_FAILED)

        if state == ProviderState.failed:
            msg = first_non_empty(data, ERROR_FIELDS) or "fal request failed"
            return ProviderStatus(state=ProviderState.failed, error_detail=msg, raw_response=data)

        if state == ProviderState.succeeded:
            return await self._fetch_result(handle)

        return ProviderStatus.pending(raw=data)

    async def _poll_via_result(self, handle: TaskHandle) -> ProviderStatus:
        r = await self.endpoints.send("GET", handle.context["response_url"], headers=self._headers())
        if r.status_code in (202, 404):
            return ProviderStatus.pending(raw={"status_code": r.status_code})
        raise_for_rejection(r, provider=self.name, operation="queue.result")
        return self._status_from_result(safe_json(r, provider=self.name))

    async def _fetch_result(self, handle: TaskHandle) -> ProviderStatus:
        r = await self.endpoints.send("GET", handle.context["response_url"], headers=self._headers())
        raise_for_rejection(r, provider=self.name, operation="queue.result")
        return self._status_from_result(safe_json(r, provider=self.name))

    def _status_from_result(self, data: Dict[str, Any]) -> ProviderStatus:
        url = first_non_empty(data, RESULT_URL_FIELDS)
        if url:
            return ProviderStatus(
                state=ProviderState.succeeded,
                result_url=url,
                metadata={"model": self.model, "seed": data.get("seed")},
                raw_response=data,
            )
        msg = first_non_empty(data, ERROR_FIELDS)
        if msg:
            return ProviderStatus(state=ProviderState.failed, error_detail=msg, raw_response=data)
        # completed but the result document is not populated yet
        return ProviderStatus.pending(raw=data)
