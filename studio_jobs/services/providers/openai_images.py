from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from studio_jobs.config import settings
from studio_jobs.domain.enums import AspectRatio, JobKind, ProviderName, ProviderState
from studio_jobs.domain.errors import ProviderRejected
from studio_jobs.services.providers.base import ProviderStatus, TaskHandle, first_non_empty
from studio_jobs.services.providers.transport import EndpointPool, raise_for_rejection, safe_json

logger = logging.getLogger("openai_images")

# Result location priority: inline base64 first, hosted URL second
RESULT_B64_FIELDS = ("data.0.b64_json",)
RESULT_URL_FIELDS = ("data.0.url",)

# dall-e-3 only renders square, landscape and portrait canvases
_SIZE_FOR_ASPECT = {
    AspectRatio.ar_1_1.value: "1024x1024",
    AspectRatio.ar_4_3.value: "1792x1024",
    AspectRatio.ar_16_9.value: "1792x1024",
    AspectRatio.ar_3_4.value: "1024x1792",
    AspectRatio.ar_9_16.value: "1024x1792",
}


def _compose_prompt(params: Dict[str, Any]) -> str:
    prompt = str(params.get("prompt") or "").strip()
    style = str(params.get("style") or "").strip()
    negative = str(params.get("negative_prompt") or "").strip()
    if style:
        prompt = f"{prompt}. Style: {style}"
    if negative:
        prompt = f"{prompt}. Avoid: {negative}"
    return prompt


class OpenAIImageClient:
    """
    Synchronous text-to-image: the generation call returns the image itself,
    so `submit` already carries the final status and `poll` replays it.
    """

    name = ProviderName.openai.value
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
        self.api_key = api_key if api_key is not None else settings.OPENAI_API_KEY
        self.model = model or settings.OPENAI_IMAGE_MODEL
        self.endpoints = EndpointPool(
            self.name,
            [base_url or settings.OPENAI_BASE_URL],
            transport=transport,
            timeout_seconds=300.0,
            sleep=sleep,
        )

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def accepts(self, kind: JobKind, params: Dict[str, Any]) -> bool:
        return kind == JobKind.image

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}

    async def submit(self, kind: JobKind, params: Dict[str, Any]) -> TaskHandle:
        body = {
            "model": self.model,
            "prompt": _compose_prompt(params),
            "n": 1,
            "size": _SIZE_FOR_ASPECT.get(str(params.get("aspect_ratio") or ""), "1024x1024"),
            "response_format": "b64_json",
        }
        r = await self.endpoints.request("POST", "/images/generations", headers=self._headers(), json=body)
        raise_for_rejection(r, provider=self.name, operation="images.generations")
        data = safe_json(r, provider=self.name)

        b64 = first_non_empty(data, RESULT_B64_FIELDS)
        url = first_non_empty(data, RESULT_URL_FIELDS)
        payload: Optional[bytes] = None
        if b64:
            try:
                payload = base64.b64decode(b64)
            except (binascii.Error, ValueError) as e:
                raise ProviderRejected(f"openai returned invalid base64 image: {e}") from e
        if payload is None and not url:
            raise ProviderRejected(f"openai response has no image: {str(data)[:300]}")

        task_id = r.headers.get("x-request-id") or f"openai-{uuid.uuid4().hex}"
        logger.info("openai_image_generated", extra={"task_id": task_id, "inline": payload is not None})

        final = ProviderStatus(
            state=ProviderState.succeeded,
            payload=payload,
            result_url=None if payload is not None else url,
            metadata={"model": self.model, "revised_prompt": first_non_empty(data, ("data.0.revised_prompt",))},
        )
        return TaskHandle(provider=self.name, kind=kind, task_id=task_id, immediate=final)

    async def poll(self, handle: TaskHandle) -> ProviderStatus:
        if handle.immediate is None:
            raise ProviderRejected(f"openai task {handle.task_id} has no recorded result")
        return handle.immediate
