from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import httpx
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_incrementing

from studio_jobs.config import settings
from studio_jobs.domain.errors import ProviderRejected, ProviderUnavailable

logger = logging.getLogger("provider_transport")

# Rate limiting and gateway errors are retried like network failures
TRANSIENT_STATUS_CODES = frozenset({429, 502, 503, 504})


class TransientHttpStatus(Exception):
    def __init__(self, status_code: int, body: str) -> None:
        super().__init__(f"HTTP {status_code}: {body}")
        self.status_code = status_code
        self.body = body


def is_transient(exc: BaseException) -> bool:
    """DNS/connect failures, resets, timeouts and 429/5xx gateway answers."""
    return isinstance(
        exc,
        (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError, TransientHttpStatus),
    )


def safe_json(resp: httpx.Response, *, provider: str) -> Dict[str, Any]:
    """
    Providers sometimes answer 200 with an empty body; that maps to {} so pollers
    can treat it as pending. Malformed JSON is a rejection.
    """
    text = (resp.text or "").strip()
    if not text:
        return {}
    try:
        obj = resp.json()
    except ValueError as e:
        # JSONDecodeError and UnicodeDecodeError (non-UTF-8 bodies) alike
        raise ProviderRejected(
            f"{provider}: invalid JSON (status={resp.status_code}): {text[:200]}",
            status_code=resp.status_code,
        ) from e
    if isinstance(obj, list):
        return {"data": obj}
    if not isinstance(obj, dict):
        return {"value": obj}
    return obj


def raise_for_rejection(resp: httpx.Response, *, provider: str, operation: str) -> None:
    if resp.status_code < 400:
        return
    raise ProviderRejected(
        f"{provider} {operation} failed {resp.status_code}: {(resp.text or '')[:500]}",
        status_code=resp.status_code,
    )


class EndpointPool:
    """
    Ordered base URLs for one provider.

    Each call walks the list in order. Per endpoint, transient failures are
    retried up to `attempts_per_endpoint` times with linear backoff
    (backoff * attempt); when they are exhausted the next endpoint is tried.
    Application-level answers (any other status) are returned to the caller
    untouched and never trigger a fallover.

    After a fallover succeeds, that endpoint is tried first on later calls.
    """

    def __init__(
        self,
        provider: str,
        base_urls: Sequence[str],
        *,
        attempts_per_endpoint: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
        timeout_seconds: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        urls = [u.strip().rstrip("/") for u in base_urls if u and u.strip()]
        if not urls:
            raise ValueError(f"{provider}: at least one base URL is required")
        self.provider = provider
        self.base_urls: List[str] = urls
        self.attempts_per_endpoint = max(
            1, int(attempts_per_endpoint if attempts_per_endpoint is not None else settings.PROVIDER_CALL_ATTEMPTS)
        )
        self.backoff_seconds = float(
            backoff_seconds if backoff_seconds is not None else settings.PROVIDER_RETRY_DELAY_SECONDS
        )
        self.timeout_seconds = float(timeout_seconds or settings.PROVIDER_TIMEOUT_SECONDS)
        self.transport = transport
        self._sleep = sleep
        self._preferred = 0

    @property
    def preferred_base_url(self) -> str:
        return self.base_urls[self._preferred]

    def _ordered(self) -> List[int]:
        n = len(self.base_urls)
        return [(self._preferred + i) % n for i in range(n)]

    def _log_retry(self, url: str) -> Callable[[RetryCallState], None]:
        def _before_sleep(state: RetryCallState) -> None:
            exc = state.outcome.exception() if state.outcome else None
            logger.warning(
                "provider_call_retry",
                extra={
                    "provider": self.provider,
                    "url": url,
                    "attempt": state.attempt_number,
                    "error": str(exc),
                },
            )

        return _before_sleep

    async def _send_once(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        async with httpx.AsyncClient(
            timeout=self.timeout_seconds,
            transport=self.transport,
            follow_redirects=True,
        ) as client:
            resp = await client.request(method, url, **kwargs)
        if resp.status_code in TRANSIENT_STATUS_CODES:
            raise TransientHttpStatus(resp.status_code, (resp.text or "")[:300])
        return resp

    async def _send_with_retries(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        retrying = AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(self.attempts_per_endpoint),
            wait=wait_incrementing(start=self.backoff_seconds, increment=self.backoff_seconds),
            retry=retry_if_exception(is_transient),
            sleep=self._sleep,
            before_sleep=self._log_retry(url),
        )
        return await retrying(self._send_once, method, url, **kwargs)

    def _rejected(self, e: Exception, url: str) -> ProviderRejected:
        """Non-transient httpx failures (bad encoding, invalid URL, protocol errors) are rejections."""
        resp = getattr(e, "response", None)
        return ProviderRejected(
            f"{self.provider}: {url} failed: {type(e).__name__}: {e}",
            status_code=resp.status_code if resp is not None else None,
        )

    async def send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """One absolute URL (provider-issued status links) with retries but no fallover."""
        try:
            return await self._send_with_retries(method, url, **kwargs)
        except Exception as e:
            if isinstance(e, (httpx.HTTPError, httpx.InvalidURL)) and not is_transient(e):
                raise self._rejected(e, url) from e
            if not is_transient(e):
                raise
            raise ProviderUnavailable(f"{self.provider}: {url} unavailable: {e}") from e

    async def request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """
        Send `method path` against each base URL in turn.

        Raises ProviderUnavailable once every endpoint has exhausted its budget.
        """
        failures: List[str] = []
        for idx in self._ordered():
            base = self.base_urls[idx]
            url = f"{base}/{path.lstrip('/')}"
            try:
                resp = await self._send_with_retries(method, url, **kwargs)
            except Exception as e:
                if isinstance(e, (httpx.HTTPError, httpx.InvalidURL)) and not is_transient(e):
                    raise self._rejected(e, url) from e
                if not is_transient(e):
                    raise
                failures.append(f"{base}: {e}")
                logger.warning(
                    "provider_endpoint_exhausted",
                    extra={"provider": self.provider, "base_url": base, "error": str(e)},
                )
                continue

            if idx != self._preferred:
                logger.info(
                    "provider_endpoint_switched",
                    extra={"provider": self.provider, "from": self.base_urls[self._preferred], "to": base},
                )
                self._preferred = idx
            return resp

        raise ProviderUnavailable(
            f"{self.provider}: all endpoints unavailable ({len(self.base_urls)} tried)",
            details={"failures": failures},
        )
