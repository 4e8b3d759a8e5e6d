import asyncio
from typing import Any, Callable, Dict, Iterable, List, Optional

import httpx
import pytest

from studio_jobs.config import settings
from studio_jobs.domain.enums import JobKind, ProviderState
from studio_jobs.repos.memory_jobs_repo import InMemoryJobsRepo
from studio_jobs.services.artifact_ingestor import ArtifactIngestor
from studio_jobs.services.blob_store import InMemoryBlobStore
from studio_jobs.services.job_orchestrator import JobOrchestrator, PollPolicy
from studio_jobs.services.notifier import Notifier
from studio_jobs.services.providers.base import ProviderStatus, TaskHandle
from studio_jobs.services.providers.registry import ProviderRegistry

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64
JPEG_BYTES = b"\xff\xd8\xff\xe0" + b"\x00" * 64

OWNER = "7d4f0b1c-2a54-4c55-9d1e-3c1f0f4c2a11"
OTHER_OWNER = "0b0e9f3e-8d7a-4a8b-9f36-6f3d1c2b9e77"


async def fast_sleep(_seconds: float) -> None:
    await asyncio.sleep(0)


def succeeded(url: Optional[str] = None, **kw: Any) -> ProviderStatus:
    return ProviderStatus(state=ProviderState.succeeded, result_url=url, **kw)


def failed(detail: str) -> ProviderStatus:
    return ProviderStatus(state=ProviderState.failed, error_detail=detail)


def pending(progress: Optional[int] = None) -> ProviderStatus:
    return ProviderStatus.pending(progress=progress)


class FakeProvider:
    """Scripted provider: poll returns `statuses` in order, repeating the last one."""

    def __init__(
        self,
        name: str = "fake",
        kinds: Iterable[JobKind] = (JobKind.image,),
        statuses: Optional[List[ProviderStatus]] = None,
        *,
        immediate: Optional[ProviderStatus] = None,
        submit_error: Optional[BaseException] = None,
        poll_error: Optional[BaseException] = None,
        accepts: Optional[Callable[[JobKind, Dict[str, Any]], bool]] = None,
        configured: bool = True,
    ) -> None:
        self.name = name
        self.kinds = frozenset(kinds)
        self.statuses = list(statuses or [])
        self.immediate = immediate
        self.submit_error = submit_error
        self.poll_error = poll_error
        self._accepts = accepts
        self._configured = configured
        self.submitted: List[tuple] = []
        self.polls = 0
        self.first_poll = asyncio.Event()

    @property
    def configured(self) -> bool:
        return self._configured

    def accepts(self, kind: JobKind, params: Dict[str, Any]) -> bool:
        return self._accepts(kind, params) if self._accepts else True

    async def submit(self, kind: JobKind, params: Dict[str, Any]) -> TaskHandle:
        self.submitted.append((kind, dict(params)))
        if self.submit_error is not None:
            raise self.submit_error
        return TaskHandle(
            provider=self.name,
            kind=kind,
            task_id=f"{self.name}-task-{len(self.submitted)}",
            immediate=self.immediate,
        )

    async def poll(self, handle: TaskHandle) -> ProviderStatus:
        self.polls += 1
        self.first_poll.set()
        if self.poll_error is not None:
            raise self.poll_error
        if not self.statuses:
            return pending()
        if len(self.statuses) > 1:
            return self.statuses.pop(0)
        return self.statuses[0]


def cdn_transport(body: bytes = PNG_BYTES, content_type: str = "image/png") -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=body, headers={"content-type": content_type})

    return httpx.MockTransport(handler)


@pytest.fixture
def store():
    return InMemoryJobsRepo()


@pytest.fixture
def blob_store():
    return InMemoryBlobStore()


@pytest.fixture
def notifier():
    return Notifier(queue_size=1000)


@pytest.fixture
def make_orchestrator(store, blob_store, notifier):
    """Factory: orchestrator over the given fake providers with zero-interval polling."""

    def _make(
        *providers: FakeProvider,
        priority: Optional[Dict[JobKind, tuple]] = None,
        max_attempts: int = 5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        max_concurrent: int = 4,
    ) -> JobOrchestrator:
        if priority is None:
            priority = {kind: tuple(p.name for p in providers if kind in p.kinds) for kind in JobKind}
        registry = ProviderRegistry(providers, priority=priority)
        ingestor = ArtifactIngestor(blob_store, transport=transport or cdn_transport())
        policy = PollPolicy(interval_seconds=0, max_attempts=max_attempts)
        return JobOrchestrator(
            store,
            registry,
            ingestor,
            notifier=notifier,
            poll_policies={kind: policy for kind in JobKind},
            max_concurrent=max_concurrent,
            sleep=fast_sleep,
        )

    return _make


@pytest.fixture
def jwt_secret(monkeypatch):
    monkeypatch.setattr(settings, "JWT_SECRET", "test-secret")
    monkeypatch.setattr(settings, "JWT_ALG", "HS256")
    monkeypatch.setattr(settings, "JWT_ISSUER", None)
    monkeypatch.setattr(settings, "JWT_AUDIENCE", None)
    monkeypatch.setattr(settings, "SVC_TO_SVC_BEARER", "svc-secret")
    return "test-secret"
