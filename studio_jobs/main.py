from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional

import asyncpg
from fastapi import FastAPI

from studio_jobs import __version__
from studio_jobs.api import build_router
from studio_jobs.config import settings
from studio_jobs.db import close_pool, init_pool
from studio_jobs.logging import configure_logging
from studio_jobs.repos.base import JobStore
from studio_jobs.repos.jobs_repo import JobsRepo, ensure_schema
from studio_jobs.repos.memory_jobs_repo import InMemoryJobsRepo
from studio_jobs.services.artifact_ingestor import ArtifactIngestor
from studio_jobs.services.blob_store import AzureBlobStore, BlobStore, DatabaseBlobStore, InMemoryBlobStore
from studio_jobs.services.job_orchestrator import JobOrchestrator
from studio_jobs.services.notifier import Notifier
from studio_jobs.services.providers.registry import ProviderRegistry, build_default_registry

logger = logging.getLogger("studio_jobs.main")


@dataclass
class AppServices:
    orchestrator: JobOrchestrator
    registry: ProviderRegistry
    notifier: Notifier
    blob_store: BlobStore


async def _build_services() -> tuple[AppServices, Optional[asyncpg.Pool]]:
    pool: Optional[asyncpg.Pool] = None

    async def _pool() -> asyncpg.Pool:
        nonlocal pool
        if pool is None:
            pool = await init_pool()
            await ensure_schema(pool)
        return pool

    store: JobStore
    if settings.STORE_BACKEND == "memory":
        store = InMemoryJobsRepo()
    else:
        store = JobsRepo(await _pool())

    blob_store: BlobStore
    if settings.BLOB_BACKEND == "azure":
        blob_store = AzureBlobStore()
    elif settings.BLOB_BACKEND == "memory":
        blob_store = InMemoryBlobStore()
    else:
        blob_store = DatabaseBlobStore(await _pool())

    registry = build_default_registry()
    notifier = Notifier()
    orchestrator = JobOrchestrator(store, registry, ArtifactIngestor(blob_store), notifier=notifier)
    logger.info(
        "services_ready",
        extra={"store_backend": settings.STORE_BACKEND, "blob_backend": blob_store.name},
    )
    return AppServices(orchestrator, registry, notifier, blob_store), pool


def create_app(services: Optional[AppServices] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        configure_logging()
        pool: Optional[asyncpg.Pool] = None
        svc = services
        if svc is None:
            svc, pool = await _build_services()

        app.state.orchestrator = svc.orchestrator
        app.state.registry = svc.registry
        app.state.notifier = svc.notifier
        app.state.blob_store = svc.blob_store
        try:
            yield
        finally:
            # in-flight jobs are marked INTERRUPTED before the store goes away
            await svc.orchestrator.shutdown()
            if pool is not None:
                await close_pool()

    app = FastAPI(title=settings.SERVICE_NAME, version=__version__, lifespan=lifespan)
    app.include_router(build_router())

    @app.get("/")
    async def root():
        return {"service": settings.SERVICE_NAME, "status": "ok"}

    return app


app = create_app()
