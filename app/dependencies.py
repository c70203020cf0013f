from __future__ import annotations

from functools import lru_cache

from app.config import settings
from app.db import SessionLocal
from app.services.insights import InsightStore
from app.services.job_service import JobService
from app.services.job_store import JobStore
from app.services.providers import Providers, build_providers
from app.services.snapshots import SnapshotStore
from prophet.engine.pipelines import build_registry
from prophet.engine.registry import PipelineDeps, PipelineRegistry


@lru_cache()
def get_job_store() -> JobStore:
    return JobStore(SessionLocal, stale_after_seconds=settings.stale_job_after_seconds)


@lru_cache()
def get_providers() -> Providers:
    return build_providers(settings)


@lru_cache()
def get_pipeline_registry() -> PipelineRegistry:
    return build_registry()


def build_pipeline_deps(providers: Providers, session_factory=SessionLocal) -> PipelineDeps:
    return PipelineDeps(
        session_factory=session_factory,
        providers=providers,
        snapshots=SnapshotStore(session_factory),
        insights=InsightStore(session_factory),
        settings=settings,
    )


@lru_cache()
def get_job_service() -> JobService:
    """Process-wide service; owns the background pipeline tasks."""
    return JobService(
        registry=get_pipeline_registry(),
        deps=build_pipeline_deps(get_providers()),
        store=get_job_store(),
        timeout_seconds=settings.pipeline_timeout_seconds,
    )
