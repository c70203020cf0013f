# app/routers/jobs.py
from __future__ import annotations

import asyncio
from typing import AsyncIterator, Optional

import structlog
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from app.auth.deps import JobAuthContext, get_job_auth_context
from app.config import settings
from app.core.rate_limit import limiter
from app.dependencies import get_job_service, get_job_store
from app.metrics import ACTIVE_STREAMS
from app.services.ambient import build_cards, load_location, stream_ambient_feed
from app.services.job_service import JobService
from app.services.job_store import JobStore
from app.utils.cache_control import no_cache
from prophet.engine.context import JobType
from prophet.engine.replay import replay_job
from prophet.engine.transport import EventChannel, sse_response

router = APIRouter(prefix="/api/jobs", tags=["jobs"])
logger = structlog.get_logger("prophet.api.jobs")


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


async def _tracked(channel: EventChannel, kind: str) -> AsyncIterator[str]:
    ACTIVE_STREAMS.labels(kind=kind).inc()
    try:
        async for block in channel.stream():
            yield block
    finally:
        ACTIVE_STREAMS.labels(kind=kind).dec()


# ----------------------------------------------------
# Active / recent jobs (polled by the UI)
# ----------------------------------------------------
@router.get("/active")
@no_cache
async def list_active_jobs(
    include_recent: Optional[str] = None,
    auth: Optional[JobAuthContext] = Depends(get_job_auth_context),
    store: JobStore = Depends(get_job_store),
):
    if auth is None:
        return []
    try:
        if include_recent == "true":
            jobs = await asyncio.to_thread(
                store.get_recent_jobs, auth.organization_id, settings.recent_jobs_window_seconds
            )
        else:
            jobs = await asyncio.to_thread(store.get_active_jobs, auth.organization_id)
    except Exception as exc:
        logger.warning("active_jobs_lookup_failed", organization_id=auth.organization_id, error=str(exc))
        return []
    return [job.model_dump(mode="json") for job in jobs]


# ----------------------------------------------------
# Ambient feed
# ----------------------------------------------------
@router.get("/ambient-feed")
async def ambient_feed(
    location_id: Optional[str] = None,
    auth: Optional[JobAuthContext] = Depends(get_job_auth_context),
    service: JobService = Depends(get_job_service),
):
    if auth is None or not location_id:
        return _error(401, "Unauthorized")

    deps = service.deps

    def _location():
        with deps.session() as db:
            loc = load_location(db, auth.organization_id, location_id)
            if loc is None:
                return None
            area = ", ".join(p for p in (loc.city, loc.region) if p)
            return loc.name, area

    found = await asyncio.to_thread(_location)
    if found is None:
        return _error(401, "Unauthorized")
    name, area = found

    def _load_cards():
        with deps.session() as db:
            loc = load_location(db, auth.organization_id, location_id)
            return build_cards(db, loc) if loc is not None else []

    channel = EventChannel()
    service.spawn(
        stream_ambient_feed(
            channel,
            load=_load_cards,
            location_name=name,
            area=area,
            generate_text=getattr(deps.providers, "generate_text", None),
            card_delay=settings.ambient_card_delay_seconds,
            tip_delay=settings.ambient_tip_delay_seconds,
            tip_count=settings.ambient_tip_count,
        ),
        name=f"ambient:{location_id}",
    )
    return sse_response(_tracked(channel, "ambient"))


# ----------------------------------------------------
# Reconnect to a running (or finished) job
# ----------------------------------------------------
@router.get("/stream/{job_id}")
async def stream_job(
    job_id: str,
    auth: Optional[JobAuthContext] = Depends(get_job_auth_context),
    store: JobStore = Depends(get_job_store),
    service: JobService = Depends(get_job_service),
):
    if auth is None:
        return _error(401, "Unauthorized")
    try:
        job = await asyncio.to_thread(store.get_job, job_id)
    except Exception as exc:
        logger.warning("job_lookup_failed", job_id=job_id, error=str(exc))
        job = None
    if job is None or job.organization_id != auth.organization_id:
        return _error(404, "Job not found")

    channel = EventChannel()
    service.spawn(
        replay_job(
            job,
            store=store,
            channel=channel,
            poll_interval=settings.stream_poll_interval_seconds,
            max_polls=settings.stream_max_polls,
        ),
        name=f"replay:{job_id}",
    )
    return sse_response(_tracked(channel, "reconnect"))


# ----------------------------------------------------
# Start a pipeline
# ----------------------------------------------------
@router.get("/{job_type}")
@limiter.limit(settings.rate_limit_job_start)
async def start_job(
    request: Request,
    job_type: str,
    location_id: Optional[str] = None,
    auth: Optional[JobAuthContext] = Depends(get_job_auth_context),
    service: JobService = Depends(get_job_service),
):
    parsed = JobType.parse(job_type)
    if parsed is None:
        return _error(400, "Invalid job type")
    if not location_id:
        return _error(400, "location_id is required")
    if auth is None:
        return _error(401, "Unauthorized")

    logger.info(
        "job_start_requested",
        job_type=parsed.value,
        organization_id=auth.organization_id,
        location_id=location_id,
    )
    channel = EventChannel()
    service.launch(parsed, auth.organization_id, location_id, channel)
    return sse_response(_tracked(channel, "start"))
