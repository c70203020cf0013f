# app/routers/cron.py
from __future__ import annotations

import asyncio
import hmac
from typing import List, Optional

import structlog
from fastapi import APIRouter, Depends, Header
from fastapi.responses import JSONResponse

from app.config import settings
from app.dependencies import get_job_service
from app.models.location import Location
from app.models.tenant import Organization
from app.schemas.jobs import CronJobSummary, CronRunResponse
from app.services.job_service import JobService
from app.services.tiers import get_limits, tier_for
from prophet.engine.context import JobType
from prophet.engine.pipelines.refresh_all import applicable_pipelines

router = APIRouter(prefix="/api/cron", tags=["cron"])
logger = structlog.get_logger("prophet.api.cron")


def _authorized(authorization: Optional[str]) -> bool:
    secret = settings.cron_secret
    if not secret:
        return True
    expected = f"Bearer {secret}"
    return hmac.compare_digest((authorization or "").encode(), expected.encode())


def plan_daily_refresh(rows, *, weekly_day: bool) -> List[CronJobSummary]:
    """rows: (location_id, organization_id, subscription_tier) tuples."""
    plan: List[CronJobSummary] = []
    for location_id, organization_id, tier_value in rows:
        tier = tier_for(tier_value)
        limits = get_limits(tier)
        summary = CronJobSummary(locationId=location_id, organizationId=organization_id, tier=tier.value)
        if limits.events_cadence == "weekly" and not weekly_day:
            summary.skipped = "Weekly plan; refreshes on the weekly refresh day"
        else:
            summary.pipelines = [t.value for t in applicable_pipelines(limits, weekly_day)]
        plan.append(summary)
    return plan


@router.get("/daily")
async def run_daily(
    authorization: Optional[str] = Header(None),
    service: JobService = Depends(get_job_service),
):
    if not _authorized(authorization):
        return JSONResponse({"error": "Unauthorized"}, status_code=401)

    deps = service.deps
    now = deps.clock()
    weekly_day = deps.is_weekly_day()

    def _rows():
        with deps.session() as db:
            return (
                db.query(Location.id, Location.organization_id, Organization.subscription_tier)
                .outerjoin(Organization, Organization.id == Location.organization_id)
                .order_by(Location.created_at.asc())
                .all()
            )

    rows = await asyncio.to_thread(_rows)
    plan = plan_daily_refresh(rows, weekly_day=weekly_day)

    for entry in plan:
        if entry.skipped:
            continue
        # fire and forget; the job store tracks progress
        service.launch(JobType.REFRESH_ALL, entry.organizationId, entry.locationId)

    scheduled = sum(1 for e in plan if not e.skipped)
    logger.info(
        "daily_refresh_scheduled",
        locations=len(plan),
        scheduled=scheduled,
        weekly_day=weekly_day,
    )
    return CronRunResponse(
        dateKey=now.date().isoformat(),
        isWeeklyDay=weekly_day,
        locationsProcessed=len(plan),
        jobs=plan,
    ).model_dump()
