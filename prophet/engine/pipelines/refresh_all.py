# prophet/engine/pipelines/refresh_all.py
"""Composite pipeline: runs every sub-pipeline's steps in sequence for one location."""
from __future__ import annotations

from dataclasses import dataclass
from functools import partial
from typing import Any, Dict, List

import structlog

from app.services.tiers import SubscriptionTier, TierLimits

from ..context import JobType, OnFail, PipelineContext, StepDef
from ..errors import SetupError, describe_error
from ..registry import PipelineDefinition, PipelineDeps
from . import content, events, insights, photos, traffic, visibility, weather
from .common import load_scope

logger = structlog.get_logger("prophet.engine.refresh_all")

DAILY = "daily"
WEEKLY = "weekly"
TIER_EVENTS = "tier_events"  # daily or weekly depending on the tier's events cadence


@dataclass(frozen=True)
class SubPipeline:
    definition: PipelineDefinition
    label: str
    cadence: str = DAILY

    @property
    def name(self) -> str:
        return self.definition.job_type.value


SUB_PIPELINES = (
    SubPipeline(content.DEFINITION, "Content & Menus"),
    SubPipeline(visibility.DEFINITION, "SEO & Visibility"),
    SubPipeline(events.DEFINITION, "Local Events", TIER_EVENTS),
    SubPipeline(photos.DEFINITION, "Photo Analysis", WEEKLY),
    SubPipeline(traffic.DEFINITION, "Busy Times", WEEKLY),
    SubPipeline(weather.DEFINITION, "Weather"),
    SubPipeline(insights.DEFINITION, "Insight Generation"),
)


def runs_today(sub: SubPipeline, limits: TierLimits, weekly_day: bool) -> bool:
    if sub.cadence == WEEKLY:
        return weekly_day
    if sub.cadence == TIER_EVENTS:
        return limits.events_cadence == DAILY or weekly_day
    return True


def applicable_pipelines(limits: TierLimits, weekly_day: bool) -> List[JobType]:
    return [s.definition.job_type for s in SUB_PIPELINES if runs_today(s, limits, weekly_day)]


@dataclass(kw_only=True)
class RefreshAllContext(PipelineContext):
    deps: PipelineDeps
    tier: SubscriptionTier
    limits: TierLimits
    weekly_day: bool


async def build_context(deps: PipelineDeps, tenant_id: str, location_id: str) -> RefreshAllContext:
    scope = await load_scope(deps, tenant_id, location_id)
    return RefreshAllContext(
        tenant_id=tenant_id,
        location_id=location_id,
        date_key=deps.today_key(),
        deps=deps,
        tier=scope.tier,
        limits=scope.limits,
        weekly_day=deps.is_weekly_day(),
    )


async def run_sub_pipeline(sub: SubPipeline, ctx: RefreshAllContext) -> Dict[str, Any]:
    if not runs_today(sub, ctx.limits, ctx.weekly_day):
        return {"pipeline": sub.name, "skipped": True, "reason": "Runs on the weekly refresh day"}

    try:
        sub_ctx = await sub.definition.build_context(ctx.deps, ctx.tenant_id, ctx.location_id)
    except SetupError as exc:
        return {"pipeline": sub.name, "skipped": True, "reason": str(exc)}

    steps = sub.definition.build_steps(sub_ctx)
    completed = failed = 0
    for step in steps:
        try:
            await step.run(sub_ctx)
            completed += 1
        except Exception as exc:
            failed += 1
            sub_ctx.warnings.append(f"{step.label}: {describe_error(exc)}")
            if step.on_fail is OnFail.STOP:
                logger.warning("sub_pipeline_stopped", pipeline=sub.name, step=step.name)
                break

    ctx.warnings.extend(f"{sub.label}: {w}" for w in sub_ctx.warnings)
    preview: Dict[str, Any] = {
        "pipeline": sub.name,
        "totalSteps": len(steps),
        "completed": completed,
        "failed": failed,
    }
    if sub_ctx.warnings:
        preview["warnings"] = len(sub_ctx.warnings)
    return preview


def build_steps(ctx: RefreshAllContext) -> List[StepDef[RefreshAllContext]]:
    return [StepDef(f"{sub.name}_pipeline", sub.label, partial(run_sub_pipeline, sub)) for sub in SUB_PIPELINES]


DEFINITION = PipelineDefinition(
    job_type=JobType.REFRESH_ALL,
    build_context=build_context,
    build_steps=build_steps,
    redirect_path="/home",
)
