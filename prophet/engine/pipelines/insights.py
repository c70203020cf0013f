# prophet/engine/pipelines/insights.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from app.services.insights import correlation_insights, profile_insights
from app.services.normalize import normalize_profile
from app.services.snapshots import SnapshotWrite

from ..context import JobType, OnFail, PipelineContext, StepDef
from ..errors import StepError
from ..registry import PipelineDefinition, PipelineDeps
from .common import (
    CompetitorRef,
    LocationRef,
    fan_out,
    in_thread,
    load_scope,
    persist_insights,
    record_snapshot,
    warn_for,
    with_place_ids,
)


@dataclass(kw_only=True)
class InsightsContext(PipelineContext):
    deps: PipelineDeps
    location: LocationRef
    competitors: List[CompetitorRef] = field(default_factory=list)
    location_write: Optional[SnapshotWrite] = None
    profile_writes: Dict[str, Tuple[str, SnapshotWrite]] = field(default_factory=dict)


async def build_context(deps: PipelineDeps, tenant_id: str, location_id: str) -> InsightsContext:
    scope = await load_scope(deps, tenant_id, location_id)
    return InsightsContext(
        tenant_id=tenant_id,
        location_id=location_id,
        date_key=deps.today_key(),
        deps=deps,
        location=scope.location,
        competitors=with_place_ids(scope.competitors),
    )


async def load_location_data(ctx: InsightsContext) -> Dict[str, Any]:
    place_id = ctx.location.primary_place_id
    if not place_id:
        raise StepError("Location is not linked to a Google place")
    profile = normalize_profile(await ctx.deps.providers.place_details(place_id))
    ctx.location_write = await record_snapshot(
        ctx.deps,
        ctx,
        entity_type="location",
        entity_id=ctx.location.id,
        snapshot_type="places_profile",
        data=profile,
    )
    if ctx.location_write.comparable:
        ctx.insights.extend(
            profile_insights(ctx.location.name, None, ctx.location_write.previous, ctx.location_write.current)
        )
    return {"rating": profile.get("rating"), "reviews": profile.get("reviewCount")}


async def competitor_analysis(ctx: InsightsContext) -> Dict[str, Any]:
    async def _one(comp: CompetitorRef) -> SnapshotWrite:
        profile = normalize_profile(await ctx.deps.providers.place_details(comp.provider_entity_id))
        write = await record_snapshot(
            ctx.deps,
            ctx,
            entity_type="competitor",
            entity_id=comp.id,
            snapshot_type="places_profile",
            data=profile,
        )
        ctx.profile_writes[comp.id] = (comp.name, write)
        return write

    await fan_out(
        ctx.competitors,
        _one,
        warn_for(ctx, "Profile refresh for {name}: {message}"),
        concurrency=ctx.deps.settings.provider_concurrency,
    )
    for comp_id, (name, write) in ctx.profile_writes.items():
        if write.comparable:
            ctx.insights.extend(profile_insights(name, comp_id, write.previous, write.current))
    return {"competitors": len(ctx.competitors), "refreshed": len(ctx.profile_writes)}


def _latest_location_snapshot(ctx: InsightsContext, snapshot_type: str) -> Optional[Dict[str, Any]]:
    return ctx.deps.snapshots.latest(
        "location", ctx.location.id, snapshot_type, on_or_before=ctx.date_key
    )


async def cross_source_correlation(ctx: InsightsContext) -> Dict[str, Any]:
    events = await in_thread(_latest_location_snapshot, ctx, "events")
    weather = await in_thread(_latest_location_snapshot, ctx, "weather")
    found = correlation_insights(events, weather, ctx.date_key)
    ctx.insights.extend(found)
    return {"hasEvents": events is not None, "hasWeather": weather is not None, "signals": len(found)}


async def save_insights(ctx: InsightsContext) -> Dict[str, Any]:
    saved = await persist_insights(ctx.deps, ctx)
    return {"saved": saved}


def build_steps(ctx: InsightsContext) -> List[StepDef[InsightsContext]]:
    return [
        StepDef("load_location_data", "Loading your business profile", load_location_data, OnFail.STOP),
        StepDef("competitor_analysis", "Analyzing competitors", competitor_analysis),
        StepDef("cross_source_correlation", "Correlating signals", cross_source_correlation),
        StepDef("save_insights", "Saving insights", save_insights),
    ]


DEFINITION = PipelineDefinition(
    job_type=JobType.INSIGHTS,
    build_context=build_context,
    build_steps=build_steps,
    redirect_path="/insights",
)
