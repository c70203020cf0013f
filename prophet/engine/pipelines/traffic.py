# prophet/engine/pipelines/traffic.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple

from app.services.insights import quiet_window_insights, traffic_insights
from app.services.normalize import normalize_busy_times
from app.services.snapshots import SnapshotWrite

from ..context import JobType, PipelineContext, StepDef
from ..registry import PipelineDefinition, PipelineDeps
from .common import (
    CompetitorRef,
    LocationRef,
    fan_out,
    load_scope,
    persist_insights,
    record_snapshot,
    warn_for,
    with_place_ids,
)


@dataclass(kw_only=True)
class TrafficContext(PipelineContext):
    deps: PipelineDeps
    location: LocationRef
    competitors: List[CompetitorRef] = field(default_factory=list)
    writes: Dict[str, Tuple[str, SnapshotWrite]] = field(default_factory=dict)


async def build_context(deps: PipelineDeps, tenant_id: str, location_id: str) -> TrafficContext:
    scope = await load_scope(deps, tenant_id, location_id)
    return TrafficContext(
        tenant_id=tenant_id,
        location_id=location_id,
        date_key=deps.today_key(),
        deps=deps,
        location=scope.location,
        competitors=list(scope.competitors),
    )


async def load_competitors(ctx: TrafficContext) -> Dict[str, Any]:
    ctx.competitors = with_place_ids(ctx.competitors)
    return {"competitors": len(ctx.competitors)}


async def fetch_busy_times(ctx: TrafficContext) -> Dict[str, Any]:
    async def _one(comp: CompetitorRef) -> SnapshotWrite:
        data = normalize_busy_times(await ctx.deps.providers.busy_times(comp.provider_entity_id))
        write = await record_snapshot(
            ctx.deps,
            ctx,
            entity_type="competitor",
            entity_id=comp.id,
            snapshot_type="busy_times",
            data=data,
        )
        ctx.writes[comp.id] = (comp.name, write)
        return write

    results = await fan_out(
        ctx.competitors,
        _one,
        warn_for(ctx, "Busy times for {name}: {message}"),
        concurrency=ctx.deps.settings.provider_concurrency,
        delay=ctx.deps.settings.provider_delay_seconds,
    )
    ok = [r for r in results if r is not None]
    return {"fetched": len(ok), "withData": sum(1 for r in ok if r.current.get("days"))}


async def generate_traffic_insights(ctx: TrafficContext) -> Dict[str, Any]:
    any_changed = False
    for comp_id, (name, write) in ctx.writes.items():
        any_changed = any_changed or write.changed
        if write.comparable:
            ctx.insights.extend(traffic_insights(name, comp_id, write.previous, write.current))
    if any_changed:
        ctx.insights.extend(
            quiet_window_insights({cid: w.current for cid, (_, w) in ctx.writes.items() if w.current})
        )
    saved = await persist_insights(ctx.deps, ctx)
    return {"insights": saved}


def build_steps(ctx: TrafficContext) -> List[StepDef[TrafficContext]]:
    return [
        StepDef("load_competitors", "Loading competitors", load_competitors),
        StepDef("fetch_busy_times", "Fetching busy times", fetch_busy_times),
        StepDef("generate_traffic_insights", "Generating traffic insights", generate_traffic_insights),
    ]


DEFINITION = PipelineDefinition(
    job_type=JobType.BUSY_TIMES,
    build_context=build_context,
    build_steps=build_steps,
    redirect_path="/traffic",
)
