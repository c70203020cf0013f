# prophet/engine/pipelines/visibility.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from app.services.insights import competitor_seo_insights, keyword_rank_insights, seo_insights
from app.services.normalize import domain_of, normalize_domain_rank, normalize_keywords
from app.services.snapshots import SnapshotWrite
from app.services.tiers import TierLimits

from ..context import JobType, OnFail, PipelineContext, StepDef
from ..errors import SetupError
from ..registry import PipelineDefinition, PipelineDeps
from .common import (
    CompetitorRef,
    LocationRef,
    fan_out,
    load_scope,
    persist_insights,
    record_snapshot,
    warn_for,
)


@dataclass(kw_only=True)
class VisibilityContext(PipelineContext):
    deps: PipelineDeps
    location: LocationRef
    domain: str
    limits: TierLimits
    competitors: List[CompetitorRef] = field(default_factory=list)
    tracked_keywords: List[str] = field(default_factory=list)
    rank_write: Optional[SnapshotWrite] = None
    serp_write: Optional[SnapshotWrite] = None
    competitor_writes: Dict[str, Tuple[str, SnapshotWrite]] = field(default_factory=dict)


async def build_context(deps: PipelineDeps, tenant_id: str, location_id: str) -> VisibilityContext:
    scope = await load_scope(deps, tenant_id, location_id)
    domain = domain_of(scope.location.website)
    if not domain:
        raise SetupError("No website configured for this location")
    return VisibilityContext(
        tenant_id=tenant_id,
        location_id=location_id,
        date_key=deps.today_key(),
        deps=deps,
        location=scope.location,
        domain=domain,
        limits=scope.limits,
        competitors=[c for c in scope.competitors if domain_of(c.website)],
    )


async def domain_rank(ctx: VisibilityContext) -> Dict[str, Any]:
    overview = normalize_domain_rank(await ctx.deps.providers.domain_rank(ctx.domain))
    ctx.rank_write = await record_snapshot(
        ctx.deps,
        ctx,
        entity_type="location",
        entity_id=ctx.location.id,
        snapshot_type="seo_domain_rank",
        data=overview,
    )
    return {"domain": ctx.domain, "etv": overview["etv"], "keywords": overview["keywords"]}


async def ranked_keywords(ctx: VisibilityContext) -> Dict[str, Any]:
    raw = await ctx.deps.providers.ranked_keywords(ctx.domain, ctx.limits.tracked_keywords * 2)
    snapshot = normalize_keywords(raw)
    await record_snapshot(
        ctx.deps,
        ctx,
        entity_type="location",
        entity_id=ctx.location.id,
        snapshot_type="seo_ranked_keywords",
        data=snapshot,
    )
    by_volume = sorted(snapshot["keywords"], key=lambda k: -(k.get("searchVolume") or 0))
    ctx.tracked_keywords = [k["keyword"] for k in by_volume[: ctx.limits.tracked_keywords]]
    return {"keywords": len(snapshot["keywords"]), "tracked": len(ctx.tracked_keywords)}


async def serp_tracking(ctx: VisibilityContext) -> Dict[str, Any]:
    if not ctx.tracked_keywords:
        return {"tracked": 0}
    positions = await ctx.deps.providers.serp_positions(
        ctx.tracked_keywords, ctx.domain, ctx.location.search_location
    )
    snapshot = normalize_keywords(positions)
    ctx.serp_write = await record_snapshot(
        ctx.deps,
        ctx,
        entity_type="location",
        entity_id=ctx.location.id,
        snapshot_type="seo_serp_ranks",
        data=snapshot,
    )
    ranked = [k for k in snapshot["keywords"] if k.get("position")]
    return {"tracked": len(snapshot["keywords"]), "ranking": len(ranked)}


async def competitor_seo_data(ctx: VisibilityContext) -> Dict[str, Any]:
    if not ctx.competitors:
        return {"competitors": 0}

    async def _one(comp: CompetitorRef) -> SnapshotWrite:
        overview = normalize_domain_rank(await ctx.deps.providers.domain_rank(domain_of(comp.website)))
        write = await record_snapshot(
            ctx.deps,
            ctx,
            entity_type="competitor",
            entity_id=comp.id,
            snapshot_type="seo_domain_rank",
            data=overview,
        )
        ctx.competitor_writes[comp.id] = (comp.name, write)
        return write

    results = await fan_out(
        ctx.competitors,
        _one,
        warn_for(ctx, "SEO data for {name}: {message}"),
        concurrency=ctx.deps.settings.provider_concurrency,
    )
    return {"competitors": len(ctx.competitors), "saved": sum(1 for r in results if r is not None)}


async def generate_seo_insights(ctx: VisibilityContext) -> Dict[str, Any]:
    if ctx.rank_write is not None and ctx.rank_write.comparable:
        ctx.insights.extend(seo_insights(ctx.rank_write.previous, ctx.rank_write.current))
    if ctx.serp_write is not None and ctx.serp_write.comparable:
        ctx.insights.extend(keyword_rank_insights(ctx.serp_write.previous, ctx.serp_write.current))
    for comp_id, (name, write) in ctx.competitor_writes.items():
        if write.comparable:
            ctx.insights.extend(competitor_seo_insights(name, comp_id, write.previous, write.current))
    saved = await persist_insights(ctx.deps, ctx)
    return {"insights": saved}


def build_steps(ctx: VisibilityContext) -> List[StepDef[VisibilityContext]]:
    return [
        StepDef("domain_rank", "Checking domain authority", domain_rank, OnFail.STOP),
        StepDef("ranked_keywords", "Loading ranked keywords", ranked_keywords),
        StepDef("serp_tracking", "Tracking search positions", serp_tracking),
        StepDef("competitor_seo_data", "Comparing competitor SEO", competitor_seo_data),
        StepDef("seo_insights", "Generating SEO insights", generate_seo_insights),
    ]


DEFINITION = PipelineDefinition(
    job_type=JobType.VISIBILITY,
    build_context=build_context,
    build_steps=build_steps,
    redirect_path="/visibility",
)
