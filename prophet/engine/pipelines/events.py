# prophet/engine/pipelines/events.py
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from app.services.insights import event_insights
from app.services.normalize import build_events_snapshot, canonical_text
from app.services.snapshots import SnapshotWrite
from app.services.tiers import TierLimits

from ..context import JobType, PipelineContext, StepDef
from ..errors import StepError, describe_error
from ..registry import PipelineDefinition, PipelineDeps
from .common import CompetitorRef, LocationRef, load_scope, persist_insights, record_snapshot

DATE_RANGES = ("weekend", "week", "today")


@dataclass(kw_only=True)
class EventsContext(PipelineContext):
    deps: PipelineDeps
    location: LocationRef
    limits: TierLimits
    competitors: List[CompetitorRef] = field(default_factory=list)
    write: Optional[SnapshotWrite] = None
    matches: List[Dict[str, Any]] = field(default_factory=list)

    def date_ranges(self) -> List[str]:
        return list(DATE_RANGES[: max(1, self.limits.events_queries_per_run)])


async def build_context(deps: PipelineDeps, tenant_id: str, location_id: str) -> EventsContext:
    scope = await load_scope(deps, tenant_id, location_id)
    return EventsContext(
        tenant_id=tenant_id,
        location_id=location_id,
        date_key=deps.today_key(),
        deps=deps,
        location=scope.location,
        limits=scope.limits,
        competitors=list(scope.competitors),
    )


async def fetch_events(ctx: EventsContext) -> Dict[str, Any]:
    keyword = f"events near {ctx.location.city or ctx.location.name}"
    ranges = ctx.date_ranges()
    results = await asyncio.gather(
        *(
            ctx.deps.providers.google_events(
                keyword, ctx.location.search_location, date_range, ctx.limits.events_max_depth
            )
            for date_range in ranges
        ),
        return_exceptions=True,
    )

    raw_events: List[Dict[str, Any]] = []
    failures = 0
    for date_range, result in zip(ranges, results):
        if isinstance(result, BaseException):
            failures += 1
            ctx.warnings.append(f"Events query '{date_range}': {describe_error(result)}")
            continue
        raw_events.extend(result or [])
    if failures == len(ranges):
        raise StepError("All event queries failed")

    snapshot = build_events_snapshot(raw_events)
    ctx.write = await record_snapshot(
        ctx.deps,
        ctx,
        entity_type="location",
        entity_id=ctx.location.id,
        snapshot_type="events",
        data=snapshot,
    )
    return {
        "queries": len(ranges),
        "events": snapshot["summary"]["totalEvents"],
        "changed": ctx.write.changed,
    }


def _matches_venue(comp: CompetitorRef, event: Dict[str, Any]) -> bool:
    name = canonical_text(comp.name)
    venue = canonical_text(event.get("venueName"))
    if name and venue and (name in venue or venue in name):
        return True
    address = canonical_text(comp.address)
    return bool(address) and address == canonical_text(event.get("venueAddress"))


async def match_competitors(ctx: EventsContext) -> Dict[str, Any]:
    if ctx.write is None or not ctx.competitors:
        return {"matches": 0}
    for event in ctx.write.current.get("events", []):
        for comp in ctx.competitors:
            if _matches_venue(comp, event):
                ctx.matches.append(
                    {
                        "competitor_id": comp.id,
                        "competitor_name": comp.name,
                        "event_uid": event["uid"],
                        "event_title": event["title"],
                        "start": event.get("start"),
                    }
                )
    return {"matches": len(ctx.matches)}


async def generate_event_insights(ctx: EventsContext) -> Dict[str, Any]:
    if ctx.write is None or not ctx.write.changed:
        return {"insights": 0, "changed": False}
    # the very first snapshot has nothing to compare against, but matches still count
    previous = ctx.write.previous if ctx.write.previous is not None else {"events": ctx.write.current["events"]}
    ctx.insights.extend(event_insights(previous, ctx.write.current, ctx.matches))
    saved = await persist_insights(ctx.deps, ctx)
    return {"insights": saved, "changed": True}


def build_steps(ctx: EventsContext) -> List[StepDef[EventsContext]]:
    return [
        StepDef("fetch_events", "Searching local events", fetch_events),
        StepDef("match_competitors", "Matching events to competitors", match_competitors),
        StepDef("generate_event_insights", "Generating event insights", generate_event_insights),
    ]


DEFINITION = PipelineDefinition(
    job_type=JobType.EVENTS,
    build_context=build_context,
    build_steps=build_steps,
    redirect_path="/events",
)
