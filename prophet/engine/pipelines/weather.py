# prophet/engine/pipelines/weather.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional

from app.services.insights import weather_insights
from app.services.snapshots import SnapshotWrite

from ..context import JobType, OnFail, PipelineContext, StepDef
from ..errors import StepError, describe_error
from ..registry import PipelineDefinition, PipelineDeps
from .common import LocationRef, in_thread, load_scope, persist_insights, record_snapshot

PATIO_CATEGORY = "patio_outdoor"


@dataclass(kw_only=True)
class WeatherContext(PipelineContext):
    deps: PipelineDeps
    location: LocationRef
    today: Optional[Dict[str, Any]] = None
    yesterday: Optional[Dict[str, Any]] = None
    today_write: Optional[SnapshotWrite] = None


async def build_context(deps: PipelineDeps, tenant_id: str, location_id: str) -> WeatherContext:
    scope = await load_scope(deps, tenant_id, location_id)
    return WeatherContext(
        tenant_id=tenant_id,
        location_id=location_id,
        date_key=deps.today_key(),
        deps=deps,
        location=scope.location,
    )


async def fetch_weather(ctx: WeatherContext) -> Dict[str, Any]:
    loc = ctx.location
    if loc.geo_lat is None or loc.geo_lng is None:
        ctx.warnings.append("Location has no coordinates; weather skipped")
        return {"skipped": True, "reason": "no_coordinates"}

    today = ctx.deps.clock().date()
    # yesterday first so today's row compares against it
    for label, day in (("Yesterday's weather", today - timedelta(days=1)), ("Today's weather", today)):
        try:
            summary = await ctx.deps.providers.weather_for_day(loc.geo_lat, loc.geo_lng, day)
        except Exception as exc:
            ctx.warnings.append(f"{label}: {describe_error(exc)}")
            continue
        write = await record_snapshot(
            ctx.deps,
            ctx,
            entity_type="location",
            entity_id=loc.id,
            snapshot_type="weather",
            data=summary,
            date_key=day.isoformat(),
        )
        if day == today:
            ctx.today, ctx.today_write = summary, write
        else:
            ctx.yesterday = summary

    if ctx.today is None and ctx.yesterday is None:
        raise StepError("No weather data available")

    return {
        "today": (ctx.today or {}).get("condition"),
        "tempMax": (ctx.today or {}).get("temp_max"),
        "yesterday": (ctx.yesterday or {}).get("condition"),
    }


def _competitors_show_patio(deps: PipelineDeps, location_id: str) -> bool:
    for row in deps.snapshots.for_location(location_id, "photos"):
        if any(p.get("category") == PATIO_CATEGORY for p in row["data"].get("photos", [])):
            return True
    return False


async def generate_weather_signals(ctx: WeatherContext) -> Dict[str, Any]:
    if ctx.today is None or ctx.today_write is None or not ctx.today_write.changed:
        return {"insights": 0, "changed": False}

    has_patio = await in_thread(_competitors_show_patio, ctx.deps, ctx.location_id)
    ctx.insights.extend(weather_insights(ctx.today, ctx.yesterday, has_patio=has_patio))
    saved = await persist_insights(ctx.deps, ctx)
    return {"insights": saved, "changed": True, "patioSignal": has_patio}


def build_steps(ctx: WeatherContext) -> List[StepDef[WeatherContext]]:
    return [
        StepDef("fetch_weather", "Fetching weather forecast", fetch_weather, OnFail.STOP),
        StepDef("generate_weather_signals", "Generating weather signals", generate_weather_signals),
    ]


DEFINITION = PipelineDefinition(
    job_type=JobType.WEATHER,
    build_context=build_context,
    build_steps=build_steps,
    redirect_path="/weather",
)
