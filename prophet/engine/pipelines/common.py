# prophet/engine/pipelines/common.py
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Sequence, Tuple, TypeVar

from app.models.location import Competitor, Location
from app.services.snapshots import SnapshotWrite
from app.services.tiers import SubscriptionTier, TierLimits, get_limits, load_tenant_tier

from ..context import PipelineContext
from ..errors import SetupError, describe_error
from ..registry import PipelineDeps

T = TypeVar("T")
R = TypeVar("R")

UNKNOWN_ENTITY_PREFIX = "unknown:"


@dataclass(frozen=True)
class LocationRef:
    id: str
    organization_id: str
    name: str
    city: Optional[str] = None
    region: Optional[str] = None
    country: Optional[str] = None
    website: Optional[str] = None
    geo_lat: Optional[float] = None
    geo_lng: Optional[float] = None
    primary_place_id: Optional[str] = None

    @property
    def area(self) -> str:
        return ", ".join(p for p in (self.city, self.region) if p) or "your area"

    @property
    def search_location(self) -> str:
        parts = [p for p in (self.city, self.region) if p]
        parts.append("United States" if (self.country or "US") == "US" else (self.country or ""))
        return ",".join(parts)


@dataclass(frozen=True)
class CompetitorRef:
    id: str
    name: str
    website: Optional[str] = None
    address: Optional[str] = None
    provider_entity_id: Optional[str] = None


@dataclass(frozen=True)
class TenantScope:
    location: LocationRef
    competitors: Tuple[CompetitorRef, ...]
    tier: SubscriptionTier
    limits: TierLimits


async def in_thread(fn: Callable[..., R], *args: Any, **kwargs: Any) -> R:
    return await asyncio.to_thread(fn, *args, **kwargs)


def _load_scope(deps: PipelineDeps, tenant_id: str, location_id: str) -> TenantScope:
    with deps.session() as db:
        loc = db.get(Location, location_id)
        if loc is None or loc.organization_id != tenant_id:
            raise SetupError("Location not found")
        tier = load_tenant_tier(db, tenant_id)
        limits = get_limits(tier)
        rows = (
            db.query(Competitor)
            .filter(Competitor.location_id == location_id, Competitor.is_active.is_(True))
            .order_by(Competitor.created_at.asc(), Competitor.id.asc())
            .limit(limits.max_competitors_per_location)
            .all()
        )
        location = LocationRef(
            id=loc.id,
            organization_id=loc.organization_id,
            name=loc.name,
            city=loc.city,
            region=loc.region,
            country=loc.country,
            website=loc.website,
            geo_lat=loc.geo_lat,
            geo_lng=loc.geo_lng,
            primary_place_id=loc.primary_place_id,
        )
        competitors = tuple(
            CompetitorRef(
                id=c.id,
                name=c.name,
                website=c.website,
                address=c.address,
                provider_entity_id=c.provider_entity_id,
            )
            for c in rows
        )
    return TenantScope(location=location, competitors=competitors, tier=tier, limits=limits)


async def load_scope(deps: PipelineDeps, tenant_id: str, location_id: str) -> TenantScope:
    """Location (tenant-checked), active competitors within the tier cap, tier limits."""
    return await in_thread(_load_scope, deps, tenant_id, location_id)


def with_place_ids(competitors: Iterable[CompetitorRef]) -> List[CompetitorRef]:
    return [
        c
        for c in competitors
        if c.provider_entity_id and not c.provider_entity_id.startswith(UNKNOWN_ENTITY_PREFIX)
    ]


async def fan_out(
    items: Sequence[T],
    fn: Callable[[T], Awaitable[R]],
    on_error: Callable[[T, BaseException], None],
    *,
    concurrency: int = 3,
    delay: float = 0.0,
) -> List[Optional[R]]:
    """
    Run fn over items with bounded concurrency; a failing item calls
    on_error and yields None instead of failing the whole step.
    """
    sem = asyncio.Semaphore(max(1, concurrency))

    async def _one(item: T) -> Optional[R]:
        async with sem:
            try:
                return await fn(item)
            except Exception as exc:
                on_error(item, exc)
                return None
            finally:
                if delay:
                    await asyncio.sleep(delay)

    return list(await asyncio.gather(*(_one(i) for i in items)))


def warn_for(ctx: PipelineContext, template: str) -> Callable[[Any, BaseException], None]:
    """on_error callback appending `template` formatted with name/message."""

    def _warn(item: Any, exc: BaseException) -> None:
        ctx.warnings.append(template.format(name=getattr(item, "name", item), message=describe_error(exc)))

    return _warn


async def record_snapshot(
    deps: PipelineDeps,
    ctx: PipelineContext,
    *,
    entity_type: str,
    entity_id: str,
    snapshot_type: str,
    data: dict,
    date_key: Optional[str] = None,
) -> SnapshotWrite:
    return await in_thread(
        deps.snapshots.record,
        entity_type=entity_type,
        entity_id=entity_id,
        location_id=ctx.location_id,
        snapshot_type=snapshot_type,
        date_key=date_key or ctx.date_key,
        data=data,
    )


async def persist_insights(deps: PipelineDeps, ctx: PipelineContext) -> int:
    if not ctx.insights:
        return 0
    return await in_thread(deps.insights.save, ctx.location_id, ctx.date_key, list(ctx.insights))
