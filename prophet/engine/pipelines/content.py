# prophet/engine/pipelines/content.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from app.services.insights import menu_insights
from app.services.normalize import (
    menu_item_count,
    merge_menus,
    normalize_menu,
    normalize_site_content,
    normalize_url,
)
from app.services.snapshots import SnapshotWrite

from ..context import JobType, OnFail, PipelineContext, StepDef
from ..errors import SetupError, StepError, describe_error
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

MENU_PAGES_PER_SITE = 2


@dataclass(kw_only=True)
class ContentContext(PipelineContext):
    deps: PipelineDeps
    location: LocationRef
    website: str
    competitors: List[CompetitorRef] = field(default_factory=list)
    site_write: Optional[SnapshotWrite] = None
    menus: List[Dict[str, Any]] = field(default_factory=list)
    menu_write: Optional[SnapshotWrite] = None
    competitor_writes: Dict[str, Tuple[str, SnapshotWrite]] = field(default_factory=dict)


async def build_context(deps: PipelineDeps, tenant_id: str, location_id: str) -> ContentContext:
    scope = await load_scope(deps, tenant_id, location_id)
    website = normalize_url(scope.location.website)
    if not website:
        raise SetupError("No website configured for this location")
    return ContentContext(
        tenant_id=tenant_id,
        location_id=location_id,
        date_key=deps.today_key(),
        deps=deps,
        location=scope.location,
        website=website,
        competitors=[c for c in scope.competitors if normalize_url(c.website)],
    )


async def scrape_homepage(ctx: ContentContext) -> Dict[str, Any]:
    page = await ctx.deps.providers.scrape_page(ctx.website)
    if not page:
        raise StepError(f"Nothing returned for {ctx.website}")
    content = normalize_site_content(ctx.website, page)
    ctx.site_write = await record_snapshot(
        ctx.deps,
        ctx,
        entity_type="location",
        entity_id=ctx.location.id,
        snapshot_type="site_content",
        data=content,
    )
    return {"title": content["title"], "changed": ctx.site_write.changed}


async def extract_menu(ctx: ContentContext) -> Dict[str, Any]:
    providers = ctx.deps.providers
    try:
        urls = await providers.discover_menu_urls(ctx.website, MENU_PAGES_PER_SITE)
    except Exception as exc:
        ctx.warnings.append(f"Menu page discovery failed: {describe_error(exc)}")
        urls = []
    if not urls:
        urls = [ctx.website]

    for url in urls[:MENU_PAGES_PER_SITE]:
        try:
            raw = await providers.extract_menu(url)
        except Exception:
            ctx.warnings.append(f"Could not scrape: {url}")
            continue
        menu = normalize_menu(raw)
        if menu_item_count(menu):
            ctx.menus.append(menu)
    return {"menuPages": len(ctx.menus), "urls": urls[:MENU_PAGES_PER_SITE]}


async def merge_save_menu(ctx: ContentContext) -> Dict[str, Any]:
    if not ctx.menus:
        ctx.warnings.append("No menu content found on the website")
        return {"items": 0}
    merged = merge_menus(ctx.menus)
    ctx.menu_write = await record_snapshot(
        ctx.deps,
        ctx,
        entity_type="location",
        entity_id=ctx.location.id,
        snapshot_type="menu",
        data=merged,
    )
    return {
        "categories": len(merged["categories"]),
        "items": menu_item_count(merged),
        "changed": ctx.menu_write.changed,
    }


async def _competitor_menu(ctx: ContentContext, comp: CompetitorRef) -> SnapshotWrite:
    providers = ctx.deps.providers
    site = normalize_url(comp.website)
    urls = await providers.discover_menu_urls(site, 1) or [site]
    menu = normalize_menu(await providers.extract_menu(urls[0]))
    write = await record_snapshot(
        ctx.deps,
        ctx,
        entity_type="competitor",
        entity_id=comp.id,
        snapshot_type="menu",
        data=menu,
    )
    ctx.competitor_writes[comp.id] = (comp.name, write)
    return write


async def competitor_content(ctx: ContentContext) -> Dict[str, Any]:
    if not ctx.competitors:
        return {"competitors": 0}

    async def _one(comp: CompetitorRef) -> SnapshotWrite:
        return await _competitor_menu(ctx, comp)

    results = await fan_out(
        ctx.competitors,
        _one,
        warn_for(ctx, "Menu snapshot save failed for {name}"),
        concurrency=ctx.deps.settings.provider_concurrency,
    )
    ok = [r for r in results if r is not None]
    return {
        "competitors": len(ctx.competitors),
        "saved": len(ok),
        "changed": sum(1 for r in ok if r.changed),
    }


async def generate_insights(ctx: ContentContext) -> Dict[str, Any]:
    if ctx.menu_write is not None and ctx.menu_write.comparable:
        ctx.insights.extend(
            menu_insights(ctx.location.name, None, ctx.menu_write.previous, ctx.menu_write.current)
        )
    for comp_id, (name, write) in ctx.competitor_writes.items():
        if write.comparable:
            ctx.insights.extend(menu_insights(name, comp_id, write.previous, write.current))
    saved = await persist_insights(ctx.deps, ctx)
    return {"insights": saved}


def build_steps(ctx: ContentContext) -> List[StepDef[ContentContext]]:
    return [
        StepDef("scrape_homepage", "Scraping your website", scrape_homepage, OnFail.STOP),
        StepDef("extract_menu", "Extracting menu", extract_menu),
        StepDef("merge_save_menu", "Saving menu snapshot", merge_save_menu),
        StepDef("competitor_content", "Scanning competitor menus", competitor_content),
        StepDef("generate_insights", "Generating content insights", generate_insights),
    ]


DEFINITION = PipelineDefinition(
    job_type=JobType.CONTENT,
    build_context=build_context,
    build_steps=build_steps,
    redirect_path="/content",
)
