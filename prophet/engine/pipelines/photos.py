# prophet/engine/pipelines/photos.py
from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from typing import Any, Dict, List, Set

from app.services.insights import photo_insights
from app.services.tiers import TierLimits

from ..context import JobType, PipelineContext, StepDef
from ..errors import describe_error
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
class PhotosContext(PipelineContext):
    deps: PipelineDeps
    location: LocationRef
    limits: TierLimits
    competitors: List[CompetitorRef] = field(default_factory=list)
    refs: Dict[str, List[Dict[str, Any]]] = field(default_factory=dict)
    # competitor id -> [{"hash", "ref", "bytes"}]
    downloads: Dict[str, List[Dict[str, Any]]] = field(default_factory=dict)
    # competitors whose downloads were cut short; no snapshot today
    incomplete: Set[str] = field(default_factory=set)
    # photo hash -> {"category", "description"}
    analyses: Dict[str, Dict[str, Any]] = field(default_factory=dict)


async def build_context(deps: PipelineDeps, tenant_id: str, location_id: str) -> PhotosContext:
    scope = await load_scope(deps, tenant_id, location_id)
    return PhotosContext(
        tenant_id=tenant_id,
        location_id=location_id,
        date_key=deps.today_key(),
        deps=deps,
        location=scope.location,
        limits=scope.limits,
        competitors=list(scope.competitors),
    )


async def load_competitors(ctx: PhotosContext) -> Dict[str, Any]:
    ctx.competitors = with_place_ids(ctx.competitors)
    return {"competitors": len(ctx.competitors), "names": [c.name for c in ctx.competitors][:10]}


async def fetch_photo_refs(ctx: PhotosContext) -> Dict[str, Any]:
    async def _one(comp: CompetitorRef) -> int:
        refs = await ctx.deps.providers.photo_refs(comp.provider_entity_id, ctx.limits.photos_per_competitor)
        ctx.refs[comp.id] = list(refs)[: ctx.limits.photos_per_competitor]
        return len(ctx.refs[comp.id])

    counts = await fan_out(
        ctx.competitors,
        _one,
        warn_for(ctx, "Photo refs for {name}: {message}"),
        concurrency=ctx.deps.settings.provider_concurrency,
    )
    return {"refs": sum(c or 0 for c in counts)}


async def download_photos(ctx: PhotosContext) -> Dict[str, Any]:
    seen: Set[str] = set()
    downloaded = duplicates = 0
    for comp in ctx.competitors:
        for ref in ctx.refs.get(comp.id, []):
            try:
                blob = await ctx.deps.providers.download_photo(ref["ref"])
            except Exception as exc:
                ctx.warnings.append(f"Download for {comp.name}: {describe_error(exc)}")
                # partial sets are never snapshotted
                partial = ctx.downloads.pop(comp.id, [])
                seen.difference_update(p["hash"] for p in partial)
                downloaded -= len(partial)
                ctx.incomplete.add(comp.id)
                break
            digest = hashlib.sha256(blob).hexdigest()
            if digest in seen:
                duplicates += 1
                continue
            seen.add(digest)
            ctx.downloads.setdefault(comp.id, []).append({"hash": digest, "ref": ref["ref"], "bytes": blob})
            downloaded += 1
    return {"downloaded": downloaded, "duplicates": duplicates, "incomplete": len(ctx.incomplete)}


def _known_analyses(deps: PipelineDeps, location_id: str) -> Dict[str, Dict[str, Any]]:
    known: Dict[str, Dict[str, Any]] = {}
    for row in deps.snapshots.for_location(location_id, "photos"):
        for photo in row["data"].get("photos", []):
            if photo.get("category"):
                known.setdefault(photo["hash"], {"category": photo["category"], "description": photo.get("description")})
    return known


async def analyze_vision(ctx: PhotosContext) -> Dict[str, Any]:
    known = await in_thread(_known_analyses, ctx.deps, ctx.location_id)
    analyzed = reused = failed = 0
    for photos in ctx.downloads.values():
        for photo in photos:
            if photo["hash"] in known:
                ctx.analyses[photo["hash"]] = known[photo["hash"]]
                reused += 1
                continue
            try:
                result = await ctx.deps.providers.analyze_photo(photo["bytes"])
            except Exception as exc:
                failed += 1
                if failed == 1:
                    ctx.warnings.append(f"Vision analysis: {describe_error(exc)}")
                continue
            ctx.analyses[photo["hash"]] = {
                "category": result.get("category") or "other",
                "description": result.get("description"),
            }
            analyzed += 1
    return {"analyzed": analyzed, "reused": reused, "failed": failed}


async def generate_photo_insights(ctx: PhotosContext) -> Dict[str, Any]:
    changed = 0
    for comp in ctx.competitors:
        photos = ctx.downloads.get(comp.id)
        if not photos:
            continue
        snapshot = {
            "photos": sorted(
                (
                    {
                        "hash": p["hash"],
                        "ref": p["ref"],
                        "category": ctx.analyses.get(p["hash"], {}).get("category"),
                        "description": ctx.analyses.get(p["hash"], {}).get("description"),
                    }
                    for p in photos
                ),
                key=lambda p: p["hash"],
            )
        }
        write = await record_snapshot(
            ctx.deps,
            ctx,
            entity_type="competitor",
            entity_id=comp.id,
            snapshot_type="photos",
            data=snapshot,
        )
        if write.comparable:
            changed += 1
            ctx.insights.extend(photo_insights(comp.name, comp.id, write.previous, write.current))
    saved = await persist_insights(ctx.deps, ctx)
    return {"changed": changed, "insights": saved}


def build_steps(ctx: PhotosContext) -> List[StepDef[PhotosContext]]:
    return [
        StepDef("load_competitors", "Loading competitors", load_competitors),
        StepDef("fetch_photo_refs", "Finding competitor photos", fetch_photo_refs),
        StepDef("download_photos", "Downloading photos", download_photos),
        StepDef("analyze_vision", "Analyzing photos", analyze_vision),
        StepDef("generate_photo_insights", "Generating photo insights", generate_photo_insights),
    ]


DEFINITION = PipelineDefinition(
    job_type=JobType.PHOTOS,
    build_context=build_context,
    build_steps=build_steps,
    redirect_path="/photos",
)
