# app/services/ambient.py
from __future__ import annotations

import asyncio
import json
import random
import re
import uuid
from typing import Any, Callable, Dict, List, Optional

import structlog
from sqlalchemy.orm import Session

from app.models.location import Competitor, Location
from app.models.snapshot import Insight
from prophet.engine.transport import EventChannel

logger = structlog.get_logger("prophet.ambient")

FROM_YOUR_DATA = "from_your_data"
INDUSTRY_TIP = "industry_tip"
DID_YOU_KNOW = "did_you_know"

MAX_INSIGHT_CARDS = 6
TIPS_PER_FEED = 4

INDUSTRY_TIPS = [
    "Businesses that respond to reviews within 24 hours see 33% higher engagement.",
    "Menu items with descriptions sell 27% more than those without.",
    "Locations with complete Google Business profiles get 7x more clicks.",
    "Seasonal menu changes can boost revenue by 15-20%.",
    "Online ordering availability increases revenue by an average of 30%.",
    "Businesses with 4+ star ratings capture 95% of local search clicks.",
    "Photo-rich business profiles receive 42% more direction requests.",
    "Posting weekly updates on your business profile keeps you visible in local search.",
    "Most diners check a menu online before choosing where to eat.",
    "Local events can lift foot traffic for nearby businesses by double digits.",
]

_JSON_ARRAY = re.compile(r"\[[\s\S]*\]")


def card(category: str, text: str, *, card_id: Optional[str] = None, icon: Optional[str] = None) -> Dict[str, Any]:
    out = {"id": card_id or f"{category}-{uuid.uuid4().hex[:8]}", "category": category, "text": text}
    if icon:
        out["icon"] = icon
    return out


def load_location(db: Session, organization_id: str, location_id: str) -> Optional[Location]:
    loc = db.get(Location, location_id)
    if loc is None or loc.organization_id != organization_id:
        return None
    return loc


def build_cards(db: Session, location: Location, *, rng: random.Random | None = None) -> List[Dict[str, Any]]:
    """Cards from tenant data first, then a few shuffled industry tips."""
    rng = rng or random.Random()
    cards: List[Dict[str, Any]] = []

    recent = (
        db.query(Insight)
        .filter(Insight.location_id == location.id)
        .order_by(Insight.created_at.desc())
        .limit(20)
        .all()
    )
    rng.shuffle(recent)
    for row in recent[:MAX_INSIGHT_CARDS]:
        cards.append(card(FROM_YOUR_DATA, row.title, card_id=f"insight-{row.id}", icon="lightbulb"))

    area = ", ".join(p for p in (location.city, location.region) if p)
    where = f" in {area}" if area else ""
    cards.append(card(FROM_YOUR_DATA, f"Analyzing data for {location.name}{where}.", card_id="location-summary", icon="map-pin"))

    competitors = (
        db.query(Competitor)
        .filter(Competitor.location_id == location.id, Competitor.is_active.is_(True))
        .count()
    )
    if competitors:
        noun = "competitor" if competitors == 1 else "competitors"
        cards.append(
            card(
                FROM_YOUR_DATA,
                f"You're tracking {competitors} {noun} for this location.",
                card_id="competitor-count",
                icon="users",
            )
        )

    tips = rng.sample(INDUSTRY_TIPS, k=min(TIPS_PER_FEED, len(INDUSTRY_TIPS)))
    for i, tip in enumerate(tips):
        cards.append(card(INDUSTRY_TIP, tip, card_id=f"tip-{i}", icon="sparkles"))
    return cards


def tip_prompt(location_name: str, area: str, count: int) -> str:
    return (
        f'Generate {count} brief, specific, actionable tips for a restaurant/business called "{location_name}" '
        f"in {area or 'their area'}. Each tip should be one sentence and reference local market dynamics. "
        "Return as JSON array of strings."
    )


def parse_tips(text: str, limit: int) -> List[str]:
    match = _JSON_ARRAY.search(text or "")
    if not match:
        return []
    try:
        items = json.loads(match.group(0))
    except ValueError:
        return []
    return [str(t).strip() for t in items if isinstance(t, str) and t.strip()][:limit]


async def stream_ambient_feed(
    channel: EventChannel,
    *,
    load: Callable[[], List[Dict[str, Any]]],
    location_name: str,
    area: str,
    generate_text: Optional[Callable[[str], Any]] = None,
    card_delay: float = 0.2,
    tip_delay: float = 3.0,
    tip_count: int = 5,
) -> None:
    """
    Phase 1: data cards paced by card_delay. Phase 2: generated tips paced
    by tip_delay; generation problems are logged and skipped. Always ends
    with `done`.
    """
    try:
        try:
            cards = await asyncio.to_thread(load)
        except Exception as exc:
            logger.warning("ambient_cards_failed", error=str(exc))
            cards = []
        for item in cards:
            if channel.closed:
                return
            channel.emit("card", item)
            if card_delay:
                await asyncio.sleep(card_delay)

        if generate_text is not None and not channel.closed:
            try:
                text = await generate_text(tip_prompt(location_name, area, tip_count))
                tips = parse_tips(text, tip_count)
            except Exception as exc:
                logger.info("ambient_tip_generation_skipped", error=str(exc))
                tips = []
            for i, tip in enumerate(tips):
                if channel.closed:
                    return
                if tip_delay:
                    await asyncio.sleep(tip_delay)
                channel.emit("card", card(DID_YOU_KNOW, tip, card_id=f"gemini-tip-{i}", icon="sparkles"))

        channel.emit("done", {})
    finally:
        channel.close()
