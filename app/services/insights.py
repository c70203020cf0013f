# app/services/insights.py
"""
Insight persistence and the (previous, current) -> [GeneratedInsight]
generators used by the pipelines.

Generators are pure: they only look at the two snapshots they are given.
Callers invoke them when a snapshot changed and an earlier one exists.
"""
from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional

import structlog
from sqlalchemy.orm import Session

from app.db import SessionLocal, utcnow
from app.models.snapshot import Insight
from prophet.engine.context import GeneratedInsight

logger = structlog.get_logger("prophet.insights")

RATING_DELTA_MIN = 0.1
REVIEW_JUMP_MIN = 10
TRAFFIC_PEAK_SHIFT_MIN_HOURS = 2
QUIET_SCORE_MAX = 30
TEMP_SWING_MIN_F = 15.0
SEVERE_CONDITIONS = {"thunderstorm", "snow", "extreme"}


class InsightStore:
    def __init__(self, session_factory: Callable[[], Session] = SessionLocal) -> None:
        self._session_factory = session_factory

    @contextmanager
    def _session(self) -> Iterator[Session]:
        db = self._session_factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def save(self, location_id: str, date_key: str, insights: Iterable[GeneratedInsight]) -> int:
        """Upsert on (location_id, competitor_id, date_key, insight_type)."""
        items = list(insights)
        if not items:
            return 0
        now = utcnow()
        with self._session() as db:
            for item in items:
                row = (
                    db.query(Insight)
                    .filter(
                        Insight.location_id == location_id,
                        Insight.competitor_id.is_(None)
                        if item.competitor_id is None
                        else Insight.competitor_id == item.competitor_id,
                        Insight.date_key == date_key,
                        Insight.insight_type == item.insight_type,
                    )
                    .first()
                )
                if row is None:
                    row = Insight(
                        location_id=location_id,
                        competitor_id=item.competitor_id,
                        date_key=date_key,
                        insight_type=item.insight_type,
                        created_at=now,
                    )
                    db.add(row)
                row.title = item.title
                row.summary = item.summary
                row.confidence = item.confidence
                row.severity = item.severity
                row.evidence = item.evidence
                row.recommendations = item.recommendations
                row.updated_at = now
                # one insight per logical key even within a single batch
                db.flush()
        logger.info("insights_saved", location_id=location_id, date_key=date_key, count=len(items))
        return len(items)

    def recent_for_location(self, location_id: str, limit: int = 20) -> List[Dict[str, Any]]:
        with self._session() as db:
            rows = (
                db.query(Insight)
                .filter(Insight.location_id == location_id)
                .order_by(Insight.created_at.desc())
                .limit(limit)
                .all()
            )
            return [
                {
                    "id": r.id,
                    "insight_type": r.insight_type,
                    "title": r.title,
                    "summary": r.summary,
                    "date_key": r.date_key,
                    "competitor_id": r.competitor_id,
                }
                for r in rows
            ]


# ---------------------------------------------------------------------------
# helpers
# ---------------------------------------------------------------------------
def diff_fields(previous: Dict[str, Any], current: Dict[str, Any], keys: Iterable[str]) -> Dict[str, Any]:
    changes: Dict[str, Any] = {}
    for key in keys:
        before, after = previous.get(key), current.get(key)
        if before != after:
            changes[key] = {"from": before, "to": after}
    return changes


def _items_by_name(menu: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    items: Dict[str, Dict[str, Any]] = {}
    for category in menu.get("categories", []):
        for item in category.get("items", []):
            name = str(item.get("name", "")).strip().lower()
            if name:
                items[name] = item
    return items


# ---------------------------------------------------------------------------
# generators
# ---------------------------------------------------------------------------
def profile_insights(
    name: str, competitor_id: Optional[str], previous: Dict[str, Any], current: Dict[str, Any]
) -> List[GeneratedInsight]:
    """Rating, review count, price level and hours changes from place profiles."""
    out: List[GeneratedInsight] = []
    changes = diff_fields(previous, current, ("rating", "reviewCount", "priceLevel", "hours"))

    if "rating" in changes and previous.get("rating") is not None and current.get("rating") is not None:
        delta = round(float(current["rating"]) - float(previous["rating"]), 2)
        if abs(delta) >= RATING_DELTA_MIN:
            went_up = delta > 0
            out.append(
                GeneratedInsight(
                    insight_type="rating_change",
                    competitor_id=competitor_id,
                    title=f"{name} rating {'rose' if went_up else 'dropped'} to {current['rating']}",
                    summary=f"Google rating moved {delta:+.1f} since the last check.",
                    severity="info" if went_up else "warning",
                    confidence="high",
                    evidence={"ratingDelta": delta, **changes["rating"]},
                )
            )

    if "reviewCount" in changes:
        before = previous.get("reviewCount") or 0
        after = current.get("reviewCount") or 0
        if after - before >= REVIEW_JUMP_MIN:
            out.append(
                GeneratedInsight(
                    insight_type="review_velocity",
                    competitor_id=competitor_id,
                    title=f"{name} gained {after - before} reviews",
                    summary="A jump in reviews often follows a promotion or a viral moment.",
                    evidence=changes["reviewCount"],
                    recommendations=["Check their recent reviews for what customers mention."],
                )
            )

    if "priceLevel" in changes:
        out.append(
            GeneratedInsight(
                insight_type="price_level_change",
                competitor_id=competitor_id,
                title=f"{name} changed its price level",
                summary=f"Price level went from {previous.get('priceLevel')} to {current.get('priceLevel')}.",
                evidence=changes["priceLevel"],
            )
        )

    if "hours" in changes:
        out.append(
            GeneratedInsight(
                insight_type="hours_change",
                competitor_id=competitor_id,
                title=f"{name} updated its opening hours",
                summary="Opening hours differ from the previous snapshot.",
                evidence=changes["hours"],
                recommendations=["Compare their new hours with yours for uncovered time slots."],
            )
        )
    return out


def menu_insights(
    name: str, competitor_id: Optional[str], previous: Dict[str, Any], current: Dict[str, Any]
) -> List[GeneratedInsight]:
    before, after = _items_by_name(previous), _items_by_name(current)
    added = sorted(set(after) - set(before))
    removed = sorted(set(before) - set(after))
    repriced = sorted(
        key
        for key in set(before) & set(after)
        if before[key].get("price") is not None
        and after[key].get("price") is not None
        and before[key].get("price") != after[key].get("price")
    )

    out: List[GeneratedInsight] = []
    if added:
        out.append(
            GeneratedInsight(
                insight_type="menu_items_added",
                competitor_id=competitor_id,
                title=f"{name} added {len(added)} menu item{'s' if len(added) != 1 else ''}",
                summary=", ".join(after[k].get("name", k) for k in added[:5]),
                evidence={"added": [after[k] for k in added]},
            )
        )
    if removed:
        out.append(
            GeneratedInsight(
                insight_type="menu_items_removed",
                competitor_id=competitor_id,
                title=f"{name} removed {len(removed)} menu item{'s' if len(removed) != 1 else ''}",
                summary=", ".join(before[k].get("name", k) for k in removed[:5]),
                evidence={"removed": [before[k] for k in removed]},
            )
        )
    if repriced:
        out.append(
            GeneratedInsight(
                insight_type="menu_price_change",
                competitor_id=competitor_id,
                title=f"{name} changed prices on {len(repriced)} item{'s' if len(repriced) != 1 else ''}",
                summary="Menu prices differ from the previous snapshot.",
                severity="warning",
                evidence={
                    "changes": [
                        {"item": after[k].get("name", k), "from": before[k]["price"], "to": after[k]["price"]}
                        for k in repriced
                    ]
                },
            )
        )
    return out


def seo_insights(previous: Dict[str, Any], current: Dict[str, Any]) -> List[GeneratedInsight]:
    """Domain rank overview: organic traffic value and keyword count movement."""
    out: List[GeneratedInsight] = []
    before_etv = float(previous.get("etv") or 0)
    after_etv = float(current.get("etv") or 0)
    if before_etv > 0:
        change = (after_etv - before_etv) / before_etv
        if abs(change) >= 0.10:
            out.append(
                GeneratedInsight(
                    insight_type="organic_traffic_change",
                    title=f"Estimated organic traffic {'up' if change > 0 else 'down'} {abs(change):.0%}",
                    summary=f"Estimated traffic value moved from {before_etv:.0f} to {after_etv:.0f}.",
                    severity="info" if change > 0 else "warning",
                    evidence={"from": before_etv, "to": after_etv},
                )
            )

    before_kw = int(previous.get("keywords") or 0)
    after_kw = int(current.get("keywords") or 0)
    if after_kw != before_kw:
        out.append(
            GeneratedInsight(
                insight_type="keyword_count_change",
                title=f"Ranking keywords {'grew' if after_kw > before_kw else 'shrank'} to {after_kw}",
                summary=f"Previously ranking for {before_kw} keywords.",
                evidence={"from": before_kw, "to": after_kw},
            )
        )
    return out


def keyword_rank_insights(previous: Dict[str, Any], current: Dict[str, Any]) -> List[GeneratedInsight]:
    before = {k["keyword"]: k.get("position") for k in previous.get("keywords", [])}
    after = {k["keyword"]: k.get("position") for k in current.get("keywords", [])}
    improved, dropped = [], []
    for keyword, position in after.items():
        old = before.get(keyword)
        if old is None or position is None:
            continue
        if position < old:
            improved.append({"keyword": keyword, "from": old, "to": position})
        elif position > old:
            dropped.append({"keyword": keyword, "from": old, "to": position})

    out: List[GeneratedInsight] = []
    if improved:
        out.append(
            GeneratedInsight(
                insight_type="rank_improved",
                title=f"{len(improved)} tracked keyword{'s' if len(improved) != 1 else ''} moved up",
                summary=", ".join(i["keyword"] for i in improved[:5]),
                evidence={"keywords": improved},
            )
        )
    if dropped:
        out.append(
            GeneratedInsight(
                insight_type="rank_dropped",
                title=f"{len(dropped)} tracked keyword{'s' if len(dropped) != 1 else ''} lost position",
                summary=", ".join(i["keyword"] for i in dropped[:5]),
                severity="warning",
                evidence={"keywords": dropped},
                recommendations=["Review the pages ranking for these keywords."],
            )
        )
    return out


def competitor_seo_insights(
    name: str, competitor_id: str, previous: Dict[str, Any], current: Dict[str, Any]
) -> List[GeneratedInsight]:
    out = []
    for item in seo_insights(previous, current):
        item.competitor_id = competitor_id
        item.insight_type = f"competitor_{item.insight_type}"
        item.title = f"{name}: {item.title[0].lower()}{item.title[1:]}"
        out.append(item)
    return out


def event_insights(
    previous: Optional[Dict[str, Any]], current: Dict[str, Any], matches: List[Dict[str, Any]]
) -> List[GeneratedInsight]:
    known = {e["uid"] for e in (previous or {}).get("events", [])}
    fresh = [e for e in current.get("events", []) if e["uid"] not in known]

    out: List[GeneratedInsight] = []
    if fresh:
        out.append(
            GeneratedInsight(
                insight_type="new_local_events",
                title=f"{len(fresh)} new local event{'s' if len(fresh) != 1 else ''} nearby",
                summary=", ".join(e["title"] for e in fresh[:3]),
                evidence={"events": fresh[:10]},
                recommendations=["Plan staffing and promotions around these dates."],
            )
        )
    for match in matches:
        out.append(
            GeneratedInsight(
                insight_type="competitor_hosting_event",
                competitor_id=match["competitor_id"],
                title=f"{match['competitor_name']} is hosting {match['event_title']}",
                summary=f"Event on {match.get('start') or 'an upcoming date'} at their venue.",
                evidence=match,
            )
        )
    return out


def traffic_insights(
    name: str, competitor_id: str, previous: Dict[str, Any], current: Dict[str, Any]
) -> List[GeneratedInsight]:
    before = {d["day_of_week"]: d for d in previous.get("days", [])}
    shifts = []
    for day in current.get("days", []):
        old = before.get(day["day_of_week"])
        if not old or old.get("peak_hour") is None or day.get("peak_hour") is None:
            continue
        if abs(day["peak_hour"] - old["peak_hour"]) >= TRAFFIC_PEAK_SHIFT_MIN_HOURS:
            shifts.append({"day": day["day_of_week"], "from": old["peak_hour"], "to": day["peak_hour"]})
    if not shifts:
        return []
    return [
        GeneratedInsight(
            insight_type="peak_hours_shift",
            competitor_id=competitor_id,
            title=f"{name}'s busiest hours shifted on {len(shifts)} day{'s' if len(shifts) != 1 else ''}",
            summary="Their peak time moved compared to the last reading.",
            evidence={"shifts": shifts},
        )
    ]


def quiet_window_insights(busy_by_competitor: Dict[str, Dict[str, Any]]) -> List[GeneratedInsight]:
    """Hours where every tracked competitor is quiet."""
    if not busy_by_competitor:
        return []
    windows = []
    for day in range(7):
        for hour in range(10, 22):
            scores = []
            for data in busy_by_competitor.values():
                day_data = next((d for d in data.get("days", []) if d["day_of_week"] == day), None)
                if not day_data:
                    break
                hourly = day_data.get("hourly_scores") or []
                if hour >= len(hourly):
                    break
                scores.append(hourly[hour])
            else:
                if scores and max(scores) < QUIET_SCORE_MAX:
                    windows.append({"day_of_week": day, "hour": hour, "max_score": max(scores)})
    if not windows:
        return []
    return [
        GeneratedInsight(
            insight_type="competitive_opportunity",
            title=f"{len(windows)} hour{'s' if len(windows) != 1 else ''} where all competitors are quiet",
            summary="A promotion in these hours faces little competition.",
            confidence="medium",
            evidence={"windows": windows[:20]},
            recommendations=["Try a targeted offer in one of these quiet windows."],
        )
    ]


def photo_insights(
    name: str, competitor_id: str, previous: Dict[str, Any], current: Dict[str, Any]
) -> List[GeneratedInsight]:
    known = {p["hash"] for p in previous.get("photos", [])}
    fresh = [p for p in current.get("photos", []) if p["hash"] not in known]
    if not fresh:
        return []
    categories = sorted({p.get("category") or "other" for p in fresh})
    return [
        GeneratedInsight(
            insight_type="new_photos",
            competitor_id=competitor_id,
            title=f"{name} posted {len(fresh)} new photo{'s' if len(fresh) != 1 else ''}",
            summary=f"Categories: {', '.join(categories)}.",
            evidence={"photos": fresh[:10], "categories": categories},
        )
    ]


def weather_insights(
    today: Dict[str, Any], yesterday: Optional[Dict[str, Any]], *, has_patio: bool = False
) -> List[GeneratedInsight]:
    out: List[GeneratedInsight] = []
    condition = str(today.get("condition", "")).lower()
    if condition in SEVERE_CONDITIONS:
        out.append(
            GeneratedInsight(
                insight_type="severe_weather",
                title=f"Severe weather expected: {condition}",
                summary="Expect lower walk-in traffic and more delivery orders.",
                severity="warning",
                evidence={"today": today},
                recommendations=["Push delivery and online ordering today."],
            )
        )

    if yesterday and today.get("temp_max") is not None and yesterday.get("temp_max") is not None:
        swing = float(today["temp_max"]) - float(yesterday["temp_max"])
        if abs(swing) >= TEMP_SWING_MIN_F:
            out.append(
                GeneratedInsight(
                    insight_type="temperature_swing",
                    title=f"Temperature {'jumps' if swing > 0 else 'drops'} {abs(swing):.0f}°F today",
                    summary="Big day-over-day swings shift what customers order.",
                    evidence={"today": today.get("temp_max"), "yesterday": yesterday.get("temp_max")},
                )
            )

    if has_patio and condition == "clear" and 65 <= float(today.get("temp_max") or 0) <= 85:
        out.append(
            GeneratedInsight(
                insight_type="patio_weather",
                title="Patio weather today",
                summary="Competitors advertise outdoor seating; clear and mild conditions favour it.",
                evidence={"today": today},
                recommendations=["Promote outdoor seating on social channels."],
            )
        )
    return out


def correlation_insights(
    events: Optional[Dict[str, Any]], weather: Optional[Dict[str, Any]], date_key: str
) -> List[GeneratedInsight]:
    """Cross-source: events happening today under bad weather."""
    if not events or not weather:
        return []
    today_events = [e for e in events.get("events", []) if str(e.get("start") or "").startswith(date_key)]
    condition = str(weather.get("condition", "")).lower()
    if not today_events or condition not in SEVERE_CONDITIONS | {"rain"}:
        return []
    return [
        GeneratedInsight(
            insight_type="event_weather_risk",
            title=f"{len(today_events)} event{'s' if len(today_events) != 1 else ''} today under {condition}",
            summary="Outdoor events may move indoors or be cancelled; nearby venues can catch the overflow.",
            severity="warning",
            evidence={"events": today_events[:5], "weather": weather},
        )
    ]
