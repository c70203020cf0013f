import pytest

from app.db import SessionLocal
from app.models.snapshot import Insight
from app.services.insights import (
    InsightStore,
    correlation_insights,
    event_insights,
    keyword_rank_insights,
    menu_insights,
    profile_insights,
    quiet_window_insights,
    weather_insights,
)
from prophet.engine.context import GeneratedInsight


def _count():
    db = SessionLocal()
    try:
        return db.query(Insight).count()
    finally:
        db.close()


# -------------------------
# persistence
# -------------------------
def test_save_upserts_on_logical_key():
    store = InsightStore(SessionLocal)
    first = GeneratedInsight(insight_type="rating_change", title="Old title", summary="s", competitor_id="c1")
    store.save("loc-1", "2026-03-02", [first])

    again = GeneratedInsight(insight_type="rating_change", title="New title", summary="s2", competitor_id="c1")
    other_day = GeneratedInsight(insight_type="rating_change", title="Tomorrow", summary="s", competitor_id="c1")
    store.save("loc-1", "2026-03-02", [again])
    store.save("loc-1", "2026-03-03", [other_day])

    assert _count() == 2
    titles = {r["title"] for r in store.recent_for_location("loc-1")}
    assert titles == {"New title", "Tomorrow"}


def test_duplicates_in_one_batch_collapse():
    store = InsightStore(SessionLocal)
    items = [
        GeneratedInsight(insight_type="patio_weather", title="A", summary=""),
        GeneratedInsight(insight_type="patio_weather", title="B", summary=""),
    ]
    store.save("loc-1", "2026-03-02", items)
    assert _count() == 1
    assert store.recent_for_location("loc-1")[0]["title"] == "B"


def test_save_nothing_is_a_noop():
    assert InsightStore(SessionLocal).save("loc-1", "2026-03-02", []) == 0


# -------------------------
# generators
# -------------------------
def test_profile_insights_rating_and_reviews():
    out = profile_insights(
        "Rival", "c1", {"rating": 4.5, "reviewCount": 100}, {"rating": 4.2, "reviewCount": 115}
    )
    types = {i.insight_type: i for i in out}
    assert set(types) == {"rating_change", "review_velocity"}
    assert types["rating_change"].severity == "warning"
    assert types["rating_change"].competitor_id == "c1"


def test_profile_insights_ignore_tiny_rating_moves():
    assert profile_insights("Rival", "c1", {"rating": 4.50}, {"rating": 4.53}) == []


def test_menu_insights_added_removed_repriced():
    previous = {"categories": [{"name": "Mains", "items": [{"name": "Burger", "price": 12}, {"name": "Salad", "price": 9}]}]}
    current = {"categories": [{"name": "Mains", "items": [{"name": "Burger", "price": 14}, {"name": "Tacos", "price": 11}]}]}
    out = menu_insights("Rival", "c1", previous, current)
    assert [i.insight_type for i in out] == ["menu_items_added", "menu_items_removed", "menu_price_change"]
    assert out[2].evidence["changes"] == [{"item": "Burger", "from": 12, "to": 14}]


def test_keyword_rank_movement():
    previous = {"keywords": [{"keyword": "brunch", "position": 8}, {"keyword": "tacos", "position": 3}]}
    current = {"keywords": [{"keyword": "brunch", "position": 4}, {"keyword": "tacos", "position": 6}]}
    out = keyword_rank_insights(previous, current)
    assert [i.insight_type for i in out] == ["rank_improved", "rank_dropped"]


def test_event_insights_new_events_and_matches():
    previous = {"events": [{"uid": "a", "title": "Old"}]}
    current = {"events": [{"uid": "a", "title": "Old"}, {"uid": "b", "title": "Jazz Night"}]}
    matches = [{"competitor_id": "c1", "competitor_name": "Rival", "event_uid": "b", "event_title": "Jazz Night", "start": "2026-03-06"}]
    out = event_insights(previous, current, matches)
    assert [i.insight_type for i in out] == ["new_local_events", "competitor_hosting_event"]
    assert out[0].summary == "Jazz Night"


def test_weather_insights_severe_swing_and_patio():
    out = weather_insights({"condition": "thunderstorm", "temp_max": 60}, {"temp_max": 80})
    assert {i.insight_type for i in out} == {"severe_weather", "temperature_swing"}

    patio = weather_insights({"condition": "clear", "temp_max": 72}, None, has_patio=True)
    assert [i.insight_type for i in patio] == ["patio_weather"]
    assert weather_insights({"condition": "clear", "temp_max": 72}, None, has_patio=False) == []


def test_quiet_windows_need_every_competitor_quiet():
    quiet = {"days": [{"day_of_week": 1, "hourly_scores": [10] * 24}]}
    busy = {"days": [{"day_of_week": 1, "hourly_scores": [10] * 15 + [90] * 9}]}
    out = quiet_window_insights({"c1": quiet, "c2": busy})
    assert len(out) == 1
    hours = {w["hour"] for w in out[0].evidence["windows"]}
    assert hours == set(range(10, 15))


def test_correlation_needs_both_sources():
    events = {"events": [{"title": "Parade", "start": "2026-03-02T10:00:00"}]}
    assert correlation_insights(events, None, "2026-03-02") == []
    out = correlation_insights(events, {"condition": "rain"}, "2026-03-02")
    assert [i.insight_type for i in out] == ["event_weather_risk"]
    assert correlation_insights(events, {"condition": "clear"}, "2026-03-02") == []
