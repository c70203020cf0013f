import random

import pytest

from app.db import SessionLocal
from app.models.location import Location
from app.services.ambient import build_cards, parse_tips, stream_ambient_feed
from app.services.insights import InsightStore
from prophet.client.sse import iter_sse
from prophet.engine.context import GeneratedInsight
from prophet.engine.transport import EventChannel


def test_cards_lead_with_tenant_data(tenant):
    InsightStore(SessionLocal).save(
        "loc-1", "2026-03-02", [GeneratedInsight(insight_type="rating_change", title="Rival c1 rating fell", summary="")]
    )
    db = SessionLocal()
    try:
        cards = build_cards(db, db.get(Location, "loc-1"), rng=random.Random(7))
    finally:
        db.close()

    assert cards[0]["text"] == "Rival c1 rating fell"
    assert cards[0]["category"] == "from_your_data"
    ids = [c["id"] for c in cards]
    assert "location-summary" in ids
    assert "competitor-count" in ids
    assert len([c for c in cards if c["category"] == "industry_tip"]) == 4
    assert len(set(ids)) == len(ids)


def test_parse_tips_finds_the_json_array():
    text = 'Sure! Here you go:\n["One.", "  ", "Two.", 3, "Three."]\nEnjoy.'
    assert parse_tips(text, 2) == ["One.", "Two."]
    assert parse_tips("no json here", 3) == []
    assert parse_tips("[not json]", 3) == []


@pytest.mark.anyio
async def test_feed_sends_cards_then_tips_then_done():
    prompts = []

    async def generate_text(prompt):
        prompts.append(prompt)
        return '["Tip one.", "Tip two."]'

    channel = EventChannel()
    await stream_ambient_feed(
        channel,
        load=lambda: [{"id": "location-summary", "category": "from_your_data", "text": "Analyzing"}],
        location_name="Blue Door Bistro",
        area="Austin, TX",
        generate_text=generate_text,
        card_delay=0,
        tip_delay=0,
        tip_count=2,
    )

    assert channel.names() == ["card", "card", "card", "done"]
    assert [p["id"] for _, p in channel.events[1:3]] == ["gemini-tip-0", "gemini-tip-1"]
    assert '"Blue Door Bistro"' in prompts[0]
    assert channel.closed


@pytest.mark.anyio
async def test_feed_survives_failing_sources():
    async def generate_text(prompt):
        raise RuntimeError("model unavailable")

    def load():
        raise RuntimeError("db down")

    channel = EventChannel()
    await stream_ambient_feed(
        channel, load=load, location_name="X", area="", generate_text=generate_text, card_delay=0, tip_delay=0
    )
    assert channel.events == [("done", {})]


def test_route_requires_auth_and_location(client, tenant, auth_headers):
    assert client.get("/api/jobs/ambient-feed?location_id=loc-1").status_code == 401
    assert client.get("/api/jobs/ambient-feed", headers=auth_headers).status_code == 401
    assert client.get("/api/jobs/ambient-feed?location_id=nope", headers=auth_headers).status_code == 401


def test_route_streams_cards(client, tenant, auth_headers, fake_providers):
    r = client.get("/api/jobs/ambient-feed?location_id=loc-1", headers=auth_headers)

    events = list(iter_sse(r.text.splitlines()))
    assert events[-1].event == "done"
    texts = [e.json()["text"] for e in events if e.event == "card"]
    assert "Offer a rainy-day delivery deal." in texts
    assert any(t.startswith("Analyzing data for Blue Door Bistro") for t in texts)
