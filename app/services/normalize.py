# app/services/normalize.py
"""Provider payloads -> canonical snapshot shapes (stable ordering, no volatile fields)."""
from __future__ import annotations

import hashlib
import re
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import urlparse

_WS = re.compile(r"\s+")
_NON_WORD = re.compile(r"[^a-z0-9 ]+")

DAYS = ("sunday", "monday", "tuesday", "wednesday", "thursday", "friday", "saturday")


def canonical_text(value: Any) -> str:
    text = _NON_WORD.sub(" ", str(value or "").lower())
    return _WS.sub(" ", text).strip()


def normalize_url(url: Optional[str]) -> Optional[str]:
    if not url or not str(url).strip():
        return None
    url = str(url).strip()
    if not re.match(r"^https?://", url, re.I):
        url = f"https://{url}"
    return url.rstrip("/")


def domain_of(url: Optional[str]) -> Optional[str]:
    normalized = normalize_url(url)
    if not normalized:
        return None
    host = urlparse(normalized).hostname or ""
    return host[4:] if host.startswith("www.") else host or None


def _price(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return round(float(value), 2)
    match = re.search(r"\d+(?:\.\d+)?", str(value).replace(",", "."))
    return round(float(match.group(0)), 2) if match else None


# ---------------------------------------------------------------------------
# place profile
# ---------------------------------------------------------------------------
def normalize_profile(raw: Dict[str, Any]) -> Dict[str, Any]:
    hours = (raw.get("regularOpeningHours") or {}).get("weekdayDescriptions") or raw.get("hours") or []
    display = raw.get("displayName")
    return {
        "name": display.get("text") if isinstance(display, dict) else (display or raw.get("name")),
        "rating": raw.get("rating"),
        "reviewCount": raw.get("userRatingCount", raw.get("reviewCount")),
        "priceLevel": raw.get("priceLevel"),
        "address": raw.get("formattedAddress", raw.get("address")),
        "website": raw.get("websiteUri", raw.get("website")),
        "phone": raw.get("nationalPhoneNumber", raw.get("phone")),
        "hours": list(hours),
    }


# ---------------------------------------------------------------------------
# site content / menus
# ---------------------------------------------------------------------------
def normalize_site_content(url: str, page: Dict[str, Any]) -> Dict[str, Any]:
    markdown = page.get("markdown") or page.get("text") or ""
    lowered = markdown.lower()
    return {
        "url": url,
        "title": (page.get("title") or "").strip(),
        "description": (page.get("description") or "").strip(),
        "textHash": hashlib.sha256(_WS.sub(" ", markdown).strip().encode("utf-8")).hexdigest(),
        "features": {
            "onlineOrdering": any(k in lowered for k in ("order online", "online ordering", "doordash", "ubereats")),
            "reservations": any(k in lowered for k in ("reservation", "opentable", "resy")),
            "catering": "catering" in lowered,
            "giftCards": "gift card" in lowered,
        },
    }


def normalize_menu(raw: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    categories: List[Dict[str, Any]] = []
    for cat in (raw or {}).get("categories") or []:
        items = []
        for item in cat.get("items") or []:
            name = str(item.get("name") or "").strip()
            if not name:
                continue
            items.append(
                {
                    "name": name,
                    "price": _price(item.get("price")),
                    "description": str(item.get("description") or "").strip() or None,
                }
            )
        if items:
            items.sort(key=lambda i: canonical_text(i["name"]))
            categories.append({"name": str(cat.get("name") or "Menu").strip(), "items": items})
    categories.sort(key=lambda c: canonical_text(c["name"]))
    return {"currency": (raw or {}).get("currency") or "USD", "categories": categories}


def merge_menus(menus: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    """Union by category and item name; first price seen wins."""
    merged: Dict[str, Dict[str, Any]] = {}
    currency = "USD"
    for menu in menus:
        currency = menu.get("currency") or currency
        for cat in menu.get("categories", []):
            bucket = merged.setdefault(canonical_text(cat["name"]), {"name": cat["name"], "items": {}})
            for item in cat.get("items", []):
                bucket["items"].setdefault(canonical_text(item["name"]), item)
    categories = [
        {"name": b["name"], "items": [b["items"][k] for k in sorted(b["items"])]}
        for _, b in sorted(merged.items())
    ]
    return {"currency": currency, "categories": categories}


def menu_item_count(menu: Dict[str, Any]) -> int:
    return sum(len(c.get("items", [])) for c in menu.get("categories", []))


# ---------------------------------------------------------------------------
# SEO
# ---------------------------------------------------------------------------
def normalize_domain_rank(raw: Dict[str, Any]) -> Dict[str, Any]:
    organic = raw.get("organic") or {}
    return {
        "domain": raw.get("domain"),
        "etv": round(float(organic.get("etv") or 0), 2),
        "keywords": int(organic.get("count") or 0),
        "top3": int((organic.get("pos_1") or 0) + (organic.get("pos_2_3") or 0)),
        "top10": int(organic.get("pos_4_10") or 0),
    }


def normalize_keywords(raw: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    rows = [
        {"keyword": r["keyword"], "position": r.get("position"), "searchVolume": r.get("search_volume")}
        for r in raw
        if r.get("keyword")
    ]
    rows.sort(key=lambda r: r["keyword"])
    return {"keywords": rows}


# ---------------------------------------------------------------------------
# events
# ---------------------------------------------------------------------------
def event_uid(title: Any, start: Any, venue_name: Any, venue_address: Any, url: Any) -> str:
    basis = "|".join(canonical_text(v) for v in (title, start, venue_name, venue_address, url))
    return hashlib.sha256(basis.encode("utf-8")).hexdigest()[:16]


def normalize_event(raw: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    title = str(raw.get("title") or "").strip()
    if not title:
        return None
    when = raw.get("event_dates") or {}
    start = when.get("start_datetime") or raw.get("start")
    venue = raw.get("location_info") or {}
    venue_name = venue.get("name") or raw.get("venue_name")
    venue_address = venue.get("address") or raw.get("venue_address")
    url = raw.get("url")
    return {
        "uid": event_uid(title, start, venue_name, venue_address, url),
        "title": title,
        "start": start,
        "venueName": venue_name,
        "venueAddress": venue_address,
        "url": url,
    }


def build_events_snapshot(raw_events: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    by_uid: Dict[str, Dict[str, Any]] = {}
    for raw in raw_events:
        event = normalize_event(raw)
        if event:
            by_uid.setdefault(event["uid"], event)
    events = [by_uid[k] for k in sorted(by_uid)]
    by_date: Dict[str, int] = {}
    for event in events:
        day = str(event.get("start") or "")[:10] or "unknown"
        by_date[day] = by_date.get(day, 0) + 1
    return {"events": events, "summary": {"totalEvents": len(events), "byDate": dict(sorted(by_date.items()))}}


# ---------------------------------------------------------------------------
# busy times
# ---------------------------------------------------------------------------
def normalize_busy_times(raw: Dict[str, Any]) -> Dict[str, Any]:
    days = []
    for entry in raw.get("popular_times") or []:
        day_name = str(entry.get("day_text") or entry.get("day") or "").lower()
        if day_name not in DAYS:
            continue
        hourly = [0] * 24
        for point in entry.get("popular_times") or []:
            hour = point.get("hour")
            if isinstance(hour, int) and 0 <= hour < 24:
                hourly[hour] = int(point.get("percentage") or 0)
        peak = max(range(24), key=lambda h: hourly[h]) if any(hourly) else None
        days.append(
            {
                "day_of_week": DAYS.index(day_name),
                "hourly_scores": hourly,
                "peak_hour": peak,
                "peak_score": hourly[peak] if peak is not None else 0,
                "slow_hours": [h for h in range(24) if 0 < hourly[h] < 30],
            }
        )
    days.sort(key=lambda d: d["day_of_week"])
    return {"days": days, "typical_time_spent": raw.get("typical_time_spent")}
