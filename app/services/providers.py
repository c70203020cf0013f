# app/services/providers.py
"""
Thin async wrappers around the external data providers.

Each callable returns plain dicts/lists; pipelines never see httpx objects.
A provider whose credentials are missing raises ProviderNotConfigured when
called, so a pipeline step fails (or warns) instead of the app refusing to
start.
"""
from __future__ import annotations

import base64
import json
import re
from dataclasses import dataclass
from datetime import date
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
import structlog

from app.config import Settings
from app.infra.retry import retry_async
from app.metrics import record_provider_call

logger = structlog.get_logger("prophet.providers")

PLACES_URL = "https://places.googleapis.com/v1"
OWM_URL = "https://api.openweathermap.org/data/3.0/onecall/day_summary"
FIRECRAWL_URL = "https://api.firecrawl.dev/v1"
DATAFORSEO_URL = "https://api.dataforseo.com/v3"
OUTSCRAPER_URL = "https://api.app.outscraper.com"
GEMINI_URL = "https://generativelanguage.googleapis.com/v1beta/models"

PLACE_FIELDS = (
    "id,displayName,rating,userRatingCount,priceLevel,formattedAddress,"
    "websiteUri,nationalPhoneNumber,regularOpeningHours.weekdayDescriptions,photos"
)


class ProviderError(RuntimeError):
    """A provider call failed or returned something unusable."""


class ProviderNotConfigured(ProviderError):
    pass


@dataclass
class Providers:
    place_details: Callable[[str], Awaitable[Dict[str, Any]]]
    weather_for_day: Callable[[float, float, date], Awaitable[Dict[str, Any]]]
    scrape_page: Callable[[str], Awaitable[Dict[str, Any]]]
    discover_menu_urls: Callable[[str, int], Awaitable[List[str]]]
    extract_menu: Callable[[str], Awaitable[Optional[Dict[str, Any]]]]
    domain_rank: Callable[[str], Awaitable[Dict[str, Any]]]
    ranked_keywords: Callable[[str, int], Awaitable[List[Dict[str, Any]]]]
    serp_positions: Callable[[List[str], str, str], Awaitable[List[Dict[str, Any]]]]
    google_events: Callable[[str, str, str, int], Awaitable[List[Dict[str, Any]]]]
    photo_refs: Callable[[str, int], Awaitable[List[Dict[str, Any]]]]
    download_photo: Callable[[str], Awaitable[bytes]]
    analyze_photo: Callable[[bytes], Awaitable[Dict[str, Any]]]
    busy_times: Callable[[str], Awaitable[Dict[str, Any]]]
    generate_text: Callable[[str], Awaitable[str]]


def _require(value: Optional[str], name: str) -> str:
    if not value:
        raise ProviderNotConfigured(f"{name} is not configured")
    return value


def _condition(main: str) -> str:
    main = (main or "").lower()
    for key in ("thunderstorm", "snow", "rain", "drizzle", "clear", "cloud"):
        if key in main:
            return {"drizzle": "rain", "cloud": "clouds"}.get(key, key)
    return main or "unknown"


class HttpProviders:
    """Real implementations; one shared AsyncClient per process."""

    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None) -> None:
        self.settings = settings
        self._client = client or httpx.AsyncClient(timeout=settings.provider_timeout_seconds)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, provider: str, method: str, url: str, **kwargs: Any) -> httpx.Response:
        async def _call() -> httpx.Response:
            response = await self._client.request(method, url, **kwargs)
            response.raise_for_status()
            return response

        try:
            response = await retry_async(_call)
        except httpx.HTTPError as exc:
            record_provider_call(provider, ok=False)
            logger.warning("provider_call_failed", provider=provider, url=url, error=str(exc))
            raise ProviderError(f"{provider} request failed: {exc}") from exc
        record_provider_call(provider, ok=True)
        return response

    # --- Google Places ---------------------------------------------------
    def _places_headers(self, fields: str = PLACE_FIELDS) -> Dict[str, str]:
        return {
            "X-Goog-Api-Key": _require(self.settings.google_places_api_key, "GOOGLE_PLACES_API_KEY"),
            "X-Goog-FieldMask": fields,
        }

    async def place_details(self, place_id: str) -> Dict[str, Any]:
        r = await self._request("places", "GET", f"{PLACES_URL}/places/{place_id}", headers=self._places_headers())
        return r.json()

    async def photo_refs(self, place_id: str, limit: int) -> List[Dict[str, Any]]:
        r = await self._request(
            "places", "GET", f"{PLACES_URL}/places/{place_id}", headers=self._places_headers("photos")
        )
        photos = r.json().get("photos") or []
        return [
            {"ref": p["name"], "width": p.get("widthPx"), "height": p.get("heightPx")}
            for p in photos[:limit]
            if p.get("name")
        ]

    async def download_photo(self, ref: str) -> bytes:
        key = _require(self.settings.google_places_api_key, "GOOGLE_PLACES_API_KEY")
        r = await self._request(
            "places",
            "GET",
            f"{PLACES_URL}/{ref}/media",
            params={"maxWidthPx": 800, "key": key},
            follow_redirects=True,
        )
        return r.content

    # --- OpenWeatherMap --------------------------------------------------
    async def weather_for_day(self, lat: float, lng: float, day: date) -> Dict[str, Any]:
        key = _require(self.settings.openweathermap_api_key, "OPENWEATHERMAP_API_KEY")
        r = await self._request(
            "openweathermap",
            "GET",
            OWM_URL,
            params={"lat": lat, "lon": lng, "date": day.isoformat(), "units": "imperial", "appid": key},
        )
        data = r.json()
        precipitation = float((data.get("precipitation") or {}).get("total") or 0)
        temperature = data.get("temperature") or {}
        main = "rain" if precipitation > 2 else ("clouds" if (data.get("cloud_cover") or {}).get("afternoon", 0) > 60 else "clear")
        return {
            "date": day.isoformat(),
            "temp_max": temperature.get("max"),
            "temp_min": temperature.get("min"),
            "humidity": (data.get("humidity") or {}).get("afternoon"),
            "wind_max": ((data.get("wind") or {}).get("max") or {}).get("speed"),
            "precipitation_mm": precipitation,
            "condition": _condition(main),
        }

    # --- Firecrawl -------------------------------------------------------
    def _firecrawl_headers(self) -> Dict[str, str]:
        key = _require(self.settings.firecrawl_api_key, "FIRECRAWL_API_KEY")
        return {"Authorization": f"Bearer {key}"}

    async def scrape_page(self, url: str) -> Dict[str, Any]:
        r = await self._request(
            "firecrawl",
            "POST",
            f"{FIRECRAWL_URL}/scrape",
            headers=self._firecrawl_headers(),
            json={"url": url, "formats": ["markdown"], "onlyMainContent": True},
        )
        data = r.json().get("data") or {}
        meta = data.get("metadata") or {}
        return {"url": url, "title": meta.get("title"), "description": meta.get("description"), "markdown": data.get("markdown") or ""}

    async def discover_menu_urls(self, url: str, limit: int) -> List[str]:
        r = await self._request(
            "firecrawl",
            "POST",
            f"{FIRECRAWL_URL}/map",
            headers=self._firecrawl_headers(),
            json={"url": url, "search": "menu", "limit": 20},
        )
        links = r.json().get("links") or []
        menu_links = [link for link in links if "menu" in str(link).lower()]
        return menu_links[:limit]

    async def extract_menu(self, url: str) -> Optional[Dict[str, Any]]:
        r = await self._request(
            "firecrawl",
            "POST",
            f"{FIRECRAWL_URL}/scrape",
            headers=self._firecrawl_headers(),
            json={
                "url": url,
                "formats": ["json"],
                "jsonOptions": {
                    "prompt": (
                        "Extract the menu as categories with items. "
                        "Each item has name, price (number) and description."
                    )
                },
            },
        )
        return (r.json().get("data") or {}).get("json")

    # --- DataForSEO ------------------------------------------------------
    def _dfs_auth(self) -> httpx.BasicAuth:
        return httpx.BasicAuth(
            _require(self.settings.dataforseo_login, "DATAFORSEO_LOGIN"),
            _require(self.settings.dataforseo_password, "DATAFORSEO_PASSWORD"),
        )

    async def _dfs(self, path: str, task: Dict[str, Any]) -> List[Dict[str, Any]]:
        r = await self._request("dataforseo", "POST", f"{DATAFORSEO_URL}/{path}", auth=self._dfs_auth(), json=[task])
        tasks = r.json().get("tasks") or []
        if not tasks or tasks[0].get("status_code") != 20000:
            message = tasks[0].get("status_message") if tasks else "empty response"
            raise ProviderError(f"dataforseo {path}: {message}")
        return tasks[0].get("result") or []

    async def domain_rank(self, domain: str) -> Dict[str, Any]:
        result = await self._dfs(
            "dataforseo_labs/google/domain_rank_overview/live",
            {"target": domain, "location_code": 2840, "language_code": "en"},
        )
        items = (result[0].get("items") if result else None) or [{}]
        return {"domain": domain, "organic": (items[0].get("metrics") or {}).get("organic") or {}}

    async def ranked_keywords(self, domain: str, limit: int) -> List[Dict[str, Any]]:
        result = await self._dfs(
            "dataforseo_labs/google/ranked_keywords/live",
            {"target": domain, "location_code": 2840, "language_code": "en", "limit": limit},
        )
        items = (result[0].get("items") if result else None) or []
        out = []
        for item in items:
            kw = item.get("keyword_data") or {}
            serp = (item.get("ranked_serp_element") or {}).get("serp_item") or {}
            out.append(
                {
                    "keyword": kw.get("keyword"),
                    "search_volume": (kw.get("keyword_info") or {}).get("search_volume"),
                    "position": serp.get("rank_absolute"),
                }
            )
        return out

    async def serp_positions(self, keywords: List[str], domain: str, location_name: str) -> List[Dict[str, Any]]:
        out = []
        for keyword in keywords:
            result = await self._dfs(
                "serp/google/organic/live/advanced",
                {"keyword": keyword, "location_name": location_name, "language_code": "en", "depth": 100},
            )
            items = (result[0].get("items") if result else None) or []
            position = next(
                (i.get("rank_absolute") for i in items if domain in str(i.get("domain", ""))),
                None,
            )
            out.append({"keyword": keyword, "position": position})
        return out

    async def google_events(self, keyword: str, location_name: str, date_range: str, depth: int) -> List[Dict[str, Any]]:
        result = await self._dfs(
            "serp/google/events/live/advanced",
            {"keyword": keyword, "location_name": location_name, "date_range": date_range, "depth": depth},
        )
        return (result[0].get("items") if result else None) or []

    # --- Outscraper ------------------------------------------------------
    async def busy_times(self, place_id: str) -> Dict[str, Any]:
        key = _require(self.settings.outscraper_api_key, "OUTSCRAPER_API_KEY")
        r = await self._request(
            "outscraper",
            "GET",
            f"{OUTSCRAPER_URL}/maps/search-v3",
            headers={"X-API-KEY": key},
            params={"query": place_id, "limit": 1, "async": "false"},
        )
        data = r.json().get("data") or [[]]
        place = (data[0] or [{}])[0] if data else {}
        return {
            "popular_times": place.get("popular_times") or [],
            "typical_time_spent": place.get("typical_time_spent"),
        }

    # --- Gemini ----------------------------------------------------------
    async def _gemini(self, parts: List[Dict[str, Any]], *, json_output: bool = False) -> str:
        key = _require(self.settings.gemini_api_key, "GEMINI_API_KEY")
        body: Dict[str, Any] = {"contents": [{"parts": parts}]}
        if json_output:
            body["generationConfig"] = {"responseMimeType": "application/json"}
        r = await self._request(
            "gemini",
            "POST",
            f"{GEMINI_URL}/{self.settings.gemini_model}:generateContent",
            params={"key": key},
            json=body,
        )
        candidates = r.json().get("candidates") or []
        if not candidates:
            raise ProviderError("gemini returned no candidates")
        return "".join(p.get("text", "") for p in candidates[0].get("content", {}).get("parts", []))

    async def generate_text(self, prompt: str) -> str:
        return await self._gemini([{"text": prompt}])

    async def analyze_photo(self, image: bytes) -> Dict[str, Any]:
        text = await self._gemini(
            [
                {
                    "text": (
                        "Classify this business photo. Return JSON with keys "
                        "category (food|interior|exterior|patio_outdoor|menu|people|other) "
                        "and description (one sentence)."
                    )
                },
                {"inline_data": {"mime_type": "image/jpeg", "data": base64.b64encode(image).decode("ascii")}},
            ],
            json_output=True,
        )
        match = re.search(r"\{.*\}", text, re.S)
        if not match:
            raise ProviderError("photo analysis returned no JSON")
        return json.loads(match.group(0))

    def bundle(self) -> Providers:
        return Providers(
            place_details=self.place_details,
            weather_for_day=self.weather_for_day,
            scrape_page=self.scrape_page,
            discover_menu_urls=self.discover_menu_urls,
            extract_menu=self.extract_menu,
            domain_rank=self.domain_rank,
            ranked_keywords=self.ranked_keywords,
            serp_positions=self.serp_positions,
            google_events=self.google_events,
            photo_refs=self.photo_refs,
            download_photo=self.download_photo,
            analyze_photo=self.analyze_photo,
            busy_times=self.busy_times,
            generate_text=self.generate_text,
        )


def build_providers(settings: Settings, client: Optional[httpx.AsyncClient] = None) -> Providers:
    return HttpProviders(settings, client=client).bundle()
