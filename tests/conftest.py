import os
import tempfile

# settings are read at import time: point them at a throwaway database first
os.environ.setdefault("DATABASE_URL", f"sqlite:///{tempfile.mkdtemp()}/prophet-test.db")
os.environ.setdefault("RATE_LIMIT_JOB_START", "1000/minute")
os.environ.setdefault("AMBIENT_CARD_DELAY_SECONDS", "0")
os.environ.setdefault("AMBIENT_TIP_DELAY_SECONDS", "0")
os.environ.setdefault("PROVIDER_DELAY_SECONDS", "0")
os.environ.setdefault("STREAM_POLL_INTERVAL_SECONDS", "0.01")

from datetime import date, datetime, timezone
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from app import models  # noqa: F401  (registers tables on Base)
from app.auth.jwt import create_access_token
from app.config import settings
from app.db import Base, SessionLocal, engine
from app.dependencies import get_job_service
from app.main import app
from app.models.location import Competitor, Location
from app.models.tenant import Organization, OrganizationMember
from app.models.user import User
from app.services.insights import InsightStore
from app.services.job_service import JobService
from app.services.job_store import JobStore
from app.services.providers import ProviderError, Providers
from app.services.snapshots import SnapshotStore
from prophet.engine.pipelines import build_registry
from prophet.engine.registry import PipelineDeps

# Monday; the default weekly refresh day
MONDAY = datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc)


# ----------------------------------------------------
# Database
# ----------------------------------------------------
@pytest.fixture(scope="session", autouse=True)
def _create_test_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def _clean_tables():
    yield
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())


@pytest.fixture
def anyio_backend():
    # asyncio only, no trio
    return "asyncio"


# ----------------------------------------------------
# Tenant data
# ----------------------------------------------------
def _mk_org(org_id="org-1", tier="pro"):
    db = SessionLocal()
    db.add(Organization(id=org_id, name=f"Org {org_id}", subscription_tier=tier))
    db.commit(); db.close()
    return org_id


def _mk_user(user_id="user-1", org_id="org-1", role="owner"):
    db = SessionLocal()
    db.add(User(id=user_id, email=f"{user_id}@example.com", current_organization_id=org_id))
    db.add(OrganizationMember(organization_id=org_id, user_id=user_id, role=role))
    db.commit(); db.close()
    return user_id


def _mk_location(location_id="loc-1", org_id="org-1", **fields):
    values = dict(
        name="Blue Door Bistro",
        city="Austin",
        region="TX",
        country="US",
        website="https://bluedoor.example",
        geo_lat=30.27,
        geo_lng=-97.74,
        primary_place_id="place-home",
    )
    values.update(fields)
    db = SessionLocal()
    db.add(Location(id=location_id, organization_id=org_id, **values))
    db.commit(); db.close()
    return location_id


def _mk_competitor(comp_id, location_id="loc-1", **fields):
    values = dict(
        name=f"Rival {comp_id}",
        website=f"https://{comp_id}.example",
        address=f"{comp_id} Main St",
        provider_entity_id=f"place-{comp_id}",
    )
    values.update(fields)
    db = SessionLocal()
    db.add(Competitor(id=comp_id, location_id=location_id, **values))
    db.commit(); db.close()
    return comp_id


@pytest.fixture
def make_org():
    return _mk_org


@pytest.fixture
def make_user():
    return _mk_user


@pytest.fixture
def make_location():
    return _mk_location


@pytest.fixture
def make_competitor():
    return _mk_competitor


@pytest.fixture
def tenant():
    """Pro-tier org with an owner, one location and two competitors."""
    org_id = _mk_org()
    user_id = _mk_user()
    location_id = _mk_location()
    competitors = [_mk_competitor("c1"), _mk_competitor("c2")]
    return SimpleNamespace(
        org_id=org_id, user_id=user_id, location_id=location_id, competitor_ids=competitors
    )


def _bearer(user_id="user-1", org_id="org-1"):
    token = create_access_token(user_id=user_id, organization_id=org_id)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def bearer():
    return _bearer


@pytest.fixture
def auth_headers(tenant):
    return _bearer(tenant.user_id, tenant.org_id)


# ----------------------------------------------------
# Providers
# ----------------------------------------------------
class FakeProviders:
    """
    In-memory provider bundle. Tests tweak the attributes (or set
    `fail[...]`) before running a pipeline.
    """

    def __init__(self):
        self.fail = {}
        self.calls = []
        self.profiles = {
            "place-home": {"displayName": {"text": "Blue Door Bistro"}, "rating": 4.5, "userRatingCount": 120},
            "place-c1": {"displayName": {"text": "Rival c1"}, "rating": 4.1, "userRatingCount": 80},
            "place-c2": {"displayName": {"text": "Rival c2"}, "rating": 3.9, "userRatingCount": 40},
        }
        self.weather = {
            "condition": "clear",
            "temp_max": 75,
            "temp_min": 58,
            "precipitation_mm": 0,
        }
        self.page = {"title": "Blue Door Bistro", "description": "Neighbourhood bistro", "markdown": "Order online today"}
        self.menu = {"categories": [{"name": "Mains", "items": [{"name": "Burger", "price": "12.50"}]}]}
        self.rank = {"organic": {"etv": 1200, "count": 40, "pos_1": 2, "pos_2_3": 3, "pos_4_10": 10}}
        self.keywords = [
            {"keyword": "austin bistro", "search_volume": 900, "position": 4},
            {"keyword": "brunch austin", "search_volume": 1500, "position": 12},
        ]
        self.events = [
            {
                "title": "Food Truck Friday",
                "event_dates": {"start_datetime": "2026-03-06T18:00:00"},
                "location_info": {"name": "Rival c1", "address": "c1 Main St"},
                "url": "https://events.example/ftf",
            }
        ]
        self.photos = {"place-c1": [{"ref": "photo-1"}, {"ref": "photo-2"}], "place-c2": [{"ref": "photo-3"}]}
        self.busy = {
            "popular_times": [
                {"day_text": "Monday", "popular_times": [{"hour": 12, "percentage": 80}, {"hour": 18, "percentage": 60}]},
            ]
        }
        self.tips_text = '["Offer a rainy-day delivery deal.", "Feature the patio on Instagram."]'

    async def _call(self, name, *args):
        self.calls.append((name, args))
        # fail[name] breaks every call, fail[(name, first_arg)] just one entity
        error = self.fail.get(name)
        if error is None and args and isinstance(args[0], (str, int)):
            error = self.fail.get((name, args[0]))
        if error is not None:
            raise error if isinstance(error, BaseException) else ProviderError(str(error))

    async def place_details(self, place_id):
        await self._call("place_details", place_id)
        return dict(self.profiles.get(place_id, {"rating": 4.0}))

    async def weather_for_day(self, lat, lng, day: date):
        await self._call("weather_for_day", lat, lng, day)
        return {"date": day.isoformat(), **self.weather}

    async def scrape_page(self, url):
        await self._call("scrape_page", url)
        return dict(self.page)

    async def discover_menu_urls(self, url, limit):
        await self._call("discover_menu_urls", url, limit)
        return [f"{url}/menu"]

    async def extract_menu(self, url):
        await self._call("extract_menu", url)
        return self.menu

    async def domain_rank(self, domain):
        await self._call("domain_rank", domain)
        return {"domain": domain, **self.rank}

    async def ranked_keywords(self, domain, limit):
        await self._call("ranked_keywords", domain, limit)
        return list(self.keywords)

    async def serp_positions(self, keywords, domain, location_name):
        await self._call("serp_positions", keywords, domain, location_name)
        positions = {k["keyword"]: k["position"] for k in self.keywords}
        return [{"keyword": k, "position": positions.get(k)} for k in keywords]

    async def google_events(self, keyword, location_name, date_range, depth):
        await self._call("google_events", keyword, location_name, date_range, depth)
        return list(self.events)

    async def photo_refs(self, place_id, limit):
        await self._call("photo_refs", place_id, limit)
        return list(self.photos.get(place_id, []))[:limit]

    async def download_photo(self, ref):
        await self._call("download_photo", ref)
        return f"bytes-of-{ref}".encode()

    async def analyze_photo(self, image):
        await self._call("analyze_photo", len(image))
        return {"category": "patio_outdoor", "description": "Sunny terrace"}

    async def busy_times(self, place_id):
        await self._call("busy_times", place_id)
        return dict(self.busy)

    async def generate_text(self, prompt):
        await self._call("generate_text", prompt)
        return self.tips_text

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


@pytest.fixture
def fake_providers():
    return FakeProviders()


def _mk_deps(providers, now=MONDAY):
    return PipelineDeps(
        session_factory=SessionLocal,
        providers=providers.bundle() if isinstance(providers, FakeProviders) else providers,
        snapshots=SnapshotStore(SessionLocal),
        insights=InsightStore(SessionLocal),
        settings=settings,
        clock=lambda: now,
    )


@pytest.fixture
def make_deps():
    return _mk_deps


@pytest.fixture
def deps(fake_providers):
    return _mk_deps(fake_providers)


@pytest.fixture
def job_store():
    return JobStore(SessionLocal, stale_after_seconds=settings.stale_job_after_seconds)


@pytest.fixture
def job_service(deps, job_store):
    return JobService(registry=build_registry(), deps=deps, store=job_store, timeout_seconds=30)


# ----------------------------------------------------
# HTTP
# ----------------------------------------------------
@pytest.fixture
def client(job_service):
    app.dependency_overrides[get_job_service] = lambda: job_service
    yield TestClient(app)
    app.dependency_overrides.clear()
