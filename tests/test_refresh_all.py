from datetime import datetime, timezone

import pytest

from app.services.job_service import JobService
from app.services.tiers import SubscriptionTier, get_limits
from prophet.engine.context import JobStatus, JobType
from prophet.engine.pipelines import build_registry
from prophet.engine.pipelines.refresh_all import SUB_PIPELINES, applicable_pipelines
from prophet.engine.transport import EventChannel

TUESDAY = datetime(2026, 3, 3, 15, 0, tzinfo=timezone.utc)


def test_weekly_features_only_on_weekly_day():
    pro = get_limits(SubscriptionTier.PRO)
    assert applicable_pipelines(pro, weekly_day=True) == [s.definition.job_type for s in SUB_PIPELINES]
    assert applicable_pipelines(pro, weekly_day=False) == [
        JobType.CONTENT,
        JobType.VISIBILITY,
        JobType.EVENTS,
        JobType.WEATHER,
        JobType.INSIGHTS,
    ]


def test_weekly_cadence_tiers_skip_events_midweek():
    starter = get_limits(SubscriptionTier.STARTER)
    assert JobType.EVENTS not in applicable_pipelines(starter, weekly_day=False)
    assert JobType.EVENTS in applicable_pipelines(starter, weekly_day=True)


@pytest.mark.anyio
async def test_refresh_all_runs_every_sub_pipeline_on_weekly_day(tenant, job_service):
    channel = EventChannel()
    result = await job_service.run(JobType.REFRESH_ALL, "org-1", "loc-1", channel)

    assert result.status is JobStatus.COMPLETED
    init = channel.events[0][1]
    assert [s["name"] for s in init["steps"]] == [
        "content_pipeline",
        "visibility_pipeline",
        "events_pipeline",
        "photos_pipeline",
        "busy_times_pipeline",
        "weather_pipeline",
        "insights_pipeline",
    ]
    assert all(p is not None and not p.get("skipped") for p in result.step_results)
    assert result.step_results[0]["pipeline"] == "content"
    assert result.step_results[0]["totalSteps"] == 5
    assert channel.events[-1][1]["redirectUrl"] == "/home?location_id=loc-1"


@pytest.mark.anyio
async def test_refresh_all_skips_weekly_work_midweek(tenant, fake_providers, job_store, make_deps):
    service = JobService(registry=build_registry(), deps=make_deps(fake_providers, TUESDAY), store=job_store)
    result = await service.run(JobType.REFRESH_ALL, "org-1", "loc-1", EventChannel())

    by_name = {p["pipeline"]: p for p in result.step_results}
    assert by_name["photos"]["skipped"] is True
    assert by_name["busy_times"]["skipped"] is True
    assert "skipped" not in by_name["weather"]
    assert not [c for c in fake_providers.calls if c[0] in ("photo_refs", "busy_times")]


@pytest.mark.anyio
async def test_sub_pipeline_setup_error_is_a_skip_not_a_failure(tenant, job_service, make_location):
    make_location("loc-bare", website=None, geo_lat=None, geo_lng=None)
    result = await job_service.run(JobType.REFRESH_ALL, "org-1", "loc-bare", EventChannel())

    assert result.status is JobStatus.COMPLETED
    by_name = {p["pipeline"]: p for p in result.step_results}
    assert by_name["content"] == {
        "pipeline": "content",
        "skipped": True,
        "reason": "No website configured for this location",
    }
    assert by_name["visibility"]["skipped"] is True


@pytest.mark.anyio
async def test_sub_pipeline_warnings_are_prefixed(tenant, job_service, fake_providers):
    fake_providers.fail["busy_times"] = "rate limited"
    result = await job_service.run(JobType.REFRESH_ALL, "org-1", "loc-1", EventChannel())

    assert result.status is JobStatus.COMPLETED
    assert "Busy Times: Busy times for Rival c1: rate limited" in result.warnings
    traffic = next(p for p in result.step_results if p["pipeline"] == "busy_times")
    assert traffic["warnings"] == 2


@pytest.mark.anyio
async def test_fatal_sub_step_does_not_fail_the_composite(tenant, job_service, fake_providers):
    fake_providers.fail["scrape_page"] = "timeout"
    result = await job_service.run(JobType.REFRESH_ALL, "org-1", "loc-1", EventChannel())

    assert result.status is JobStatus.COMPLETED
    content = result.step_results[0]
    assert content["completed"] == 0
    assert content["failed"] == 1
    assert "Content & Menus: Scraping your website: timeout" in result.warnings
