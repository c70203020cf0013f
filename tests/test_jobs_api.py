from app.auth.jwt import create_access_token
from prophet.client.sse import iter_sse
from prophet.engine.context import JobStatus, StepStatus

STEPS = [{"name": "a", "label": "Step A"}, {"name": "b", "label": "Step B"}]


def _events(response):
    return [(e.event, e.json()) for e in iter_sse(response.text.splitlines())]


# -------------------------
# start
# -------------------------
def test_start_validates_before_auth(client):
    r = client.get("/api/jobs/mystery?location_id=loc-1")
    assert r.status_code == 400
    assert r.json() == {"error": "Invalid job type"}

    r = client.get("/api/jobs/weather")
    assert r.status_code == 400
    assert r.json() == {"error": "location_id is required"}

    r = client.get("/api/jobs/weather?location_id=loc-1")
    assert r.status_code == 401
    assert r.json() == {"error": "Unauthorized"}


def test_start_requires_owner_or_admin(client, tenant, make_user, bearer):
    make_user("user-viewer", role="viewer")
    r = client.get("/api/jobs/weather?location_id=loc-1", headers=bearer("user-viewer"))
    assert r.status_code == 401


def test_start_streams_the_whole_run(client, tenant, auth_headers, job_store):
    r = client.get("/api/jobs/weather?location_id=loc-1", headers=auth_headers)

    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/event-stream")
    events = _events(r)
    names = [name for name, _ in events]
    assert names[0] == "init"
    assert names[-1] == "done"
    assert names.count("step") == 4

    job_id = events[0][1]["jobId"]
    done = events[-1][1]
    assert done["status"] == "completed"
    assert done["redirectUrl"] == "/weather?location_id=loc-1"

    job = job_store.get_job(job_id)
    assert job.status == "completed"
    assert job.organization_id == "org-1"


def test_start_accepts_cookie_auth(client, tenant):
    client.cookies.set("access_token", create_access_token(user_id="user-1", organization_id="org-1"))
    r = client.get("/api/jobs/weather?location_id=loc-1")
    assert _events(r)[-1][0] == "done"


def test_start_for_foreign_location_is_a_single_error(client, tenant, auth_headers, make_org, make_location):
    make_org("org-2")
    make_location("loc-other", org_id="org-2")

    r = client.get("/api/jobs/content?location_id=loc-other", headers=auth_headers)

    assert r.status_code == 200
    assert _events(r) == [("error", {"error": "Location not found"})]


# -------------------------
# active
# -------------------------
def test_active_without_auth_is_an_empty_list(client):
    r = client.get("/api/jobs/active")
    assert r.status_code == 200
    assert r.json() == []
    assert r.headers["cache-control"] == "no-cache, no-store, must-revalidate"
    assert r.headers["pragma"] == "no-cache"


def test_active_and_recent_are_tenant_scoped(client, tenant, auth_headers, job_store):
    running = job_store.create_job("org-1", "loc-1", "content", STEPS)
    finished = job_store.create_job("org-1", "loc-1", "events", STEPS)
    job_store.finalize_job(finished, JobStatus.COMPLETED, {"warnings": []})
    job_store.create_job("org-2", "loc-9", "content", STEPS)

    active = client.get("/api/jobs/active", headers=auth_headers).json()
    assert [j["id"] for j in active] == [running]

    recent = client.get("/api/jobs/active?include_recent=true", headers=auth_headers).json()
    assert {j["id"] for j in recent} == {running, finished}
    assert {j["status"] for j in recent} == {"running", "completed"}


# -------------------------
# stream (reconnect)
# -------------------------
def test_stream_auth_and_ownership(client, tenant, auth_headers, job_store):
    foreign = job_store.create_job("org-2", "loc-9", "content", STEPS)

    assert client.get(f"/api/jobs/stream/{foreign}").status_code == 401
    r = client.get(f"/api/jobs/stream/{foreign}", headers=auth_headers)
    assert r.status_code == 404
    assert r.json() == {"error": "Job not found"}
    assert client.get("/api/jobs/stream/missing", headers=auth_headers).status_code == 404


def test_stream_replays_a_finished_job(client, tenant, auth_headers, job_store):
    job_id = job_store.create_job("org-1", "loc-1", "content", STEPS)
    job_store.update_step(job_id, 0, StepStatus.RUNNING)
    job_store.update_step(job_id, 0, StepStatus.COMPLETE, preview={"pages": 2})
    job_store.finalize_job(job_id, JobStatus.FAILED, {"warnings": [], "error": "Step B: boom"})

    events = _events(client.get(f"/api/jobs/stream/{job_id}", headers=auth_headers))

    assert [name for name, _ in events] == ["init", "step", "done"]
    assert events[1][1]["step"]["preview"] == {"pages": 2}
    assert events[-1][1]["status"] == "failed"
    assert events[-1][1]["error"] == "Step B: boom"


def test_health_and_metrics(client):
    assert client.get("/health").json() == {"status": "ok"}
    r = client.get("/metrics")
    assert r.status_code == 200
    assert "prophet_jobs_total" in r.text
