import asyncio

import pytest

from app.db import SessionLocal
from app.services.job_store import JobStore
from prophet.engine.context import JobStatus, StepStatus
from prophet.engine.replay import replay_job
from prophet.engine.transport import EventChannel

STEPS = [{"name": "a", "label": "Step A"}, {"name": "b", "label": "Step B"}]


@pytest.fixture
def store():
    return JobStore(SessionLocal)


def _scripted_sleep(actions):
    """Each poll runs the next scripted mutation instead of sleeping."""
    queue = list(actions)

    async def sleep(_):
        if queue:
            queue.pop(0)()

    return sleep


@pytest.mark.anyio
async def test_terminal_job_replays_and_finishes(store):
    job_id = store.create_job("org-1", "loc-1", "content", STEPS)
    for i in range(2):
        store.update_step(job_id, i, StepStatus.RUNNING)
        store.update_step(job_id, i, StepStatus.COMPLETE, preview={"i": i})
    store.finalize_job(job_id, JobStatus.COMPLETED, {"warnings": ["w1"], "redirectUrl": "/content?location_id=loc-1"})

    channel = EventChannel()
    status = await replay_job(store.get_job(job_id), store=store, channel=channel, poll_interval=0)

    assert status == "completed"
    assert channel.names() == ["init", "step", "step", "done"]
    init = channel.events[0][1]
    assert init["jobId"] == job_id
    assert len(init["steps"]) == 2
    done = channel.events[-1][1]
    assert done == {
        "jobId": job_id,
        "status": "completed",
        "warnings": ["w1"],
        "redirectUrl": "/content?location_id=loc-1",
    }
    assert channel.closed


@pytest.mark.anyio
async def test_queued_steps_are_not_replayed(store):
    job_id = store.create_job("org-1", "loc-1", "content", STEPS)
    store.update_step(job_id, 0, StepStatus.RUNNING)

    channel = EventChannel()
    await replay_job(store.get_job(job_id), store=store, channel=channel, max_polls=0)

    steps = [p for name, p in channel.events if name == "step"]
    assert [(s["stepIndex"], s["step"]["status"], s["progress"]) for s in steps] == [(0, "running", 0)]
    assert channel.closed


@pytest.mark.anyio
async def test_running_job_is_followed_until_done(store):
    job_id = store.create_job("org-1", "loc-1", "content", STEPS)
    store.update_step(job_id, 0, StepStatus.RUNNING)

    sleep = _scripted_sleep(
        [
            lambda: store.update_step(job_id, 0, StepStatus.COMPLETE),
            lambda: None,
            lambda: (
                store.update_step(job_id, 1, StepStatus.RUNNING),
                store.update_step(job_id, 1, StepStatus.FAILED, error="nope"),
            ),
            lambda: store.finalize_job(
                job_id,
                JobStatus.COMPLETED,
                {"warnings": ["Step B: nope"], "redirectUrl": "/content?location_id=loc-1"},
            ),
        ]
    )
    channel = EventChannel()
    status = await replay_job(store.get_job(job_id), store=store, channel=channel, sleep=sleep)

    assert status == "completed"
    steps = [(p["stepIndex"], p["step"]["status"]) for name, p in channel.events if name == "step"]
    assert steps == [(0, "running"), (0, "complete"), (1, "failed")]
    assert channel.names()[-1] == "done"
    assert channel.events[-1][1]["warnings"] == ["Step B: nope"]


@pytest.mark.anyio
async def test_poll_budget_bounds_the_stream(store):
    job_id = store.create_job("org-1", "loc-1", "content", STEPS)
    channel = EventChannel()
    polls = []

    async def sleep(_):
        polls.append(1)

    status = await replay_job(store.get_job(job_id), store=store, channel=channel, max_polls=3, sleep=sleep)

    assert status == "running"
    assert len(polls) == 3
    assert "done" not in channel.names()
    assert channel.closed


@pytest.mark.anyio
async def test_replay_never_writes(store):
    job_id = store.create_job("org-1", "loc-1", "content", STEPS)
    before = store.get_job(job_id)

    await replay_job(before, store=store, channel=EventChannel(), max_polls=2, sleep=_scripted_sleep([]))

    after = store.get_job(job_id)
    assert after.updated_at == before.updated_at
    assert after.status == "running"


@pytest.mark.anyio
async def test_concurrent_reconnects_see_the_same_outcome(store):
    job_id = store.create_job("org-1", "loc-1", "content", STEPS)
    store.update_step(job_id, 0, StepStatus.RUNNING)

    async def advance():
        await asyncio.sleep(0.02)
        store.update_step(job_id, 0, StepStatus.COMPLETE, preview={"pages": 2})
        await asyncio.sleep(0.02)
        store.update_step(job_id, 1, StepStatus.RUNNING)
        store.update_step(job_id, 1, StepStatus.FAILED, error="timeout")
        await asyncio.sleep(0.02)
        store.finalize_job(
            job_id,
            JobStatus.COMPLETED,
            {"warnings": ["Step B: timeout"], "redirectUrl": "/content?location_id=loc-1"},
        )

    first, second = EventChannel(), EventChannel()
    statuses = await asyncio.gather(
        replay_job(store.get_job(job_id), store=store, channel=first, poll_interval=0.005, max_polls=1000),
        replay_job(store.get_job(job_id), store=store, channel=second, poll_interval=0.005, max_polls=1000),
        advance(),
    )

    assert statuses[:2] == ["completed", "completed"]
    assert first.names()[-1] == "done"
    assert first.events[-1] == second.events[-1]
    assert first.events[-1][1]["warnings"] == ["Step B: timeout"]
    final_steps = [
        {p["stepIndex"]: p["step"]["status"] for name, p in channel.events if name == "step"}
        for channel in (first, second)
    ]
    assert final_steps[0] == final_steps[1] == {0: "complete", 1: "failed"}
