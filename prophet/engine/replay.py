# prophet/engine/replay.py
from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog

from .context import JobStatus, StepStatus
from .runner import progress_for
from .transport import EventChannel

logger = structlog.get_logger("prophet.replay")


def _step_event(job: Any, index: int, step: Dict[str, Any]) -> Dict[str, Any]:
    total = job.total_steps or len(job.steps)
    status = StepStatus(step.get("status", StepStatus.QUEUED.value))
    return {
        "jobId": job.id,
        "stepIndex": index,
        "totalSteps": total,
        "step": step,
        "progress": progress_for(index, total, status),
    }


def _done_event(job: Any) -> Dict[str, Any]:
    result = job.result or {}
    payload: Dict[str, Any] = {
        "jobId": job.id,
        "status": job.status,
        "warnings": result.get("warnings", []),
        "redirectUrl": result.get("redirectUrl", ""),
    }
    if result.get("error"):
        payload["error"] = result["error"]
    return payload


def _emit_changed(channel: EventChannel, job: Any, seen: Dict[int, str]) -> None:
    """Emit every non-queued step whose status differs from what was last sent."""
    for index, step in enumerate(job.steps):
        status = step.get("status", StepStatus.QUEUED.value)
        if status == StepStatus.QUEUED.value or seen.get(index) == status:
            continue
        seen[index] = status
        channel.emit("step", _step_event(job, index, step))


async def replay_job(
    job: Any,
    *,
    store: Any,
    channel: EventChannel,
    poll_interval: float = 2.0,
    max_polls: int = 300,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> Optional[str]:
    """
    Re-attach a client to a persisted job.

    Sends init, every non-queued step, then either `done` (terminal job) or
    polls the store until the job ends or the poll budget runs out.
    Never writes to the store. Returns the last observed job status.
    """
    log = logger.bind(job_id=job.id, job_type=job.job_type)
    try:
        channel.emit("init", {"jobId": job.id, "steps": job.steps})
        seen: Dict[int, str] = {}
        _emit_changed(channel, job, seen)

        if JobStatus(job.status).is_terminal:
            channel.emit("done", _done_event(job))
            return job.status

        current = job
        for _ in range(max_polls):
            await sleep(poll_interval)
            if channel.closed:
                log.info("replay_client_gone")
                break
            try:
                updated = await asyncio.to_thread(store.get_job, job.id)
            except Exception as exc:
                log.warning("replay_poll_failed", error=str(exc))
                continue
            if updated is None:
                break
            current = updated

            _emit_changed(channel, updated, seen)

            if JobStatus(updated.status).is_terminal:
                channel.emit("done", _done_event(updated))
                break
        else:
            log.info("replay_poll_budget_exhausted", max_polls=max_polls)
        return current.status
    finally:
        channel.close()
