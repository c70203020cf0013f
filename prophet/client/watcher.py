# prophet/client/watcher.py
from __future__ import annotations

import asyncio
import contextlib
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import httpx
import structlog

logger = structlog.get_logger("prophet.client.watcher")

ACTIVE_PATH = "/api/jobs/active"
FAST_INTERVAL_SECONDS = 3.0
SLOW_INTERVAL_SECONDS = 30.0

FinishedCallback = Callable[[Dict[str, Any]], None]


class ActiveJobWatcher:
    """
    Polls the active/recent job list and reports jobs that stop running.

    A job is reported once: when an id seen as running either comes back
    terminal or drops out of the list. Polling is fast while anything runs
    and slow otherwise.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        on_finished: Optional[FinishedCallback] = None,
        fast_interval: float = FAST_INTERVAL_SECONDS,
        slow_interval: float = SLOW_INTERVAL_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._client = client
        self._on_finished = on_finished
        self.fast_interval = fast_interval
        self.slow_interval = slow_interval
        self._sleep = sleep
        self.known_running_ids: Set[str] = set()
        self.job_meta_by_id: Dict[str, Dict[str, Any]] = {}
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _fetch(self) -> Optional[List[Dict[str, Any]]]:
        try:
            response = await self._client.get(ACTIVE_PATH, params={"include_recent": "true"})
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.info("active_jobs_poll_failed", error=str(exc))
            return None
        return body if isinstance(body, list) else None

    async def poll_once(self) -> float:
        """One poll; returns the delay before the next one."""
        jobs = await self._fetch()
        if jobs is None:
            return self.fast_interval if self.known_running_ids else self.slow_interval

        by_id = {job["id"]: job for job in jobs if isinstance(job, dict) and job.get("id")}
        now_running = {job_id for job_id, job in by_id.items() if job.get("status") == "running"}

        for job_id in sorted(self.known_running_ids - now_running):
            meta = by_id.get(job_id) or self.job_meta_by_id.get(job_id) or {"id": job_id}
            self.job_meta_by_id.pop(job_id, None)
            self._notify(meta)

        for job_id in now_running:
            self.job_meta_by_id[job_id] = by_id[job_id]
        self.known_running_ids = now_running
        return self.fast_interval if now_running else self.slow_interval

    def _notify(self, job: Dict[str, Any]) -> None:
        if self._on_finished is None:
            return
        try:
            self._on_finished(job)
        except Exception:
            logger.exception("active_job_listener_failed", job_id=job.get("id"))

    async def _loop(self) -> None:
        while True:
            delay = await self.poll_once()
            await self._sleep(delay)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="active-job-watcher")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
