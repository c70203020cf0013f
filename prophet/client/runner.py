# prophet/client/runner.py
from __future__ import annotations

import asyncio
import contextlib
import json
import time
from dataclasses import replace
from typing import Any, Callable, Dict, Optional

import httpx
import structlog

from prophet.client.sse import aiter_sse
from prophet.client.state import (
    CONNECT_FAILED,
    CONNECTION_LOST,
    JobRunnerState,
    RunnerStatus,
    reduce,
)

logger = structlog.get_logger("prophet.client.runner")

JOBS_PATH = "/api/jobs"

StateListener = Callable[[JobRunnerState], None]


class JobRunner:
    """
    Drives one pipeline job from the client side.

    Opens the start (or reconnect) SSE stream, folds every event into a
    JobRunnerState and, once the job is initialised, follows the ambient
    feed for the same location in parallel. Closing or resetting the runner
    stops all updates without raising.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        on_change: Optional[StateListener] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self._on_change = on_change
        self._clock = clock
        self._state = JobRunnerState()
        self._started_at: Optional[float] = None
        self._finished_at: Optional[float] = None
        self._generation = 0
        self._task: Optional[asyncio.Task] = None
        self._ambient: Optional[asyncio.Task] = None

    # ----------------------------------------------------
    # State
    # ----------------------------------------------------
    @property
    def state(self) -> JobRunnerState:
        return replace(self._state, elapsed=self.elapsed)

    @property
    def elapsed(self) -> float:
        if self._started_at is None:
            return 0.0
        end = self._finished_at if self._finished_at is not None else self._clock()
        return max(0.0, end - self._started_at)

    def _set(self, state: JobRunnerState) -> None:
        self._state = state
        if state.status in (RunnerStatus.COMPLETE, RunnerStatus.FAILED) and self._finished_at is None:
            self._finished_at = self._clock()
        if self._on_change is not None:
            try:
                self._on_change(self.state)
            except Exception:
                logger.exception("job_runner_listener_failed")

    def _dispatch(self, generation: int, event: str, payload: Dict[str, Any]) -> None:
        if generation != self._generation:
            return
        self._set(reduce(self._state, event, payload))

    # ----------------------------------------------------
    # Commands
    # ----------------------------------------------------
    def set_checking(self) -> None:
        """Show a pending state while the caller looks for an active job to rejoin."""
        if self._state.status == RunnerStatus.IDLE:
            self._set(replace(self._state, status=RunnerStatus.CHECKING))

    def start(self, job_type: str, location_id: str) -> asyncio.Task:
        """Start a job; the returned task resolves to the final state."""
        return self._launch(
            f"{JOBS_PATH}/{job_type}", {"location_id": location_id}, location_id
        )

    def reconnect(self, job_id: str, location_id: Optional[str] = None) -> asyncio.Task:
        """Attach to an existing job; the stream replays what already happened."""
        return self._launch(f"{JOBS_PATH}/stream/{job_id}", None, location_id)

    async def reset(self) -> None:
        await self._cancel()
        self._started_at = None
        self._finished_at = None
        self._set(JobRunnerState())

    async def close(self) -> None:
        await self._cancel()

    async def wait(self) -> JobRunnerState:
        if self._task is not None:
            await self._task
        return self.state

    # ----------------------------------------------------
    # Internals
    # ----------------------------------------------------
    def _launch(
        self, path: str, params: Optional[Dict[str, str]], location_id: Optional[str]
    ) -> asyncio.Task:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        if self._ambient is not None and not self._ambient.done():
            self._ambient.cancel()
        self._generation += 1
        self._started_at = self._clock()
        self._finished_at = None
        self._set(replace(JobRunnerState(), status=RunnerStatus.RUNNING))
        self._task = asyncio.create_task(
            self._consume(self._generation, path, params, location_id),
            name=f"job-runner:{path}",
        )
        return self._task

    async def _cancel(self) -> None:
        self._generation += 1
        tasks = [t for t in (self._task, self._ambient) if t is not None and not t.done()]
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._task = None
        self._ambient = None

    async def _consume(
        self,
        generation: int,
        path: str,
        params: Optional[Dict[str, str]],
        location_id: Optional[str],
    ) -> JobRunnerState:
        initialised = False
        try:
            async with self._client.stream("GET", path, params=params) as response:
                if response.status_code != 200:
                    await response.aread()
                    self._dispatch(generation, "error", {"error": _error_message(response)})
                    return self.state

                async for sse in aiter_sse(response.aiter_lines()):
                    try:
                        payload = sse.json()
                    except json.JSONDecodeError:
                        logger.warning("job_runner_bad_payload", sse_event=sse.event)
                        continue
                    self._dispatch(generation, sse.event, payload)
                    if sse.event == "init" and not initialised:
                        initialised = True
                        if location_id:
                            self._ambient = asyncio.create_task(
                                self._follow_ambient(generation, location_id),
                                name=f"ambient-feed:{location_id}",
                            )
                    if sse.event in ("done", "error"):
                        break

            if generation == self._generation and self._state.is_active:
                self._dispatch(generation, "error", {"error": CONNECTION_LOST})
        except asyncio.CancelledError:
            logger.debug("job_runner_cancelled", path=path)
        except httpx.HTTPError as exc:
            logger.warning("job_runner_stream_failed", path=path, error=str(exc))
            message = CONNECTION_LOST if initialised else CONNECT_FAILED
            self._dispatch(generation, "error", {"error": message})
        finally:
            current = generation == self._generation
            if current and self._ambient is not None and not self._ambient.done():
                self._ambient.cancel()
        return self.state

    async def _follow_ambient(self, generation: int, location_id: str) -> None:
        try:
            async with self._client.stream(
                "GET", f"{JOBS_PATH}/ambient-feed", params={"location_id": location_id}
            ) as response:
                if response.status_code != 200:
                    return
                async for sse in aiter_sse(response.aiter_lines()):
                    if sse.event == "done":
                        return
                    if sse.event == "card":
                        self._dispatch(generation, "card", sse.json())
        except asyncio.CancelledError:
            pass
        except (httpx.HTTPError, json.JSONDecodeError) as exc:
            # the feed is decoration; losing it never fails the job
            logger.info("ambient_feed_dropped", location_id=location_id, error=str(exc))


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return f"Request failed ({response.status_code})"
