# app/services/job_service.py
from __future__ import annotations

import asyncio
from typing import Any, Coroutine, Optional, Set

import structlog

from app.core.logging_config import bind_job_context
from app.services.job_store import JobStore
from prophet.engine.context import JobType, PipelineResult, new_ephemeral_id
from prophet.engine.errors import SetupError, describe_error
from prophet.engine.registry import PipelineDeps, PipelineRegistry
from prophet.engine.runner import PipelineRunner
from prophet.engine.transport import EventChannel

logger = structlog.get_logger("prophet.jobs")

SETUP_FAILED_MESSAGE = "Pipeline setup failed"


class JobService:
    """
    Starts pipeline runs: build context, create the job row (or fall back
    to an ephemeral id), emit `init`, then hand off to the runner.

    Runs are background tasks owned by this service so they finish even
    when the client that started them disconnects.
    """

    def __init__(
        self,
        *,
        registry: PipelineRegistry,
        deps: PipelineDeps,
        store: JobStore,
        timeout_seconds: Optional[float] = None,
    ) -> None:
        self.registry = registry
        self.deps = deps
        self.store = store
        self.timeout_seconds = timeout_seconds
        self._tasks: Set[asyncio.Task] = set()

    @property
    def running_tasks(self) -> int:
        return len(self._tasks)

    async def run(
        self,
        job_type: JobType | str,
        tenant_id: str,
        location_id: str,
        channel: Optional[EventChannel] = None,
    ) -> Optional[PipelineResult]:
        job_type = JobType(job_type)
        definition = self.registry.get(job_type)
        bind_job_context(tenant_id=tenant_id, location_id=location_id, job_type=job_type.value)
        log = logger.bind(tenant_id=tenant_id, location_id=location_id, job_type=job_type.value)

        try:
            ctx = await definition.build_context(self.deps, tenant_id, location_id)
            steps = definition.build_steps(ctx)
        except SetupError as exc:
            log.info("pipeline_setup_rejected", error=str(exc))
            self._setup_failed(channel, str(exc))
            return None
        except Exception:
            log.exception("pipeline_setup_crashed")
            self._setup_failed(channel, SETUP_FAILED_MESSAGE)
            return None

        step_defs = [s.describe() for s in steps]
        try:
            job_id = await asyncio.to_thread(
                self.store.create_job, tenant_id, location_id, job_type.value, step_defs
            )
        except Exception as exc:
            job_id = new_ephemeral_id()
            log.warning("job_persist_failed_ephemeral", job_id=job_id, error=describe_error(exc))

        bind_job_context(job_id=job_id)
        if channel is not None:
            channel.emit(
                "init",
                {"jobId": job_id, "steps": [{**d, "status": "queued"} for d in step_defs]},
            )

        return await PipelineRunner(
            job_id=job_id,
            job_type=job_type.value,
            steps=steps,
            ctx=ctx,
            redirect_url=definition.redirect_url(location_id),
            store=self.store,
            channel=channel,
            timeout_seconds=self.timeout_seconds,
        ).run()

    @staticmethod
    def _setup_failed(channel: Optional[EventChannel], message: str) -> None:
        if channel is None:
            return
        channel.emit("error", {"error": message})
        channel.close()

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: Optional[str] = None) -> asyncio.Task:
        """Keep a strong reference until the task finishes; log crashes."""
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("background_task_crashed", task=task.get_name(), error=describe_error(exc))

    def launch(
        self,
        job_type: JobType | str,
        tenant_id: str,
        location_id: str,
        channel: Optional[EventChannel] = None,
    ) -> asyncio.Task:
        async def _guarded() -> Optional[PipelineResult]:
            try:
                return await self.run(job_type, tenant_id, location_id, channel)
            finally:
                # no-op when the runner already closed it
                if channel is not None:
                    channel.close()

        return self.spawn(_guarded(), name=f"pipeline:{JobType(job_type).value}:{location_id}")
