# prophet/engine/runner.py
from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Dict, Generic, List, Optional, Sequence

import structlog

from app.metrics import record_job_metrics, record_step_metrics

from .context import (
    CtxT,
    JobStatus,
    OnFail,
    PipelineResult,
    StepDef,
    StepStatus,
    iso_now,
    is_ephemeral,
)
from .errors import describe_error
from .transport import EventChannel

logger = structlog.get_logger("prophet.engine")

TIMEOUT_MESSAGE = "Pipeline exceeded time budget"


def progress_for(index: int, total: int, status: StepStatus) -> int:
    """Whole-number percentage; a resolved step counts as done."""
    if total <= 0:
        return 100
    done = 1 if status.is_terminal else 0
    return int((index + done) / total * 100 + 0.5)


def step_snapshot(
    step: StepDef,
    status: StepStatus,
    *,
    preview: Optional[Dict[str, Any]] = None,
    error: Optional[str] = None,
    started_at: Optional[str] = None,
    completed_at: Optional[str] = None,
) -> Dict[str, Any]:
    snap: Dict[str, Any] = {"name": step.name, "label": step.label, "status": status.value}
    if preview:
        snap["preview"] = preview
    if error:
        snap["error"] = error
    if started_at:
        snap["startedAt"] = started_at
    if completed_at:
        snap["completedAt"] = completed_at
    return snap


def _jsonable(value: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if value is None:
        return None
    if not isinstance(value, dict):
        value = {"value": value}
    return json.loads(json.dumps(value, default=str))


class PipelineRunner(Generic[CtxT]):
    """
    Executes an ordered list of steps against one context.

    Every step is persisted (best effort) and streamed as `step` events; the
    run always ends with exactly one `done` event and a closed channel.
    Only a STOP step failure, a timeout, or an unexpected error fails the job.
    """

    def __init__(
        self,
        *,
        job_id: str,
        job_type: str,
        steps: Sequence[StepDef[CtxT]],
        ctx: CtxT,
        redirect_url: str,
        store: Any = None,
        channel: Optional[EventChannel] = None,
        timeout_seconds: Optional[float] = None,
    ) -> None:
        self.job_id = job_id
        self.job_type = job_type
        self.steps = list(steps)
        self.ctx = ctx
        self.redirect_url = redirect_url
        self.store = store
        self.channel = channel
        self.timeout_seconds = timeout_seconds
        self.step_results: List[Optional[Dict[str, Any]]] = []
        self._fatal: Optional[str] = None
        self.log = logger.bind(
            job_id=job_id,
            job_type=job_type,
            tenant_id=ctx.tenant_id,
            location_id=ctx.location_id,
        )

    # ------------------------------------------------------------------
    # persistence / emission helpers
    # ------------------------------------------------------------------
    async def _persist(self, method: str, *args: Any, **kwargs: Any) -> None:
        if self.store is None or is_ephemeral(self.job_id):
            return
        try:
            await asyncio.to_thread(getattr(self.store, method), self.job_id, *args, **kwargs)
        except Exception as exc:
            # progress storage is best effort; the stream stays authoritative
            self.log.warning("job_store_write_failed", operation=method, error=str(exc))

    def _emit(self, name: str, payload: Dict[str, Any]) -> None:
        if self.channel is not None:
            self.channel.emit(name, payload)

    def _emit_step(self, index: int, snap: Dict[str, Any]) -> None:
        status = StepStatus(snap["status"])
        self._emit(
            "step",
            {
                "jobId": self.job_id,
                "stepIndex": index,
                "totalSteps": len(self.steps),
                "step": snap,
                "progress": progress_for(index, len(self.steps), status),
            },
        )

    # ------------------------------------------------------------------
    # execution
    # ------------------------------------------------------------------
    async def _run_step(self, index: int, step: StepDef[CtxT]) -> bool:
        """Returns False when the pipeline must stop."""
        started_at = iso_now()
        await self._persist("update_step", index, StepStatus.RUNNING)
        self._emit_step(index, step_snapshot(step, StepStatus.RUNNING, started_at=started_at))
        self.log.info("step_start", step=step.name)

        try:
            preview = _jsonable(await step.run(self.ctx))
        except Exception as exc:
            message = describe_error(exc)
            await self._persist("update_step", index, StepStatus.FAILED, error=message)
            self._emit_step(
                index,
                step_snapshot(
                    step,
                    StepStatus.FAILED,
                    error=message,
                    started_at=started_at,
                    completed_at=iso_now(),
                ),
            )
            record_step_metrics(self.job_type, step.name, StepStatus.FAILED.value)
            self.step_results.append(None)
            self.ctx.warnings.append(f"{step.label}: {message}")

            if step.on_fail is OnFail.STOP:
                self._fatal = f"{step.label}: {message}"
                self.log.error("pipeline_failed", failure_step=step.name, error=message)
                return False
            self.log.warning("step_failed_continue", step=step.name, error=message)
            return True

        await self._persist("update_step", index, StepStatus.COMPLETE, preview=preview)
        self._emit_step(
            index,
            step_snapshot(
                step,
                StepStatus.COMPLETE,
                preview=preview,
                started_at=started_at,
                completed_at=iso_now(),
            ),
        )
        record_step_metrics(self.job_type, step.name, StepStatus.COMPLETE.value)
        self.step_results.append(preview)
        self.log.info("step_end", step=step.name)
        return True

    async def _run_steps(self) -> None:
        for index, step in enumerate(self.steps):
            if not await self._run_step(index, step):
                return

    async def run(self) -> PipelineResult:
        started = time.monotonic()
        status = JobStatus.COMPLETED
        error: Optional[str] = None
        self.log.info("pipeline_start", total_steps=len(self.steps))

        try:
            if self.timeout_seconds:
                await asyncio.wait_for(self._run_steps(), timeout=self.timeout_seconds)
            else:
                await self._run_steps()
            if self._fatal:
                status, error = JobStatus.FAILED, self._fatal
        except asyncio.TimeoutError:
            status, error = JobStatus.FAILED, TIMEOUT_MESSAGE
            self.log.error("pipeline_timeout", timeout_seconds=self.timeout_seconds)
        except asyncio.CancelledError:
            status, error = JobStatus.FAILED, "Pipeline cancelled"
            raise
        except Exception as exc:
            status, error = JobStatus.FAILED, describe_error(exc)
            self.log.exception("pipeline_crashed")
        finally:
            result = await self._finish(status, error, time.monotonic() - started)
        return result

    async def _finish(
        self, status: JobStatus, error: Optional[str], duration: float
    ) -> PipelineResult:
        warnings = list(self.ctx.warnings)
        stored: Dict[str, Any] = {"warnings": warnings, "redirectUrl": self.redirect_url}
        if error:
            stored["error"] = error
        try:
            await self._persist("finalize_job", status, stored)
            done: Dict[str, Any] = {
                "jobId": self.job_id,
                "status": status.value,
                "warnings": warnings,
                "redirectUrl": self.redirect_url,
            }
            if error:
                done["error"] = error
            self._emit("done", done)
        finally:
            if self.channel is not None:
                self.channel.close()

        record_job_metrics(self.job_type, status.value, duration)
        self.log.info(
            "pipeline_finished",
            status=status.value,
            warnings=len(warnings),
            duration_s=round(duration, 3),
        )
        return PipelineResult(
            status=status, warnings=warnings, step_results=self.step_results, error=error
        )


async def run_pipeline(
    job_id: str,
    job_type: str,
    steps: Sequence[StepDef[CtxT]],
    ctx: CtxT,
    *,
    redirect_url: str,
    store: Any = None,
    channel: Optional[EventChannel] = None,
    timeout_seconds: Optional[float] = None,
) -> PipelineResult:
    return await PipelineRunner(
        job_id=job_id,
        job_type=job_type,
        steps=steps,
        ctx=ctx,
        redirect_url=redirect_url,
        store=store,
        channel=channel,
        timeout_seconds=timeout_seconds,
    ).run()
