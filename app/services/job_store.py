# app/services/job_store.py
from __future__ import annotations

import json
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

import structlog
from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.db import SessionLocal, utcnow
from app.models.job import RefreshJob
from app.schemas.jobs import JobRecord
from prophet.engine.context import STEP_TRANSITIONS, JobStatus, StepStatus, iso_now

logger = structlog.get_logger("prophet.job_store")

STALE_JOB_MESSAGE = "Job stalled without progress"


class JobStoreError(RuntimeError):
    """Persistence of job progress failed."""


def _to_record(job: RefreshJob) -> JobRecord:
    return JobRecord.model_validate(job)


def _jsonable(value: Any) -> Any:
    return json.loads(json.dumps(value, default=str))


class JobStore:
    """
    Durable job/step progress, scoped per organization.

    All methods are synchronous; async callers go through asyncio.to_thread.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        *,
        clock: Callable[[], datetime] = utcnow,
        stale_after_seconds: Optional[int] = 900,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock
        self.stale_after_seconds = stale_after_seconds

    @contextmanager
    def _session(self) -> Iterator[Session]:
        db = self._session_factory()
        try:
            yield db
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            raise JobStoreError(str(exc)) from exc
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    # ------------------------------------------------------------------
    # writes
    # ------------------------------------------------------------------
    def create_job(
        self,
        organization_id: str,
        location_id: str,
        job_type: str,
        step_defs: Sequence[Dict[str, Any]],
    ) -> str:
        now = self._clock()
        steps = [
            {"name": s["name"], "label": s["label"], "status": StepStatus.QUEUED.value}
            for s in step_defs
        ]
        job = RefreshJob(
            id=str(uuid.uuid4()),
            organization_id=organization_id,
            location_id=location_id,
            job_type=str(getattr(job_type, "value", job_type)),
            status=JobStatus.RUNNING.value,
            total_steps=len(steps),
            current_step=0,
            steps=steps,
            created_at=now,
            updated_at=now,
        )
        with self._session() as db:
            db.add(job)
        logger.info(
            "job_created",
            job_id=job.id,
            organization_id=organization_id,
            job_type=job.job_type,
            total_steps=len(steps),
        )
        return job.id

    def update_step(
        self,
        job_id: str,
        step_index: int,
        status: StepStatus | str,
        preview: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> Optional[JobRecord]:
        """
        Apply one legal step transition. Illegal transitions, out-of-range
        indexes and writes to finished jobs are ignored (logged, no raise).
        """
        status = StepStatus(status)
        with self._session() as db:
            job = db.get(RefreshJob, job_id)
            if job is None:
                return None
            log = logger.bind(job_id=job_id, step_index=step_index, status=status.value)

            if JobStatus(job.status).is_terminal:
                log.info("step_update_ignored_terminal_job")
                return _to_record(job)

            steps = [dict(s) for s in (job.steps or [])]
            if not 0 <= step_index < len(steps):
                log.warning("step_update_out_of_range", total_steps=len(steps))
                return _to_record(job)

            current = StepStatus(steps[step_index].get("status", StepStatus.QUEUED.value))
            if status not in STEP_TRANSITIONS[current]:
                log.warning("step_transition_rejected", current=current.value)
                return _to_record(job)

            step = {**steps[step_index], "status": status.value}
            if status is StepStatus.RUNNING:
                step["startedAt"] = iso_now()
            else:
                step["completedAt"] = iso_now()
            if preview:
                step["preview"] = _jsonable(preview)
            if error:
                step["error"] = error
            steps[step_index] = step

            reached = step_index + (1 if status.is_terminal else 0)
            job.current_step = min(max(job.current_step, reached), len(steps))
            job.steps = steps
            job.updated_at = self._clock()
            db.flush()
            return _to_record(job)

    def finalize_job(
        self, job_id: str, status: JobStatus | str, result: Dict[str, Any]
    ) -> Optional[JobRecord]:
        status = JobStatus(status)
        if not status.is_terminal:
            raise ValueError(f"finalize_job needs a terminal status, got {status.value}")

        with self._session() as db:
            job = db.get(RefreshJob, job_id)
            if job is None:
                return None
            if JobStatus(job.status).is_terminal:
                # first terminal write wins
                if job.status != status.value:
                    logger.warning(
                        "job_finalize_conflict",
                        job_id=job_id,
                        stored=job.status,
                        requested=status.value,
                    )
                return _to_record(job)

            job.status = status.value
            job.result = _jsonable(result)
            job.updated_at = self._clock()
            db.flush()
            logger.info("job_finalized", job_id=job_id, status=status.value)
            return _to_record(job)

    def reap_stale_jobs(self, organization_id: Optional[str] = None) -> int:
        """Fail running jobs that have not advanced for `stale_after_seconds`."""
        if not self.stale_after_seconds:
            return 0
        now = self._clock()
        cutoff = now - timedelta(seconds=self.stale_after_seconds)
        with self._session() as db:
            q = db.query(RefreshJob).filter(
                RefreshJob.status == JobStatus.RUNNING.value,
                RefreshJob.updated_at < cutoff,
            )
            if organization_id:
                q = q.filter(RefreshJob.organization_id == organization_id)
            stale = q.all()
            for job in stale:
                previous = job.result or {}
                job.status = JobStatus.FAILED.value
                job.result = {
                    "warnings": previous.get("warnings", []),
                    "redirectUrl": previous.get("redirectUrl", ""),
                    "error": STALE_JOB_MESSAGE,
                }
                job.updated_at = now
            if stale:
                logger.warning("stale_jobs_reaped", count=len(stale), organization_id=organization_id)
            return len(stale)

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------
    def get_job(self, job_id: str) -> Optional[JobRecord]:
        with self._session() as db:
            job = db.get(RefreshJob, job_id)
            return _to_record(job) if job is not None else None

    def get_active_jobs(self, organization_id: str, limit: int = 10) -> List[JobRecord]:
        self.reap_stale_jobs(organization_id)
        with self._session() as db:
            rows = (
                db.query(RefreshJob)
                .filter(
                    RefreshJob.organization_id == organization_id,
                    RefreshJob.status == JobStatus.RUNNING.value,
                )
                .order_by(RefreshJob.created_at.desc())
                .limit(limit)
                .all()
            )
            return [_to_record(r) for r in rows]

    def get_recent_jobs(
        self, organization_id: str, within_seconds: int = 120, limit: int = 10
    ) -> List[JobRecord]:
        """Running jobs plus jobs that finished inside the window."""
        self.reap_stale_jobs(organization_id)
        cutoff = self._clock() - timedelta(seconds=within_seconds)
        with self._session() as db:
            rows = (
                db.query(RefreshJob)
                .filter(
                    RefreshJob.organization_id == organization_id,
                    or_(
                        RefreshJob.status == JobStatus.RUNNING.value,
                        RefreshJob.updated_at >= cutoff,
                    ),
                )
                .order_by(RefreshJob.updated_at.desc())
                .limit(limit)
                .all()
            )
            return [_to_record(r) for r in rows]
