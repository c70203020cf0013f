# prophet/engine/registry.py
from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Generic, Iterator, List

from .context import CtxT, JobType, StepDef, date_key_for, utc_now


@dataclass
class PipelineDeps:
    """Everything a pipeline needs from the outside world."""

    session_factory: Callable[[], Any]
    providers: Any
    snapshots: Any
    insights: Any
    settings: Any
    clock: Callable[[], Any] = field(default=utc_now)

    def today_key(self) -> str:
        return date_key_for(self.clock())

    def is_weekly_day(self) -> bool:
        return self.clock().weekday() == int(self.settings.weekly_refresh_weekday)

    @contextmanager
    def session(self) -> Iterator[Any]:
        db = self.session_factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()


BuildContext = Callable[[PipelineDeps, str, str], Awaitable[Any]]


@dataclass(frozen=True)
class PipelineDefinition(Generic[CtxT]):
    job_type: JobType
    build_context: Callable[[PipelineDeps, str, str], Awaitable[CtxT]]
    build_steps: Callable[[CtxT], List[StepDef[CtxT]]]
    redirect_path: str

    def redirect_url(self, location_id: str) -> str:
        return f"{self.redirect_path}?location_id={location_id}"


class PipelineRegistry:
    def __init__(self) -> None:
        self._pipelines: Dict[JobType, PipelineDefinition] = {}

    def register(self, definition: PipelineDefinition) -> None:
        if definition.job_type in self._pipelines:
            raise ValueError(f"Pipeline already registered: {definition.job_type.value}")
        self._pipelines[definition.job_type] = definition

    def get(self, job_type: JobType | str) -> PipelineDefinition:
        try:
            return self._pipelines[JobType(job_type)]
        except (KeyError, ValueError):
            raise KeyError(
                f"Unknown pipeline '{job_type}'. "
                f"Registered: {sorted(t.value for t in self._pipelines)}"
            )

    def __contains__(self, job_type: object) -> bool:
        try:
            return JobType(job_type) in self._pipelines
        except ValueError:
            return False

    def job_types(self) -> List[JobType]:
        return list(self._pipelines)
