# prophet/engine/context.py
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Generic, List, Optional, TypeVar

EPHEMERAL_PREFIX = "ephemeral-"


class JobType(str, Enum):
    CONTENT = "content"
    VISIBILITY = "visibility"
    EVENTS = "events"
    INSIGHTS = "insights"
    PHOTOS = "photos"
    BUSY_TIMES = "busy_times"
    WEATHER = "weather"
    REFRESH_ALL = "refresh_all"

    @classmethod
    def parse(cls, value: str) -> Optional["JobType"]:
        try:
            return cls(value)
        except ValueError:
            return None


class JobStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not JobStatus.RUNNING


class StepStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (StepStatus.COMPLETE, StepStatus.FAILED)


# queued -> running -> complete | failed, nothing else
STEP_TRANSITIONS: Dict[StepStatus, frozenset] = {
    StepStatus.QUEUED: frozenset({StepStatus.RUNNING}),
    StepStatus.RUNNING: frozenset({StepStatus.COMPLETE, StepStatus.FAILED}),
    StepStatus.COMPLETE: frozenset(),
    StepStatus.FAILED: frozenset(),
}


class OnFail(str, Enum):
    STOP = "STOP"
    CONTINUE = "CONTINUE"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def iso_now() -> str:
    return utc_now().isoformat().replace("+00:00", "Z")


def date_key_for(moment: Optional[datetime] = None) -> str:
    return (moment or utc_now()).date().isoformat()


def new_ephemeral_id() -> str:
    return f"{EPHEMERAL_PREFIX}{uuid.uuid4()}"


def is_ephemeral(job_id: Optional[str]) -> bool:
    return bool(job_id) and job_id.startswith(EPHEMERAL_PREFIX)


@dataclass
class GeneratedInsight:
    insight_type: str
    title: str
    summary: str
    confidence: str = "medium"  # low | medium | high
    severity: str = "info"  # info | warning | critical
    competitor_id: Optional[str] = None
    evidence: Dict[str, Any] = field(default_factory=dict)
    recommendations: List[str] = field(default_factory=list)

    @property
    def key(self) -> tuple:
        return (self.competitor_id, self.insight_type)


@dataclass(kw_only=True)
class PipelineContext:
    """
    Mutable state bag for one pipeline run.
    Steps read what earlier steps wrote; warnings and insights accumulate here.
    """

    tenant_id: str
    location_id: str
    date_key: str
    warnings: List[str] = field(default_factory=list)
    insights: List[GeneratedInsight] = field(default_factory=list)

    def warn(self, message: str) -> None:
        self.warnings.append(message)


CtxT = TypeVar("CtxT", bound=PipelineContext)

StepFn = Callable[[Any], Awaitable[Optional[Dict[str, Any]]]]


@dataclass(frozen=True)
class StepDef(Generic[CtxT]):
    name: str
    label: str
    run: Callable[[CtxT], Awaitable[Optional[Dict[str, Any]]]]
    on_fail: OnFail = OnFail.CONTINUE

    def describe(self) -> Dict[str, str]:
        return {"name": self.name, "label": self.label}


@dataclass
class PipelineResult:
    status: JobStatus
    warnings: List[str] = field(default_factory=list)
    step_results: List[Optional[Dict[str, Any]]] = field(default_factory=list)
    error: Optional[str] = None
