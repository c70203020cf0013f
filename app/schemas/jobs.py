# app/schemas/jobs.py
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from prophet.engine.context import JobStatus


class JobStepModel(BaseModel):
    """Wire shape of one step inside a job (camelCase keys, as stored)."""

    model_config = ConfigDict(populate_by_name=True)

    name: str
    label: str
    status: str = "queued"
    preview: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    started_at: Optional[str] = Field(None, alias="startedAt")
    completed_at: Optional[str] = Field(None, alias="completedAt")


class JobRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    organization_id: str
    location_id: str
    job_type: str
    status: str
    total_steps: int = 0
    current_step: int = 0
    steps: List[Dict[str, Any]] = Field(default_factory=list)
    result: Optional[Dict[str, Any]] = None
    created_at: datetime
    updated_at: datetime

    @property
    def is_terminal(self) -> bool:
        return JobStatus(self.status).is_terminal

    def step_models(self) -> List[JobStepModel]:
        return [JobStepModel.model_validate(s) for s in self.steps]


class CronJobSummary(BaseModel):
    locationId: str
    organizationId: str
    tier: str
    pipelines: List[str] = Field(default_factory=list)
    skipped: Optional[str] = None


class CronRunResponse(BaseModel):
    ok: bool = True
    dateKey: str
    isWeeklyDay: bool
    locationsProcessed: int
    jobs: List[CronJobSummary] = Field(default_factory=list)
