# app/models/job.py
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, DateTime, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from app.db import Base, utcnow


class RefreshJob(Base):
    """One pipeline run; `steps` holds the per-step status snapshots."""

    __tablename__ = "refresh_jobs"
    __table_args__ = (
        Index("ix_refresh_jobs_org_status", "organization_id", "status"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)

    organization_id: Mapped[str] = mapped_column(String(100), index=True, nullable=False)
    location_id: Mapped[str] = mapped_column(String(100), index=True, nullable=False)
    job_type: Mapped[str] = mapped_column(String(32), nullable=False)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="running")
    total_steps: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    current_step: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    steps: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    result: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    def __repr__(self) -> str:
        return (
            f"<RefreshJob id={self.id} org={self.organization_id} "
            f"type={self.job_type} status={self.status}>"
        )
