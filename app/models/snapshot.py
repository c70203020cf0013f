# app/models/snapshot.py
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, DateTime, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.db import Base, utcnow


class Snapshot(Base):
    """Normalized provider data for one entity/type/day, plus its content hash."""

    __tablename__ = "snapshots"
    __table_args__ = (
        UniqueConstraint(
            "entity_type", "entity_id", "snapshot_type", "date_key", name="uq_snapshot_day"
        ),
        Index("ix_snapshots_location_type_day", "location_id", "snapshot_type", "date_key"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)  # location | competitor
    entity_id: Mapped[str] = mapped_column(String(100), nullable=False)
    location_id: Mapped[str] = mapped_column(String(100), nullable=False)
    snapshot_type: Mapped[str] = mapped_column(String(64), nullable=False)
    date_key: Mapped[str] = mapped_column(String(10), nullable=False)

    raw_data: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)
    diff_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    captured_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class Insight(Base):
    """Generated finding. Logical key: (location, competitor, day, type)."""

    __tablename__ = "insights"
    __table_args__ = (
        Index("ix_insights_logical_key", "location_id", "competitor_id", "date_key", "insight_type"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    location_id: Mapped[str] = mapped_column(String(100), index=True, nullable=False)
    competitor_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    date_key: Mapped[str] = mapped_column(String(10), nullable=False)
    insight_type: Mapped[str] = mapped_column(String(64), nullable=False)

    title: Mapped[str] = mapped_column(String(500), nullable=False)
    summary: Mapped[str] = mapped_column(Text, nullable=False, default="")
    confidence: Mapped[str] = mapped_column(String(16), nullable=False, default="medium")
    severity: Mapped[str] = mapped_column(String(16), nullable=False, default="info")
    evidence: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    recommendations: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="new")

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
