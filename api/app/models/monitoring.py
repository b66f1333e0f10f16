"""
Monitoring Models

MonitoringTarget is a URL an account wants re-scanned on a cadence.
MonitoringRun is one execution against a target, scheduled or manual.
"""

import enum
import uuid

from sqlalchemy import (
    Column,
    String,
    Integer,
    Boolean,
    DateTime,
    Text,
    ForeignKey,
    JSON,
    Enum as SQLEnum,
    Index,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from app.database import Base, utc_now


class MonitoringProfile(enum.Enum):
    """Compliance profile label carried through to reports."""
    WAD = "wad"
    EAA = "eaa"


class CadenceMode(enum.Enum):
    """How next_run_at advances after each claim."""
    WEEKLY = "weekly"
    INTERVAL_DAYS = "interval_days"
    MONTHLY_RUNS = "monthly_runs"


class RunTrigger(enum.Enum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"


class RunStatus(enum.Enum):
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class MonitoringTarget(Base):
    """A monitored URL. Deletion is soft so run history survives."""

    __tablename__ = "monitoring_targets"
    __table_args__ = (
        # One live target per URL; soft-deleted rows keep their URL for history
        Index(
            "uq_monitoring_targets_user_url_live",
            "user_id",
            "normalized_url",
            unique=True,
            postgresql_where=text("deleted_at IS NULL"),
            sqlite_where=text("deleted_at IS NULL"),
        ),
        Index("ix_monitoring_targets_due", "active", "next_run_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)

    default_url = Column(String(2048), nullable=False)
    normalized_url = Column(String(2048), nullable=False)
    profile = Column(SQLEnum(MonitoringProfile), default=MonitoringProfile.WAD, nullable=False)

    active = Column(Boolean, default=True, nullable=False)
    cadence_mode = Column(SQLEnum(CadenceMode), default=CadenceMode.WEEKLY, nullable=False)
    cadence_value = Column(Integer, nullable=True)
    anchor_at = Column(DateTime(timezone=True), nullable=True)
    next_run_at = Column(DateTime(timezone=True), nullable=True)
    last_run_at = Column(DateTime(timezone=True), nullable=True)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    user = relationship("User", back_populates="monitoring_targets")
    runs = relationship(
        "MonitoringRun",
        back_populates="target",
        cascade="all, delete-orphan",
        order_by="MonitoringRun.started_at.desc()",
    )

    def __repr__(self):
        return f"<MonitoringTarget {self.default_url} active={self.active}>"


class MonitoringRun(Base):
    """One execution against a target; leaves RUNNING exactly once."""

    __tablename__ = "monitoring_runs"
    __table_args__ = (
        Index("ix_monitoring_runs_target_started", "target_id", "started_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    target_id = Column(
        UUID(as_uuid=True),
        ForeignKey("monitoring_targets.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    trigger = Column(SQLEnum(RunTrigger), nullable=False)
    run_url = Column(String(2048), nullable=False)
    status = Column(SQLEnum(RunStatus), default=RunStatus.RUNNING, nullable=False, index=True)

    audit_id = Column(UUID(as_uuid=True), ForeignKey("audits.id", ondelete="SET NULL"), nullable=True)
    # {"summary": {...}, "issue_ids": [...]}
    summary_json = Column(JSON, nullable=True)
    diff_json = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)

    started_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    finished_at = Column(DateTime(timezone=True), nullable=True)

    target = relationship("MonitoringTarget", back_populates="runs")

    def __repr__(self):
        return f"<MonitoringRun {self.id} {self.status.value}>"
