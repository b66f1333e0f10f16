"""
Database Models

SQLAlchemy ORM models for the application.
"""

from app.models.user import User, PlanType, Tier, MONITORING_TIER_LIMITS
from app.models.audit import AuditRecord, AuditDetail, AuditKind, AuditSource
from app.models.monitoring import (
    MonitoringTarget,
    MonitoringRun,
    MonitoringProfile,
    CadenceMode,
    RunTrigger,
    RunStatus,
)

__all__ = [
    "User",
    "PlanType",
    "Tier",
    "MONITORING_TIER_LIMITS",
    "AuditRecord",
    "AuditDetail",
    "AuditKind",
    "AuditSource",
    "MonitoringTarget",
    "MonitoringRun",
    "MonitoringProfile",
    "CadenceMode",
    "RunTrigger",
    "RunStatus",
]
