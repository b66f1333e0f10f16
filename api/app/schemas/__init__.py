"""
Pydantic Schemas

Request/Response schemas for API validation.
"""

from app.schemas.audit import (
    Issue,
    IssueElement,
    ImpactCounts,
    Summary,
    ScanRequest,
    ScanReport,
    ScanResponse,
    AuditListResponse,
    AuditDetailResponse,
    IMPACT_ORDER,
)
from app.schemas.monitoring import (
    MonitoringDiff,
    RunSnapshot,
    TickSummary,
)

__all__ = [
    "Issue",
    "IssueElement",
    "ImpactCounts",
    "Summary",
    "ScanRequest",
    "ScanReport",
    "ScanResponse",
    "AuditListResponse",
    "AuditDetailResponse",
    "IMPACT_ORDER",
    "MonitoringDiff",
    "RunSnapshot",
    "TickSummary",
]
