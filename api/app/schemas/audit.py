"""
Audit Schemas

Pydantic models for normalized scan findings and the scan endpoints.
"""

from datetime import datetime
from typing import List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

Impact = Literal["critical", "serious", "moderate", "minor"]
AccessLevel = Literal["free", "paid"]

IMPACT_ORDER = ("critical", "serious", "moderate", "minor")


class IssueElement(BaseModel):
    """One affected DOM node."""

    model_config = ConfigDict(frozen=True)

    target: str = ""
    html: str = ""
    failure_summary: str = ""


class Issue(BaseModel):
    """A normalized accessibility finding. Immutable once produced."""

    model_config = ConfigDict(frozen=True)

    id: str
    impact: Impact
    title: str
    description: str
    remediation: str
    rule_reference: str
    wcag_level: str
    principle: str
    help_url: Optional[str] = None
    affected_count: int = 0
    elements: List[IssueElement] = Field(default_factory=list)


class ImpactCounts(BaseModel):
    """Counts keyed by impact level."""

    critical: int = 0
    serious: int = 0
    moderate: int = 0
    minor: int = 0


class Summary(BaseModel):
    """Issue totals derived from an issue list."""

    total: int = 0
    by_impact: ImpactCounts = Field(default_factory=ImpactCounts)


class ScanRequest(BaseModel):
    """Schema for starting a manual scan."""

    model_config = ConfigDict(extra="forbid")

    url: str = Field(..., description="URL to scan", min_length=1, max_length=4096)
    locale: Optional[str] = Field(default=None, max_length=16)


class ScanReport(BaseModel):
    url: str
    summary: Summary
    top_issues: List[Issue]
    issues: Optional[List[Issue]] = None


class ScanResponse(BaseModel):
    """Response of a manual scan."""

    access_level: AccessLevel
    audit_id: UUID
    report: ScanReport


class AuditListItem(BaseModel):
    id: UUID
    url: str
    kind: AccessLevel
    summary: Summary
    created_at: datetime


class AuditListResponse(BaseModel):
    """Schema for paginated audit history."""

    audits: List[AuditListItem]
    total: int
    page: int
    per_page: int
    pages: int


class AuditDetailResponse(BaseModel):
    id: UUID
    url: str
    access_level: AccessLevel
    created_at: datetime
    report: ScanReport
