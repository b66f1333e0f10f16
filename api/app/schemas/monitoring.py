"""
Monitoring Schemas

Pydantic models for monitoring targets, runs, diffs and the scheduler tick.
"""

from datetime import datetime
from typing import List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.schemas.audit import ImpactCounts, Summary

Profile = Literal["wad", "eaa"]
CadenceModeName = Literal["weekly", "interval_days", "monthly_runs"]


class MonitoringDiff(BaseModel):
    """Change between two consecutive successful runs."""

    total_delta: int = 0
    by_impact_delta: ImpactCounts = Field(default_factory=ImpactCounts)
    new_issues: int = 0
    resolved_issues: int = 0
    new_issue_ids: List[str] = Field(default_factory=list)
    resolved_issue_ids: List[str] = Field(default_factory=list)


class RunSnapshot(BaseModel):
    """What a successful run stores for the next diff."""

    summary: Summary
    issue_ids: List[str] = Field(default_factory=list)


class TickSummary(BaseModel):
    """Counts reported by one scheduler tick."""

    due: int = 0
    processed: int = 0
    failed: int = 0
    skipped: int = 0


class ActivateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    default_url: Optional[str] = Field(default=None, max_length=4096)
    profile: Optional[Profile] = None
    cadence_mode: Optional[CadenceModeName] = None
    cadence_value: Optional[int] = None


class ConfigUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    target_id: UUID
    default_url: Optional[str] = Field(default=None, max_length=4096)
    profile: Optional[Profile] = None
    active: Optional[bool] = None
    cadence_mode: Optional[CadenceModeName] = None
    cadence_value: Optional[int] = None


class DeleteTargetRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    target_id: UUID


class RunNowRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    target_id: Optional[UUID] = None
    url: Optional[str] = Field(default=None, max_length=4096)


class TargetResponse(BaseModel):
    id: UUID
    default_url: str
    profile: Profile
    active: bool
    cadence_mode: CadenceModeName
    cadence_value: Optional[int] = None
    next_run_at: Optional[datetime] = None
    last_run_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class RunResponse(BaseModel):
    id: UUID
    target_id: UUID
    trigger: Literal["manual", "scheduled"]
    run_url: str
    status: Literal["running", "success", "failed"]
    audit_id: Optional[UUID] = None
    summary: Optional[Summary] = None
    diff: Optional[MonitoringDiff] = None
    error_message: Optional[str] = None
    started_at: datetime
    finished_at: Optional[datetime] = None


class EntitlementResponse(BaseModel):
    monitoring_active: bool
    monitoring_until: Optional[datetime] = None
    monitoring_tier: Literal["none", "basic", "pro"]
    domains_limit: int
    monthly_runs: int
    has_prerequisite: bool


class StatusResponse(BaseModel):
    entitlement: EntitlementResponse
    has_access: bool
    latest_audit_url: Optional[str] = None
    target: Optional[TargetResponse] = None
    targets: List[TargetResponse] = Field(default_factory=list)
    latest_run: Optional[RunResponse] = None


class HistoryResponse(BaseModel):
    runs: List[RunResponse]
    page: int
    limit: int
    has_more: bool


class RunNowResponse(BaseModel):
    run: RunResponse
    notified: bool = False
