"""
Scans Router

Manual accessibility scans and the account's audit history.
"""

import asyncio
import logging
import math
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session, joinedload

from app.database import ensure_utc, get_db
from app.exceptions import NotFoundError, ValidationError
from app.models import AuditKind, AuditRecord, User
from app.routers.auth import get_current_user
from app.routers.providers import get_executor, get_validator
from app.schemas.audit import (
    AuditDetailResponse,
    AuditListItem,
    AuditListResponse,
    ScanReport,
    ScanRequest,
    ScanResponse,
)
from app.services.diff import normalize_summary
from app.services.entitlements import EntitlementService
from app.services.rate_limiter import ScanRateLimiter
from app.services.scanner import AuditExecutor, build_summary, issues_from_json
from app.utils.validators import TargetValidator, URLValidationError

logger = logging.getLogger(__name__)

router = APIRouter()


def audit_to_list_item(audit: AuditRecord) -> AuditListItem:
    return AuditListItem(
        id=audit.id,
        url=audit.url,
        kind=audit.kind.value,
        summary=normalize_summary(audit.summary),
        created_at=ensure_utc(audit.created_at),
    )


def audit_to_detail(audit: AuditRecord) -> AuditDetailResponse:
    """
    Free audits show the stored (redacted) top issues only. Paid audits
    show every stored issue with a summary recomputed from them.
    """
    top_issues = issues_from_json(audit.top_issues)
    if audit.kind == AuditKind.PAID and audit.detail is not None:
        issues = issues_from_json(audit.detail.issues)
        report = ScanReport(
            url=audit.url,
            summary=build_summary(issues),
            top_issues=top_issues,
            issues=issues,
        )
    else:
        report = ScanReport(
            url=audit.url,
            summary=normalize_summary(audit.summary),
            top_issues=top_issues,
        )

    return AuditDetailResponse(
        id=audit.id,
        url=audit.url,
        access_level=audit.kind.value,
        created_at=ensure_utc(audit.created_at),
        report=report,
    )


@router.post("", response_model=ScanResponse, status_code=status.HTTP_201_CREATED)
async def create_scan(
    scan_data: ScanRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    validator: TargetValidator = Depends(get_validator),
    executor: AuditExecutor = Depends(get_executor),
):
    """
    Run a single-page scan.

    The URL is checked first, then the account's scan window, then its
    entitlement. The scan itself runs synchronously and the stored result
    is returned.
    """
    try:
        url = await asyncio.to_thread(validator.validate, scan_data.url)
    except URLValidationError as e:
        raise ValidationError(e.message, {"reason": e.reason.value})

    ScanRateLimiter(db).check(current_user)
    kind = EntitlementService(db).ensure_can_run_manual_scan(current_user)

    result = await executor.execute(url, current_user, kind, debit=True)

    return ScanResponse(
        access_level=kind.value,
        audit_id=result.audit_id,
        report=ScanReport(
            url=result.url,
            summary=result.summary,
            top_issues=result.top_issues,
            issues=result.issues if kind == AuditKind.PAID else None,
        ),
    )


@router.get("", response_model=AuditListResponse)
async def list_scans(
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """List the account's audits, newest first."""
    query = db.query(AuditRecord).filter(AuditRecord.user_id == current_user.id)
    total = query.count()
    audits = (
        query.order_by(AuditRecord.created_at.desc())
        .offset((page - 1) * per_page)
        .limit(per_page)
        .all()
    )

    return AuditListResponse(
        audits=[audit_to_list_item(audit) for audit in audits],
        total=total,
        page=page,
        per_page=per_page,
        pages=math.ceil(total / per_page) if total else 0,
    )


@router.get("/latest", response_model=AuditDetailResponse)
async def get_latest_scan(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    audit = (
        db.query(AuditRecord)
        .options(joinedload(AuditRecord.detail))
        .filter(AuditRecord.user_id == current_user.id)
        .order_by(AuditRecord.created_at.desc())
        .first()
    )
    if audit is None:
        raise NotFoundError("No audits yet")
    return audit_to_detail(audit)


@router.get("/{audit_id}", response_model=AuditDetailResponse)
async def get_scan(
    audit_id: UUID,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    audit = (
        db.query(AuditRecord)
        .options(joinedload(AuditRecord.detail))
        .filter(AuditRecord.id == audit_id, AuditRecord.user_id == current_user.id)
        .first()
    )
    if audit is None:
        raise NotFoundError("Audit not found")
    return audit_to_detail(audit)
