"""
Monitoring Router

Target lifecycle, status and history, manual runs and the scheduler tick.
"""

import hmac
import logging
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, Query, Request, status
from sqlalchemy.orm import Session

from app.config import settings
from app.database import get_db
from app.exceptions import InternalError, UnauthorizedError
from app.models import User
from app.routers.auth import get_current_user
from app.routers.providers import get_executor, get_notifier, get_validator
from app.schemas.monitoring import (
    ActivateRequest,
    ConfigUpdateRequest,
    DeleteTargetRequest,
    HistoryResponse,
    RunNowRequest,
    RunNowResponse,
    StatusResponse,
    TargetResponse,
    TickSummary,
)
from app.services.email_service import EmailService
from app.services.monitoring import MonitoringService, target_to_response
from app.services.rate_limiter import CRON_RATE_LIMIT, limiter
from app.services.scanner import AuditExecutor
from app.services.scheduler import MonitoringScheduler
from app.utils.validators import TargetValidator

logger = logging.getLogger(__name__)

router = APIRouter()


def get_monitoring_service(
    db: Session = Depends(get_db),
    validator: TargetValidator = Depends(get_validator),
) -> MonitoringService:
    return MonitoringService(db, validator=validator)


def get_scheduler(
    db: Session = Depends(get_db),
    executor: AuditExecutor = Depends(get_executor),
    notifier: EmailService = Depends(get_notifier),
) -> MonitoringScheduler:
    return MonitoringScheduler(db, executor, notifier)


@router.post("/activate", response_model=TargetResponse)
async def activate_monitoring(
    body: ActivateRequest,
    current_user: User = Depends(get_current_user),
    service: MonitoringService = Depends(get_monitoring_service),
):
    """Start monitoring a URL (defaults to the latest audited URL)."""
    target = await service.activate(current_user, body)
    return target_to_response(target)


@router.put("/config", response_model=TargetResponse)
async def update_monitoring_config(
    body: ConfigUpdateRequest,
    current_user: User = Depends(get_current_user),
    service: MonitoringService = Depends(get_monitoring_service),
):
    target = await service.update_config(current_user, body)
    return target_to_response(target)


@router.delete("/targets/{target_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_monitoring_target(
    target_id: UUID,
    current_user: User = Depends(get_current_user),
    service: MonitoringService = Depends(get_monitoring_service),
):
    service.delete_target(current_user, target_id)


@router.post("/delete")
async def delete_monitoring_target_post(
    body: DeleteTargetRequest,
    current_user: User = Depends(get_current_user),
    service: MonitoringService = Depends(get_monitoring_service),
):
    """Same as DELETE /targets/{id} for clients that cannot send DELETE."""
    service.delete_target(current_user, body.target_id)
    return {"deleted": True, "target_id": str(body.target_id)}


@router.get("/status", response_model=StatusResponse)
async def get_monitoring_status(
    current_user: User = Depends(get_current_user),
    service: MonitoringService = Depends(get_monitoring_service),
):
    return service.status(current_user)


@router.get("/targets", response_model=List[TargetResponse])
async def list_monitoring_targets(
    current_user: User = Depends(get_current_user),
    service: MonitoringService = Depends(get_monitoring_service),
):
    return [target_to_response(t) for t in service.list_targets(current_user)]


@router.get("/history", response_model=HistoryResponse)
async def get_monitoring_history(
    target_id: Optional[UUID] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=50),
    current_user: User = Depends(get_current_user),
    service: MonitoringService = Depends(get_monitoring_service),
):
    return service.history(current_user, target_id=target_id, page=page, limit=limit)


@router.post("/run-now", response_model=RunNowResponse)
async def run_monitoring_now(
    body: RunNowRequest,
    current_user: User = Depends(get_current_user),
    scheduler: MonitoringScheduler = Depends(get_scheduler),
):
    """Run a target immediately. Does not change its schedule."""
    return await scheduler.run_now(current_user, target_id=body.target_id, url=body.url)


@router.post("/cron", response_model=TickSummary)
@limiter.limit(CRON_RATE_LIMIT)
async def monitoring_cron(
    request: Request,
    x_cron_secret: Optional[str] = Header(default=None),
    scheduler: MonitoringScheduler = Depends(get_scheduler),
):
    """Scheduler tick for an external timer, guarded by a shared secret."""
    if not settings.cron_secret:
        logger.error("Monitoring cron called but CRON_SECRET is not configured")
        raise InternalError("Cron not configured")

    if not x_cron_secret or not hmac.compare_digest(x_cron_secret, settings.cron_secret):
        logger.warning("Monitoring cron called with an invalid secret")
        raise UnauthorizedError("Invalid cron secret")

    return await scheduler.tick()
