"""
Health Check Service

Liveness for load balancer health checks and a deep check covering the database
and the monitoring backlog.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict

from sqlalchemy import func, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from app.config import settings
from app.middleware.correlation_id import get_correlation_id
from app.models import MonitoringTarget

logger = logging.getLogger(__name__)

# Targets overdue for longer than this point at a stalled scheduler
SCHEDULER_STALL_AFTER = timedelta(hours=12)


def _check_database(factory: sessionmaker) -> Dict[str, Any]:
    start = datetime.now(timezone.utc)
    db = factory()
    try:
        db.execute(text("SELECT 1")).fetchone()
        latency_ms = (datetime.now(timezone.utc) - start).total_seconds() * 1000
        return {"status": "healthy", "latency_ms": round(latency_ms, 2)}
    except SQLAlchemyError as e:
        logger.error(f"Database health check failed: {e}")
        return {"status": "unhealthy", "error": "Connection failed"}
    finally:
        db.close()


def _check_monitoring_backlog(factory: sessionmaker) -> Dict[str, Any]:
    threshold = datetime.now(timezone.utc) - SCHEDULER_STALL_AFTER
    db = factory()
    try:
        overdue = (
            db.query(func.count(MonitoringTarget.id))
            .filter(
                MonitoringTarget.active.is_(True),
                MonitoringTarget.deleted_at.is_(None),
                MonitoringTarget.next_run_at < threshold,
            )
            .scalar()
        ) or 0
    except SQLAlchemyError as e:
        logger.error(f"Monitoring backlog check failed: {e}")
        return {"status": "unhealthy", "error": "Query failed"}
    finally:
        db.close()

    return {
        "status": "degraded" if overdue else "healthy",
        "overdue_targets": overdue,
    }


async def get_system_health(factory: sessionmaker) -> Dict[str, Any]:
    """Status of the database and the monitoring scheduler backlog."""
    db_check, backlog_check = await asyncio.gather(
        asyncio.to_thread(_check_database, factory),
        asyncio.to_thread(_check_monitoring_backlog, factory),
    )

    statuses = [db_check["status"], backlog_check["status"]]
    if all(s == "healthy" for s in statuses):
        overall_status = "healthy"
    elif any(s == "unhealthy" for s in statuses):
        overall_status = "unhealthy"
    else:
        overall_status = "degraded"

    return {
        "status": overall_status,
        "environment": settings.app_env,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "correlation_id": get_correlation_id(),
        "checks": {
            "database": db_check,
            "monitoring": backlog_check,
        },
    }


async def get_simple_health() -> Dict[str, Any]:
    """
    Get simple health status (for load balancer health checks).

    Only checks if the application is running, not dependencies.
    """
    return {
        "status": "healthy",
        "environment": settings.app_env,
        "correlation_id": get_correlation_id(),
    }
