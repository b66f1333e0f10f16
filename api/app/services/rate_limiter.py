"""
Rate Limiter Service

Two layers of throttling:

- ScanRateLimiter counts an account's manual audits in a trailing window
  and rejects manual scans at or above the ceiling.
- The slowapi limiter protects unauthenticated endpoints (login, register,
  billing webhook) per client IP.
"""

import ipaddress
import logging
from datetime import datetime, timedelta
from typing import Optional, Set

from fastapi import Request
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from sqlalchemy import func
from sqlalchemy.orm import Session

from app.config import settings
from app.database import utc_now
from app.exceptions import RateLimitError
from app.middleware.correlation_id import get_correlation_id
from app.models import AuditRecord, AuditSource, User

logger = logging.getLogger(__name__)


class ScanRateLimiter:
    """
    Sliding-window limit on manual scans per account.

    Must run after authentication and before any browser work.
    """

    def __init__(
        self,
        db: Session,
        window_minutes: Optional[int] = None,
        max_scans: Optional[int] = None,
    ):
        self.db = db
        self.window_minutes = window_minutes or settings.scan_rate_limit_window_minutes
        self.max_scans = max_scans or settings.scan_rate_limit_max_scans

    def count_recent(self, user: User, now: Optional[datetime] = None) -> int:
        now = now or utc_now()
        window_start = now - timedelta(minutes=self.window_minutes)
        return (
            self.db.query(func.count(AuditRecord.id))
            .filter(
                AuditRecord.user_id == user.id,
                AuditRecord.source == AuditSource.MANUAL,
                AuditRecord.created_at >= window_start,
            )
            .scalar()
        ) or 0

    def check(self, user: User, now: Optional[datetime] = None) -> None:
        """
        Raises:
            RateLimitError: When the account reached the ceiling in the window
        """
        if user.is_admin:
            return

        count = self.count_recent(user, now)
        if count >= self.max_scans:
            logger.info(
                f"Scan rate limit hit for user {user.id}: "
                f"{count}/{self.max_scans} in {self.window_minutes}min"
            )
            raise RateLimitError(
                message=(
                    f"Too many scans. At most {self.max_scans} scans are allowed "
                    f"every {self.window_minutes} minutes."
                ),
                retry_after_seconds=self.window_minutes * 60,
                details={
                    "limit": self.max_scans,
                    "window_minutes": self.window_minutes,
                    "retry_after_minutes": self.window_minutes,
                },
            )


# Trusted proxy networks (configure via environment in production)
TRUSTED_PROXY_NETWORKS: Set[ipaddress.IPv4Network | ipaddress.IPv6Network] = set()


def _init_trusted_proxies():
    """Initialize trusted proxy networks from configuration."""
    trusted_proxies_str = getattr(settings, "trusted_proxies", "")

    for proxy in trusted_proxies_str.split(","):
        proxy = proxy.strip()
        if proxy:
            try:
                TRUSTED_PROXY_NETWORKS.add(ipaddress.ip_network(proxy, strict=False))
            except ValueError as e:
                logger.warning(f"Invalid trusted proxy CIDR: {proxy} - {e}")


def _is_trusted_proxy(ip_str: str) -> bool:
    if not TRUSTED_PROXY_NETWORKS:
        return False

    try:
        ip = ipaddress.ip_address(ip_str)
    except ValueError:
        return False
    return any(ip in network for network in TRUSTED_PROXY_NETWORKS)


def get_client_ip(request: Request) -> str:
    """
    Get client IP address.

    X-Forwarded-For is only honoured when the direct peer is a trusted proxy.
    """
    if not TRUSTED_PROXY_NETWORKS:
        _init_trusted_proxies()

    direct_ip = get_remote_address(request)

    if _is_trusted_proxy(direct_ip):
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            client_ip = forwarded.split(",")[0].strip()
            try:
                ipaddress.ip_address(client_ip)
                return client_ip
            except ValueError:
                logger.warning(f"Invalid IP in X-Forwarded-For: {client_ip}")

    return direct_ip


limiter = Limiter(key_func=get_client_ip, enabled=settings.app_env != "test")


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Render slowapi rejections in the shared error shape."""
    return JSONResponse(
        status_code=429,
        content={
            "error": "rate_limit_exceeded",
            "message": "Too many requests. Please try again later.",
            "details": {"limit": str(exc.detail)},
            "correlation_id": get_correlation_id(),
        },
        headers={"Retry-After": "60"},
    )


# Rate limit configurations
AUTH_RATE_LIMIT = "5/minute"
REGISTER_RATE_LIMIT = "3/minute"
WEBHOOK_RATE_LIMIT = "120/minute"
CRON_RATE_LIMIT = "10/minute"
