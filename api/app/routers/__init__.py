"""
API Routers

FastAPI router modules for API endpoints.
"""

from app.routers.auth import router as auth_router
from app.routers.scans import router as scans_router
from app.routers.monitoring import router as monitoring_router
from app.routers.billing import router as billing_router

__all__ = ["auth_router", "scans_router", "monitoring_router", "billing_router"]
