"""
Middleware package for AccessMonitor API.
"""

from .correlation_id import CorrelationIdMiddleware, get_correlation_id

__all__ = [
    "CorrelationIdMiddleware",
    "get_correlation_id",
]
