"""
Services Package

Business logic: URL validation lives in app.utils, everything else
(entitlements, scanning, monitoring, billing, notifications) lives here.
"""

from .email_service import EmailService

__all__ = [
    "EmailService",
]
