"""
Utility functions for the API.
"""

from app.utils.validators import (
    TargetValidator,
    TargetRejection,
    URLValidationError,
    normalize_url_for_compare,
    validate_target_url,
)

__all__ = [
    "TargetValidator",
    "TargetRejection",
    "URLValidationError",
    "normalize_url_for_compare",
    "validate_target_url",
]
