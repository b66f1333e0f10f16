"""
Service Providers

FastAPI dependencies that hand out the collaborators of the scan and
monitoring services. The defaults live on app.state (set up in the
lifespan handler); tests replace them with app.dependency_overrides.
"""

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from app.database import get_db
from app.services.browser import BrowserFactory, PlaywrightBrowserFactory
from app.services.email_service import EmailService, email_service
from app.services.scanner import AuditExecutor
from app.utils.validators import TargetValidator


def get_validator(request: Request) -> TargetValidator:
    validator = getattr(request.app.state, "validator", None)
    return validator or TargetValidator()


def get_browser_factory(
    request: Request,
    validator: TargetValidator = Depends(get_validator),
) -> BrowserFactory:
    factory = getattr(request.app.state, "browser_factory", None)
    return factory or PlaywrightBrowserFactory(validator)


def get_notifier(request: Request) -> EmailService:
    return getattr(request.app.state, "notifier", None) or email_service


def get_executor(
    db: Session = Depends(get_db),
    validator: TargetValidator = Depends(get_validator),
    browser_factory: BrowserFactory = Depends(get_browser_factory),
) -> AuditExecutor:
    return AuditExecutor(db, browser_factory=browser_factory, validator=validator)
