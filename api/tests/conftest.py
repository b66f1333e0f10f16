"""
Test configuration and fixtures.
"""

import os
import pytest
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, Dict, Generator, List, Optional

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

# Set test environment before importing app
os.environ["APP_ENV"] = "test"
os.environ["JWT_SECRET"] = "test-secret-key-that-is-at-least-32-characters-long"
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["LEMON_WEBHOOK_SECRET"] = "test-webhook-secret"
os.environ["CRON_SECRET"] = "test-cron-secret"
os.environ["EMAIL_ENABLED"] = "false"
os.environ["NAVIGATION_RETRY_DELAY_SECONDS"] = "0"

from app.main import app
from app.database import Base, get_db, utc_now
from app.models import MonitoringTarget, PlanType, Tier, User
from app.routers.auth import get_password_hash, create_access_token
from app.routers.providers import get_browser_factory, get_notifier, get_validator
from app.services.email_service import EmailService
from app.services.scanner import AuditExecutor, ExecutionPolicy
from app.utils.validators import TargetValidator


# Test database setup
SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


# ----------------------------------------------------------------------
# Fakes
# ----------------------------------------------------------------------

PUBLIC_HOSTS = {
    "example.com": ["93.184.216.34"],
    "www.example.com": ["93.184.216.34"],
    "example.org": ["93.184.216.35"],
    "shop.example.net": ["203.0.114.10", "2606:2800:220:1::248"],
    "rebind.example.com": ["93.184.216.34", "10.0.0.5"],
    "mapped.example.com": ["::ffff:127.0.0.1"],
}


def fake_resolver(hostname: str) -> List[str]:
    """Resolver over a fixed table; unknown names fail like NXDOMAIN."""
    if hostname in PUBLIC_HOSTS:
        return PUBLIC_HOSTS[hostname]
    raise OSError(f"Name or service not known: {hostname}")


def make_node(index: int) -> Dict[str, Any]:
    return {
        "target": [f"#el-{index}"],
        "html": f"<div id=\"el-{index}\"></div>",
        "failureSummary": "Fix any of the following",
    }


def make_violation(rule_id: str, impact: Optional[str], nodes: int, **extra) -> Dict[str, Any]:
    violation = {
        "id": rule_id,
        "impact": impact,
        "help": f"Help for {rule_id}",
        "description": f"Description of {rule_id}",
        "helpUrl": f"https://dequeuniversity.com/rules/axe/4.10/{rule_id}",
        "nodes": [make_node(i) for i in range(nodes)],
    }
    violation.update(extra)
    return violation


SAMPLE_VIOLATIONS = [
    make_violation("color-contrast", "serious", 12),
    make_violation("image-alt", "critical", 3),
    make_violation("region", "moderate", 7),
    make_violation("custom-widget-rule", "bogus", 2),
]


class FakePageSession:
    """Stands in for a Playwright page."""

    def __init__(self, factory: "FakeBrowserFactory"):
        self.factory = factory

    async def goto(self, url: str, timeout_seconds: float) -> None:
        self.factory.visited.append(url)
        if self.factory.goto_errors:
            raise self.factory.goto_errors.pop(0)

    async def inject_rule_engine(self) -> None:
        self.factory.injected += 1

    async def run_rules(self, tags: List[str]) -> Dict[str, Any]:
        self.factory.tags = list(tags)
        if self.factory.evaluate_error is not None:
            raise self.factory.evaluate_error
        if self.factory.evaluate_delay:
            import asyncio
            await asyncio.sleep(self.factory.evaluate_delay)
        return {"violations": list(self.factory.violations)}


class FakeBrowserFactory:
    """Browser factory with scripted page behaviour."""

    def __init__(self, violations: Optional[List[Dict[str, Any]]] = None):
        self.violations = list(SAMPLE_VIOLATIONS if violations is None else violations)
        self.goto_errors: List[Exception] = []
        self.evaluate_error: Optional[Exception] = None
        self.evaluate_delay: float = 0
        self.visited: List[str] = []
        self.tags: List[str] = []
        self.injected = 0
        self.opened = 0
        self.closed = 0

    @asynccontextmanager
    async def __call__(self):
        self.opened += 1
        try:
            yield FakePageSession(self)
        finally:
            self.closed += 1


class RecordingEmailService(EmailService):
    """Real notification rules, recorded instead of sent."""

    def __init__(self):
        super().__init__()
        self.sent: List[Dict[str, Any]] = []

    async def send_email(self, to, subject, html_content, text_content=None) -> bool:
        self.sent.append(
            {"to": to, "subject": subject, "html": html_content, "text": text_content}
        )
        return True


# ----------------------------------------------------------------------
# Database and app
# ----------------------------------------------------------------------

@pytest.fixture(scope="function")
def db() -> Generator[Session, None, None]:
    """Create a fresh database for each test."""
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def validator() -> TargetValidator:
    return TargetValidator(resolver=fake_resolver)


@pytest.fixture
def browser() -> FakeBrowserFactory:
    return FakeBrowserFactory()


@pytest.fixture
def notifier() -> RecordingEmailService:
    return RecordingEmailService()


@pytest.fixture
def executor(db: Session, browser: FakeBrowserFactory, validator: TargetValidator) -> AuditExecutor:
    policy = ExecutionPolicy(navigation_retry_delay=0, navigation_timeout=1, evaluation_timeout=1)
    return AuditExecutor(db, browser_factory=browser, validator=validator, policy=policy)


@pytest.fixture(scope="function")
def client(
    db: Session,
    validator: TargetValidator,
    browser: FakeBrowserFactory,
    notifier: RecordingEmailService,
) -> Generator[TestClient, None, None]:
    """Create test client with database and collaborator overrides."""
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_validator] = lambda: validator
    app.dependency_overrides[get_browser_factory] = lambda: browser
    app.dependency_overrides[get_notifier] = lambda: notifier
    with TestClient(app) as test_client:
        app.state.session_factory = TestingSessionLocal
        yield test_client
    app.dependency_overrides.clear()


# ----------------------------------------------------------------------
# Accounts
# ----------------------------------------------------------------------

def make_user(db: Session, email: str, **fields) -> User:
    user = User(
        email=email,
        password_hash=get_password_hash("Testpassword123"),
        full_name="Test User",
        is_active=True,
        **fields,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def headers_for(user: User) -> dict:
    token = create_access_token(data={"sub": user.email, "user_id": str(user.id)})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def test_user(db: Session) -> User:
    """A fresh free account."""
    return make_user(db, "test@example.com")


@pytest.fixture
def test_user_token(test_user: User) -> str:
    """Create access token for test user."""
    return create_access_token(data={"sub": test_user.email})


@pytest.fixture
def auth_headers(test_user_token: str) -> dict:
    """Create authorization headers."""
    return {"Authorization": f"Bearer {test_user_token}"}


@pytest.fixture
def paid_user(db: Session) -> User:
    """Paid account with a single scan credit left."""
    return make_user(
        db,
        "paid@example.com",
        plan=PlanType.PAID,
        scan_credits=1,
        scan_tier=Tier.BASIC,
    )


@pytest.fixture
def monitoring_user(db: Session) -> User:
    """Account with a completed paid scan and an active basic monitoring plan."""
    return make_user(
        db,
        "monitor@example.com",
        plan=PlanType.PAID,
        scan_credits=3,
        scan_tier=Tier.BASIC,
        paid_scan_completed=True,
        monitoring_active=True,
        monitoring_tier=Tier.BASIC,
        monitoring_domains_limit=2,
        monitoring_monthly_runs=4,
    )


@pytest.fixture
def admin_user(db: Session) -> User:
    return make_user(db, "admin@example.com", is_admin=True)


def make_target(db: Session, user: User, url: str = "https://example.com/", **fields) -> MonitoringTarget:
    values = {
        "active": True,
        "next_run_at": utc_now() - timedelta(minutes=5),
    }
    values.update(fields)
    target = MonitoringTarget(
        user_id=user.id,
        default_url=url,
        normalized_url=url.lower().rstrip("/"),
        **values,
    )
    db.add(target)
    db.commit()
    db.refresh(target)
    return target
