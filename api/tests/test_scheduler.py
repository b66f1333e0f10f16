"""
Tests for the monitoring scheduler.
"""

from datetime import timedelta
from unittest.mock import patch

import pytest
from playwright.async_api import Error as PlaywrightError
from sqlalchemy.orm import Session

from app.database import ensure_utc, utc_now
from app.exceptions import (
    ConflictError,
    EntitlementError,
    ExecutionError,
    NotFoundError,
    ValidationError,
)
from app.models import (
    AuditRecord,
    AuditSource,
    MonitoringRun,
    MonitoringTarget,
    RunStatus,
    RunTrigger,
    User,
)
from app.services.rate_limiter import ScanRateLimiter
from app.services.scanner import AuditExecutor
from app.services.scheduler import MonitoringScheduler
from conftest import make_target, make_user


@pytest.fixture
def scheduler(db: Session, executor: AuditExecutor, notifier) -> MonitoringScheduler:
    return MonitoringScheduler(db, executor, notifier=notifier, batch_size=10)


def store_success(db: Session, target: MonitoringTarget, summary: dict, issue_ids: list) -> MonitoringRun:
    started = utc_now() - timedelta(days=7)
    run = MonitoringRun(
        target_id=target.id,
        trigger=RunTrigger.SCHEDULED,
        run_url=target.default_url,
        status=RunStatus.SUCCESS,
        summary_json={"summary": summary, "issue_ids": issue_ids},
        started_at=started,
        finished_at=started,
    )
    db.add(run)
    db.commit()
    return run


class TestSelection:
    """Tests for due selection and claiming."""

    def test_only_due_live_targets_are_selected(
        self, db: Session, scheduler: MonitoringScheduler, monitoring_user: User
    ):
        due = make_target(db, monitoring_user, "https://example.com/")
        make_target(db, monitoring_user, "https://example.org/", next_run_at=utc_now() + timedelta(days=1))
        make_target(db, monitoring_user, "https://www.example.com/", active=False)
        make_target(db, monitoring_user, "https://shop.example.net/", deleted_at=utc_now())

        selected = scheduler.select_due_targets(utc_now())
        assert [t.id for t in selected] == [due.id]

    def test_owner_without_monitoring_is_skipped(self, db: Session, scheduler: MonitoringScheduler):
        lapsed = make_user(
            db,
            "lapsed@example.com",
            paid_scan_completed=True,
            monitoring_active=True,
            monitoring_until=utc_now() - timedelta(hours=1),
        )
        make_target(db, lapsed)
        assert scheduler.select_due_targets(utc_now()) == []

    def test_admin_targets_always_selected(
        self, db: Session, scheduler: MonitoringScheduler, admin_user: User
    ):
        target = make_target(db, admin_user)
        assert [t.id for t in scheduler.select_due_targets(utc_now())] == [target.id]

    def test_batch_size_limits_selection(self, db: Session, executor, monitoring_user: User):
        make_target(db, monitoring_user, "https://example.com/", next_run_at=utc_now() - timedelta(hours=2))
        make_target(db, monitoring_user, "https://example.org/")
        scheduler = MonitoringScheduler(db, executor, batch_size=1)
        selected = scheduler.select_due_targets(utc_now())
        assert [t.default_url for t in selected] == ["https://example.com/"]

    def test_second_claim_loses(
        self, db: Session, scheduler: MonitoringScheduler, monitoring_user: User
    ):
        target = make_target(db, monitoring_user)
        now = utc_now()

        assert scheduler.claim(target, monitoring_user.monitoring_tier, now) is True
        assert ensure_utc(target.next_run_at) > now
        assert scheduler.claim(target, monitoring_user.monitoring_tier, now) is False

    def test_claim_fails_for_deactivated_target(
        self, db: Session, scheduler: MonitoringScheduler, monitoring_user: User
    ):
        target = make_target(db, monitoring_user)
        db.query(MonitoringTarget).filter(MonitoringTarget.id == target.id).update(
            {MonitoringTarget.active: False}, synchronize_session=False
        )
        db.commit()
        assert scheduler.claim(target, monitoring_user.monitoring_tier, utc_now()) is False


class TestTick:
    """Tests for processing a batch."""

    @pytest.mark.asyncio
    async def test_successful_run(
        self, db: Session, scheduler: MonitoringScheduler, monitoring_user: User, notifier
    ):
        target = make_target(db, monitoring_user)
        now = utc_now()

        summary = await scheduler.tick(now)

        assert summary.due == 1
        assert summary.processed == 1
        assert summary.failed == 0

        run = db.query(MonitoringRun).filter(MonitoringRun.target_id == target.id).one()
        assert run.status == RunStatus.SUCCESS
        assert run.trigger == RunTrigger.SCHEDULED
        assert run.audit_id is not None
        assert run.summary_json["summary"]["total"] == 4
        assert sorted(run.summary_json["issue_ids"]) == [
            "color-contrast", "custom-widget-rule", "image-alt", "region",
        ]
        # First run compares against nothing
        assert run.diff_json["total_delta"] == 4

        db.refresh(target)
        assert ensure_utc(target.next_run_at) > now
        assert target.last_run_at is not None

        # Monitoring scans never consume credits
        db.refresh(monitoring_user)
        assert monitoring_user.scan_credits == 3

        assert len(notifier.sent) == 1
        assert notifier.sent[0]["to"] == "monitor@example.com"

    @pytest.mark.asyncio
    async def test_failed_run_still_advances(
        self, db: Session, scheduler: MonitoringScheduler, browser, monitoring_user: User, notifier
    ):
        target = make_target(db, monitoring_user)
        browser.goto_errors = [PlaywrightError("timeout"), PlaywrightError("timeout")]
        now = utc_now()

        summary = await scheduler.tick(now)

        assert summary.processed == 0
        assert summary.failed == 1

        run = db.query(MonitoringRun).filter(MonitoringRun.target_id == target.id).one()
        assert run.status == RunStatus.FAILED
        assert run.error_message.startswith("The page could not be loaded")
        assert run.finished_at is not None

        db.refresh(target)
        assert ensure_utc(target.next_run_at) > now
        assert db.query(AuditRecord).count() == 0
        assert notifier.sent == []

        # The advanced target is not picked up again before its next slot
        again = await scheduler.tick(now + timedelta(minutes=5))
        assert again.due == 0
        assert db.query(MonitoringRun).filter(MonitoringRun.target_id == target.id).count() == 1

    @pytest.mark.asyncio
    async def test_monitoring_runs_do_not_use_the_scan_rate_limit(
        self, db: Session, scheduler: MonitoringScheduler, monitoring_user: User
    ):
        make_target(db, monitoring_user, "https://example.com/")
        make_target(db, monitoring_user, "https://example.org/")

        summary = await scheduler.tick(utc_now())

        assert summary.processed == 2
        sources = {audit.source for audit in db.query(AuditRecord).all()}
        assert sources == {AuditSource.MONITORING}
        ScanRateLimiter(db, window_minutes=60, max_scans=2).check(monitoring_user)

    @pytest.mark.asyncio
    async def test_improvement_is_not_notified(
        self, db: Session, scheduler: MonitoringScheduler, monitoring_user: User, notifier
    ):
        target = make_target(db, monitoring_user)
        store_success(
            db,
            target,
            {"total": 10, "by_impact": {"critical": 2, "serious": 3, "moderate": 3, "minor": 2}},
            ["image-alt", "color-contrast", "region", "label"],
        )

        await scheduler.tick(utc_now())

        latest = (
            db.query(MonitoringRun)
            .filter(MonitoringRun.target_id == target.id)
            .order_by(MonitoringRun.started_at.desc())
            .first()
        )
        assert latest.diff_json["total_delta"] == -6
        assert latest.diff_json["by_impact_delta"]["critical"] == -1
        assert latest.diff_json["new_issue_ids"] == ["custom-widget-rule"]
        assert latest.diff_json["resolved_issue_ids"] == ["label"]
        assert notifier.sent == []

    @pytest.mark.asyncio
    async def test_concurrent_claim_is_skipped(
        self, db: Session, scheduler: MonitoringScheduler, monitoring_user: User
    ):
        target = make_target(db, monitoring_user)
        now = utc_now()
        # Both ticks selected the target; the other one claimed it first
        assert scheduler.claim(target, monitoring_user.monitoring_tier, now) is True

        with patch.object(scheduler, "select_due_targets", return_value=[target]):
            summary = await scheduler.tick(now)

        assert summary.due == 1
        assert summary.skipped == 1
        assert summary.processed == 0
        assert db.query(MonitoringRun).count() == 0


class TestRunNow:
    """Tests for manual monitoring runs."""

    @pytest.mark.asyncio
    async def test_run_now_keeps_schedule(
        self, db: Session, scheduler: MonitoringScheduler, monitoring_user: User
    ):
        next_run_at = utc_now() + timedelta(days=3)
        target = make_target(db, monitoring_user, next_run_at=next_run_at)

        response = await scheduler.run_now(monitoring_user)

        assert response.run.trigger == "manual"
        assert response.run.status == "success"
        assert response.run.summary.total == 4
        db.refresh(target)
        assert ensure_utc(target.next_run_at) == next_run_at

    @pytest.mark.asyncio
    async def test_url_override_switches_target_after_success(
        self, db: Session, scheduler: MonitoringScheduler, browser, monitoring_user: User
    ):
        target = make_target(db, monitoring_user)

        response = await scheduler.run_now(monitoring_user, target.id, "EXAMPLE.org")

        assert response.run.run_url == "http://example.org/"
        assert browser.visited == ["http://example.org/"]
        db.refresh(target)
        assert target.default_url == "http://example.org/"
        assert target.normalized_url == "http://example.org"

    @pytest.mark.asyncio
    async def test_failed_override_keeps_url(
        self, db: Session, scheduler: MonitoringScheduler, browser, monitoring_user: User
    ):
        target = make_target(db, monitoring_user)
        browser.evaluate_error = PlaywrightError("crash")

        with pytest.raises(ExecutionError):
            await scheduler.run_now(monitoring_user, target.id, "https://example.org/")

        db.refresh(target)
        assert target.default_url == "https://example.com/"

    @pytest.mark.asyncio
    async def test_override_conflict(
        self, db: Session, scheduler: MonitoringScheduler, monitoring_user: User
    ):
        target = make_target(db, monitoring_user)
        make_target(db, monitoring_user, "https://example.org/", active=False)

        with pytest.raises(ConflictError):
            await scheduler.run_now(monitoring_user, target.id, "https://example.org/")

    @pytest.mark.asyncio
    async def test_override_may_reuse_deleted_target_url(
        self, db: Session, scheduler: MonitoringScheduler, monitoring_user: User
    ):
        target = make_target(db, monitoring_user)
        deleted = make_target(
            db, monitoring_user, "https://example.org/", active=False, deleted_at=utc_now()
        )

        await scheduler.run_now(monitoring_user, target.id, "https://example.org/")

        db.refresh(target)
        db.refresh(deleted)
        assert target.normalized_url == "https://example.org"
        assert deleted.deleted_at is not None

    @pytest.mark.asyncio
    async def test_override_must_be_public(
        self, db: Session, scheduler: MonitoringScheduler, monitoring_user: User
    ):
        target = make_target(db, monitoring_user)
        with pytest.raises(ValidationError):
            await scheduler.run_now(monitoring_user, target.id, "http://10.0.0.1/")

    @pytest.mark.asyncio
    async def test_no_target(self, scheduler: MonitoringScheduler, monitoring_user: User):
        with pytest.raises(NotFoundError):
            await scheduler.run_now(monitoring_user)

    @pytest.mark.asyncio
    async def test_requires_monitoring(self, db: Session, scheduler: MonitoringScheduler, paid_user: User):
        with pytest.raises(EntitlementError):
            await scheduler.run_now(paid_user)
