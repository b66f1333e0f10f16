"""
Tests for the audit executor and violation normalization.
"""

import pytest
from unittest.mock import patch

from playwright.async_api import Error as PlaywrightError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.exceptions import ExecutionError, PersistenceError, ValidationError
from app.models import AuditDetail, AuditKind, AuditRecord, User
from app.services import metrics
from app.services.scanner import (
    AuditExecutor,
    ExecutionPolicy,
    build_summary,
    normalize_violation,
    normalize_violations,
    pick_top_issues,
    redact_issue,
)
from conftest import SAMPLE_VIOLATIONS, make_violation


class TestNormalization:
    """Tests for turning axe-core output into issues."""

    def test_known_rule_uses_guidance(self):
        issue = normalize_violation(make_violation("image-alt", "critical", 2))
        assert issue.impact == "critical"
        assert issue.rule_reference != "Unspecified"
        assert issue.remediation
        assert issue.affected_count == 2
        assert issue.help_url.endswith("image-alt")

    def test_unknown_rule_uses_axe_text(self):
        issue = normalize_violation(make_violation("custom-widget-rule", "serious", 1))
        assert issue.title == "Help for custom-widget-rule"
        assert issue.description == "Description of custom-widget-rule"
        assert issue.rule_reference == "Unspecified"

    @pytest.mark.parametrize("impact", [None, "", "bogus", "CRITICAL "])
    def test_impact_mapping(self, impact):
        issue = normalize_violation(make_violation("region", impact, 1))
        expected = "critical" if impact == "CRITICAL " else "minor"
        assert issue.impact == expected

    def test_element_sample_is_capped(self):
        issue = normalize_violation(make_violation("color-contrast", "serious", 12), max_elements=5)
        assert issue.affected_count == 12
        assert len(issue.elements) == 5
        assert issue.elements[0].target == "#el-0"

    def test_normalize_violations_accepts_result_object(self):
        issues = normalize_violations({"violations": SAMPLE_VIOLATIONS})
        assert [i.id for i in issues] == [v["id"] for v in SAMPLE_VIOLATIONS]
        assert normalize_violations(None) == []

    def test_summary_counts_by_impact(self):
        result = build_summary(normalize_violations(SAMPLE_VIOLATIONS))
        assert result.total == 4
        assert result.by_impact.critical == 1
        assert result.by_impact.serious == 1
        assert result.by_impact.moderate == 1
        assert result.by_impact.minor == 1

    def test_top_issues_by_impact_then_affected_count(self):
        issues = normalize_violations(
            SAMPLE_VIOLATIONS + [make_violation("label", "serious", 20)]
        )
        top = pick_top_issues(issues, 3)
        assert [i.id for i in top] == ["image-alt", "label", "color-contrast"]

    def test_redact_issue(self):
        issue = normalize_violation(make_violation("image-alt", "critical", 2))
        redacted = redact_issue(issue)
        assert redacted.remediation == ""
        assert redacted.elements == []
        assert redacted.title == issue.title


class TestAuditExecutor:
    """Tests for executing and storing scans."""

    @pytest.mark.asyncio
    async def test_free_scan_is_stored_redacted(
        self, db: Session, executor: AuditExecutor, browser, test_user: User
    ):
        result = await executor.execute("example.com", test_user, AuditKind.FREE)

        assert result.url == "http://example.com/"
        assert result.summary.total == 4
        assert [i.id for i in result.top_issues] == ["image-alt", "color-contrast", "region"]
        assert all(i.remediation == "" and i.elements == [] for i in result.top_issues)

        record = db.query(AuditRecord).filter(AuditRecord.id == result.audit_id).one()
        assert record.kind == AuditKind.FREE
        assert len(record.top_issues) == 3
        detail = db.query(AuditDetail).filter(AuditDetail.audit_id == result.audit_id).one()
        assert len(detail.issues) == 4

        assert browser.opened == browser.closed == 1
        assert browser.injected == 1
        assert browser.tags == ["wcag2a", "wcag2aa", "wcag21a", "wcag21aa", "best-practice"]

    @pytest.mark.asyncio
    async def test_paid_scan_keeps_details(self, executor: AuditExecutor, paid_user: User):
        result = await executor.execute("https://example.com/", paid_user, AuditKind.PAID)
        assert result.top_issues[0].remediation
        assert result.top_issues[0].elements

    @pytest.mark.asyncio
    async def test_debit_consumes_one_credit(self, db: Session, executor: AuditExecutor, paid_user: User):
        await executor.execute("https://example.com/", paid_user, AuditKind.PAID, debit=True)
        db.refresh(paid_user)
        assert paid_user.scan_credits == 0
        assert paid_user.paid_scan_completed is True

    @pytest.mark.asyncio
    async def test_no_debit_by_default(self, db: Session, executor: AuditExecutor, paid_user: User):
        await executor.execute("https://example.com/", paid_user, AuditKind.PAID)
        db.refresh(paid_user)
        assert paid_user.scan_credits == 1

    @pytest.mark.asyncio
    async def test_invalid_url_never_opens_browser(self, executor: AuditExecutor, browser, test_user: User):
        with pytest.raises(ValidationError) as exc_info:
            await executor.execute("http://169.254.169.254/", test_user, AuditKind.FREE)
        assert exc_info.value.details["reason"] == "blocked_address"
        assert browser.opened == 0

    @pytest.mark.asyncio
    async def test_navigation_retried_once(self, executor: AuditExecutor, browser, test_user: User):
        browser.goto_errors = [PlaywrightError("net::ERR_CONNECTION_RESET")]
        result = await executor.execute("https://example.com/", test_user, AuditKind.FREE)
        assert result.summary.total == 4
        assert browser.visited == ["https://example.com/", "https://example.com/"]

    @pytest.mark.asyncio
    async def test_navigation_failure_after_retries(
        self, db: Session, executor: AuditExecutor, browser, test_user: User
    ):
        browser.goto_errors = [PlaywrightError("timeout"), PlaywrightError("timeout")]
        with pytest.raises(ExecutionError) as exc_info:
            await executor.execute("https://example.com/", test_user, AuditKind.FREE)

        assert exc_info.value.kind == "navigation_timeout"
        assert len(browser.visited) == 2
        assert browser.closed == 1
        assert db.query(AuditRecord).count() == 0

    @pytest.mark.asyncio
    async def test_evaluation_timeout_not_retried(
        self, db: Session, browser, validator, test_user: User
    ):
        policy = ExecutionPolicy(navigation_retry_delay=0, evaluation_timeout=0.05)
        executor = AuditExecutor(db, browser_factory=browser, validator=validator, policy=policy)
        browser.evaluate_delay = 1

        with pytest.raises(ExecutionError) as exc_info:
            await executor.execute("https://example.com/", test_user, AuditKind.FREE)

        assert exc_info.value.kind == "evaluation_timeout"
        assert browser.visited == ["https://example.com/"]
        assert browser.closed == 1

    @pytest.mark.asyncio
    async def test_evaluation_failure(self, executor: AuditExecutor, browser, test_user: User):
        browser.evaluate_error = PlaywrightError("axe is not defined")
        with pytest.raises(ExecutionError) as exc_info:
            await executor.execute("https://example.com/", test_user, AuditKind.FREE)
        assert exc_info.value.kind == "evaluation_failed"

    @pytest.mark.asyncio
    async def test_detail_failure_removes_record(
        self, db: Session, executor: AuditExecutor, test_user: User
    ):
        with patch.object(executor, "_store_detail", side_effect=SQLAlchemyError("disk full")):
            with pytest.raises(PersistenceError):
                await executor.execute("https://example.com/", test_user, AuditKind.FREE, debit=True)

        assert db.query(AuditRecord).count() == 0
        db.refresh(test_user)
        assert test_user.free_scan_used is False

    @pytest.mark.asyncio
    async def test_in_progress_gauge_restored_on_unexpected_error(
        self, executor: AuditExecutor, browser, test_user: User
    ):
        before = metrics.SCANS_IN_PROGRESS._value.get()
        browser.evaluate_error = OSError("browser process exited")

        with pytest.raises(OSError):
            await executor.execute("https://example.com/", test_user, AuditKind.FREE)

        assert metrics.SCANS_IN_PROGRESS._value.get() == before
        assert browser.closed == 1
