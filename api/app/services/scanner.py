"""
Audit Executor

Runs a single-page accessibility scan and stores the result:

1. re-validate the target URL (SSRF boundary, DNS may have changed)
2. open a browser session, navigate with bounded retries and a deadline
3. inject axe-core and evaluate under its own deadline (never retried)
4. normalize violations into Issues, summarize, pick the top issues
5. persist AuditRecord + AuditDetail, deleting the record if the detail
   cannot be written
6. optionally debit the account's entitlement
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from playwright.async_api import Error as PlaywrightError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import Settings, settings
from app.exceptions import ExecutionError, PersistenceError, ValidationError
from app.models import AuditDetail, AuditKind, AuditRecord, AuditSource, User
from app.schemas.audit import IMPACT_ORDER, Issue, IssueElement, ImpactCounts, Summary
from app.services import metrics
from app.services.browser import BrowserFactory, PageSession, PlaywrightBrowserFactory
from app.services.entitlements import EntitlementService
from app.services.guidance import get_guidance, get_wcag_level
from app.services.resilience import (
    DeadlineExceeded,
    RetryPolicy,
    call_with_retry,
    run_with_deadline,
)
from app.utils.validators import TargetValidator, URLValidationError

logger = logging.getLogger(__name__)

IMPACT_RANK = {impact: rank for rank, impact in enumerate(IMPACT_ORDER)}

# Errors a navigation attempt may raise that are worth another attempt
NAVIGATION_ERRORS = (DeadlineExceeded, PlaywrightError, asyncio.TimeoutError)


@dataclass(frozen=True)
class ExecutionPolicy:
    """Timeouts, retries and result shaping for one scan."""

    navigation_timeout: float = 45.0
    evaluation_timeout: float = 90.0
    navigation_attempts: int = 2
    navigation_retry_delay: float = 1.0
    top_n: int = 3
    max_elements: int = 5
    tags: Tuple[str, ...] = ("wcag2a", "wcag2aa", "wcag21a", "wcag21aa", "best-practice")

    @classmethod
    def from_settings(cls, config: Settings) -> "ExecutionPolicy":
        return cls(
            navigation_timeout=config.navigation_timeout_seconds,
            evaluation_timeout=config.evaluation_timeout_seconds,
            navigation_attempts=config.navigation_retry_count,
            navigation_retry_delay=config.navigation_retry_delay_seconds,
            top_n=config.top_issue_count,
            max_elements=config.max_elements_per_issue,
            tags=tuple(config.axe_tag_list),
        )


@dataclass
class AuditResult:
    audit_id: Any
    url: str
    kind: AuditKind
    summary: Summary
    issues: List[Issue]
    top_issues: List[Issue] = field(default_factory=list)


# ----------------------------------------------------------------------
# Normalization
# ----------------------------------------------------------------------

def normalize_impact(value: Optional[str]) -> str:
    impact = (value or "").strip().lower()
    return impact if impact in IMPACT_RANK else "minor"


def normalize_violation(violation: Dict[str, Any], max_elements: int = 5) -> Issue:
    """Turn one axe-core violation into an Issue."""
    rule_id = (violation.get("id") or violation.get("help") or "unknown").strip()
    nodes = violation.get("nodes") or []
    if not isinstance(nodes, list):
        nodes = []

    elements = []
    for node in nodes[:max_elements]:
        target = node.get("target") or []
        if isinstance(target, list):
            target = ", ".join(str(t) for t in target)
        elements.append(
            IssueElement(
                target=str(target),
                html=str(node.get("html") or ""),
                failure_summary=str(node.get("failureSummary") or ""),
            )
        )

    guidance = get_guidance(rule_id)
    known = guidance.wcag != "Unspecified"
    title = guidance.title if known else (violation.get("help") or f"{guidance.title} ({rule_id})")
    description = guidance.description if known else (violation.get("description") or guidance.description)

    return Issue(
        id=rule_id,
        impact=normalize_impact(violation.get("impact")),
        title=title,
        description=description,
        remediation=guidance.remediation,
        rule_reference=guidance.wcag,
        wcag_level=get_wcag_level(rule_id, guidance.wcag),
        principle=guidance.principle,
        help_url=violation.get("helpUrl"),
        affected_count=len(nodes),
        elements=elements,
    )


def normalize_violations(raw: Any, max_elements: int = 5) -> List[Issue]:
    violations = raw.get("violations") if isinstance(raw, dict) else raw
    if not isinstance(violations, list):
        return []
    return [normalize_violation(v, max_elements) for v in violations if isinstance(v, dict)]


def build_summary(issues: Iterable[Issue]) -> Summary:
    counts = ImpactCounts()
    total = 0
    for issue in issues:
        setattr(counts, issue.impact, getattr(counts, issue.impact) + 1)
        total += 1
    return Summary(total=total, by_impact=counts)


def pick_top_issues(issues: Iterable[Issue], n: int = 3) -> List[Issue]:
    """Most severe first, then the ones affecting more elements."""
    ranked = sorted(
        issues,
        key=lambda issue: (IMPACT_RANK.get(issue.impact, len(IMPACT_RANK)), -issue.affected_count),
    )
    return ranked[:n]


def redact_issue(issue: Issue) -> Issue:
    """Free-tier view: no remediation text, no element samples."""
    return issue.model_copy(update={"remediation": "", "elements": []})


def issues_from_json(raw: Any) -> List[Issue]:
    if not isinstance(raw, list):
        return []
    return [Issue.model_validate(item) for item in raw if isinstance(item, dict)]


# ----------------------------------------------------------------------
# Executor
# ----------------------------------------------------------------------

class AuditExecutor:
    """Executes and stores scans. One instance per database session."""

    def __init__(
        self,
        db: Session,
        browser_factory: Optional[BrowserFactory] = None,
        validator: Optional[TargetValidator] = None,
        policy: Optional[ExecutionPolicy] = None,
        entitlements: Optional[EntitlementService] = None,
    ):
        self.db = db
        self.validator = validator or TargetValidator()
        self.browser_factory = browser_factory or PlaywrightBrowserFactory(self.validator)
        self.policy = policy or ExecutionPolicy.from_settings(settings)
        self.entitlements = entitlements or EntitlementService(db)

    async def execute(
        self,
        url: str,
        user: User,
        kind: AuditKind,
        debit: bool = False,
        source: AuditSource = AuditSource.MANUAL,
    ) -> AuditResult:
        """
        Scan url for user and store the result.

        Raises:
            ValidationError: The URL is not a safe public target
            ExecutionError: Navigation or evaluation failed
            PersistenceError: The result could not be stored
        """
        try:
            target = await asyncio.to_thread(self.validator.validate, url)
        except URLValidationError as e:
            raise ValidationError(e.message, {"reason": e.reason.value})

        started = time.monotonic()
        metrics.record_scan_started()
        try:
            issues = await self._scan(target)

            summary = build_summary(issues)
            top_issues = pick_top_issues(issues, self.policy.top_n)
            if kind == AuditKind.FREE:
                top_issues = [redact_issue(issue) for issue in top_issues]

            record = self._persist(target, user, kind, source, summary, top_issues, issues)
        except (ExecutionError, PersistenceError):
            metrics.record_scan_failed(kind.value)
            raise
        finally:
            metrics.record_scan_finished()

        metrics.record_scan_completed(
            kind.value, time.monotonic() - started, summary.by_impact.model_dump()
        )
        logger.info(
            f"Audit {record.id} stored for {target}: {summary.total} issues ({kind.value})"
        )

        if debit:
            self.entitlements.record_scan_completion(user, kind)

        return AuditResult(
            audit_id=record.id,
            url=target,
            kind=kind,
            summary=summary,
            issues=issues,
            top_issues=top_issues,
        )

    async def _scan(self, url: str) -> List[Issue]:
        policy = self.policy
        try:
            async with self.browser_factory() as session:
                await self._navigate(session, url)
                raw = await self._evaluate(session)
        except ExecutionError:
            raise
        except PlaywrightError as e:
            logger.error(f"Browser error while scanning {url}: {e}")
            raise ExecutionError("browser_error", "The browser failed while scanning the page")

        return normalize_violations(raw, policy.max_elements)

    async def _navigate(self, session: PageSession, url: str) -> None:
        policy = self.policy
        retry = RetryPolicy(
            attempts=policy.navigation_attempts,
            delay=policy.navigation_retry_delay,
            exceptions=NAVIGATION_ERRORS,
        )

        async def attempt() -> None:
            await run_with_deadline(
                lambda: session.goto(url, policy.navigation_timeout),
                policy.navigation_timeout,
                name="navigation",
            )

        try:
            await call_with_retry(attempt, retry)
        except NAVIGATION_ERRORS as e:
            logger.warning(f"Navigation to {url} failed after {policy.navigation_attempts} attempts: {e}")
            raise ExecutionError(
                "navigation_timeout",
                f"The page could not be loaded within {policy.navigation_timeout:.0f}s",
            )

    async def _evaluate(self, session: PageSession) -> Dict[str, Any]:
        policy = self.policy

        async def evaluate() -> Dict[str, Any]:
            await session.inject_rule_engine()
            return await session.run_rules(list(policy.tags))

        try:
            return await run_with_deadline(evaluate, policy.evaluation_timeout, name="evaluation")
        except DeadlineExceeded:
            raise ExecutionError(
                "evaluation_timeout",
                f"Accessibility evaluation did not finish within {policy.evaluation_timeout:.0f}s",
            )
        except PlaywrightError as e:
            logger.error(f"Accessibility evaluation failed: {e}")
            raise ExecutionError("evaluation_failed", "Accessibility evaluation failed")

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _persist(
        self,
        url: str,
        user: User,
        kind: AuditKind,
        source: AuditSource,
        summary: Summary,
        top_issues: List[Issue],
        issues: List[Issue],
    ) -> AuditRecord:
        record = AuditRecord(
            user_id=user.id,
            url=url,
            kind=kind,
            source=source,
            summary=summary.model_dump(),
            top_issues=[issue.model_dump() for issue in top_issues],
        )
        try:
            self.db.add(record)
            self.db.commit()
            self.db.refresh(record)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to store audit for {url}: {e}")
            raise PersistenceError()

        audit_id = record.id
        try:
            self._store_detail(record, issues)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to store audit detail {audit_id}, removing record: {e}")
            self._delete_record(audit_id)
            raise PersistenceError()

        return record

    def _store_detail(self, record: AuditRecord, issues: List[Issue]) -> None:
        detail = AuditDetail(
            audit_id=record.id,
            user_id=record.user_id,
            url=record.url,
            issues=[issue.model_dump() for issue in issues],
        )
        self.db.add(detail)
        self.db.commit()

    def _delete_record(self, audit_id) -> None:
        try:
            self.db.query(AuditRecord).filter(AuditRecord.id == audit_id).delete(
                synchronize_session=False
            )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Compensating delete of audit {audit_id} failed: {e}")
