"""
Monitoring Scheduler

Runs due monitoring targets. Each tick is stateless: it selects a small
batch of due targets, claims each one with a conditional UPDATE that
advances next_run_at, and executes the claimed targets one after another.
Two overlapping ticks can both select a target but only one claim matches,
so a target is never run twice for the same due time.

Run from an external timer (every 6 hours):

    python -m app.services.scheduler
"""

import asyncio
import logging
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import settings
from app.database import utc_now
from app.exceptions import AppException, ConflictError, NotFoundError, ValidationError
from app.middleware.correlation_id import correlation_scope
from app.models import (
    AuditKind,
    AuditSource,
    MonitoringRun,
    MonitoringTarget,
    RunStatus,
    RunTrigger,
    Tier,
    User,
)
from app.schemas.monitoring import RunNowResponse, RunSnapshot, TickSummary
from app.services import metrics
from app.services.cadence import next_run_for
from app.services.diff import build_monitoring_diff, extract_issue_ids
from app.services.email_service import EmailService, NotificationResult, email_service
from app.services.entitlements import EntitlementService
from app.services.monitoring import MonitoringService, run_to_response
from app.services.scanner import AuditExecutor
from app.utils.validators import URLValidationError, normalize_url_for_compare

logger = logging.getLogger(__name__)

MAX_ERROR_MESSAGE_LENGTH = 1000


class MonitoringScheduler:
    """Selects, claims and executes monitoring runs."""

    def __init__(
        self,
        db: Session,
        executor: AuditExecutor,
        notifier: Optional[EmailService] = None,
        batch_size: Optional[int] = None,
    ):
        self.db = db
        self.executor = executor
        self.notifier = notifier or email_service
        self.batch_size = batch_size or settings.monitoring_batch_size
        self.entitlements = EntitlementService(db)

    # ------------------------------------------------------------------
    # Selection and claiming
    # ------------------------------------------------------------------

    def select_due_targets(self, now: datetime) -> List[MonitoringTarget]:
        """Active, live targets due at now whose owner still has monitoring."""
        return (
            self.db.query(MonitoringTarget)
            .join(User, MonitoringTarget.user_id == User.id)
            .filter(
                MonitoringTarget.active.is_(True),
                MonitoringTarget.deleted_at.is_(None),
                MonitoringTarget.next_run_at.isnot(None),
                MonitoringTarget.next_run_at <= now,
                or_(
                    User.is_admin.is_(True),
                    (User.monitoring_active.is_(True))
                    & (or_(User.monitoring_until.is_(None), User.monitoring_until > now)),
                ),
            )
            .order_by(MonitoringTarget.next_run_at.asc())
            .limit(self.batch_size)
            .all()
        )

    def claim(self, target: MonitoringTarget, tier: Optional[Tier], now: datetime) -> bool:
        """
        Advance next_run_at if the target is still due.

        Returns False when another tick claimed it first (or it was
        deactivated meanwhile).
        """
        next_run_at = next_run_for(target, tier, now)
        claimed = (
            self.db.query(MonitoringTarget)
            .filter(
                MonitoringTarget.id == target.id,
                MonitoringTarget.active.is_(True),
                MonitoringTarget.deleted_at.is_(None),
                MonitoringTarget.next_run_at <= now,
            )
            .update(
                {MonitoringTarget.next_run_at: next_run_at, MonitoringTarget.updated_at: now},
                synchronize_session=False,
            )
        )
        self.db.commit()

        metrics.record_claim(bool(claimed))
        if not claimed:
            logger.debug(f"Lost claim on monitoring target {target.id}")
            return False

        self.db.refresh(target)
        return True

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _previous_success(self, target: MonitoringTarget) -> Optional[MonitoringRun]:
        return (
            self.db.query(MonitoringRun)
            .filter(
                MonitoringRun.target_id == target.id,
                MonitoringRun.status == RunStatus.SUCCESS,
            )
            .order_by(MonitoringRun.started_at.desc())
            .first()
        )

    def _mark_failed(self, run_id, message: str) -> None:
        try:
            self.db.query(MonitoringRun).filter(
                MonitoringRun.id == run_id,
                MonitoringRun.status == RunStatus.RUNNING,
            ).update(
                {
                    MonitoringRun.status: RunStatus.FAILED,
                    MonitoringRun.error_message: message[:MAX_ERROR_MESSAGE_LENGTH],
                    MonitoringRun.finished_at: utc_now(),
                },
                synchronize_session=False,
            )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Could not mark monitoring run {run_id} as failed: {e}")

    async def run_target(
        self,
        target: MonitoringTarget,
        user: User,
        trigger: RunTrigger,
        run_url: Optional[str] = None,
    ) -> Tuple[MonitoringRun, NotificationResult]:
        """
        Execute one monitoring run and compare it with the previous success.

        Any failure marks the run failed and is re-raised.
        """
        run_url = run_url or target.default_url
        previous = self._previous_success(target)
        previous_snapshot = (previous.summary_json or {}) if previous else {}

        run = MonitoringRun(
            target_id=target.id,
            trigger=trigger,
            run_url=run_url,
            status=RunStatus.RUNNING,
            started_at=utc_now(),
        )
        self.db.add(run)
        self.db.commit()
        self.db.refresh(run)
        run_id = run.id

        try:
            result = await self.executor.execute(
                run_url, user, AuditKind.PAID, debit=False, source=AuditSource.MONITORING
            )

            current_ids = extract_issue_ids(result.issues)
            diff = build_monitoring_diff(
                previous_snapshot.get("summary"),
                previous_snapshot.get("issue_ids") or [],
                result.summary,
                current_ids,
            )
            finished_at = utc_now()

            run.status = RunStatus.SUCCESS
            run.audit_id = result.audit_id
            run.summary_json = RunSnapshot(summary=result.summary, issue_ids=current_ids).model_dump()
            run.diff_json = diff.model_dump()
            run.finished_at = finished_at
            target.last_run_at = finished_at
            target.updated_at = finished_at
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"Monitoring run {run_id} for {run_url} failed: {e}")
            message = e.message if isinstance(e, AppException) else str(e)
            self._mark_failed(run_id, message or e.__class__.__name__)
            metrics.record_monitoring_run(trigger.value, RunStatus.FAILED.value)
            raise

        metrics.record_monitoring_run(trigger.value, RunStatus.SUCCESS.value)
        logger.info(
            f"Monitoring run {run_id} finished for {run_url}: total {result.summary.total} "
            f"(delta {diff.total_delta})"
        )

        notification = await self.notifier.send_monitoring_worsening_email(
            to=user.email,
            run_url=run_url,
            trigger=trigger.value,
            diff=diff,
            summary=result.summary,
        )
        metrics.record_notification(notification.reason)

        self.db.refresh(run)
        return run, notification

    async def tick(self, now: Optional[datetime] = None) -> TickSummary:
        """Process one batch of due targets."""
        now = now or utc_now()
        with correlation_scope("tick"):
            due = self.select_due_targets(now)
            summary = TickSummary(due=len(due))

            for target in due:
                user = target.user
                if not self.claim(target, user.monitoring_tier, now):
                    summary.skipped += 1
                    continue

                with correlation_scope("run"):
                    try:
                        await self.run_target(target, user, RunTrigger.SCHEDULED)
                    except Exception:
                        summary.failed += 1
                        continue
                summary.processed += 1

            logger.info(
                f"Monitoring tick: due={summary.due} processed={summary.processed} "
                f"failed={summary.failed} skipped={summary.skipped}"
            )
            return summary

    async def run_now(
        self,
        user: User,
        target_id=None,
        url: Optional[str] = None,
    ) -> RunNowResponse:
        """
        Manual run against a target. A differing URL override becomes the
        target's URL once the run succeeds. next_run_at is left alone.

        Raises:
            EntitlementError: Monitoring not allowed
            NotFoundError: No target
            ValidationError: Override URL rejected
            ConflictError: Override URL belongs to another target
        """
        self.entitlements.ensure_monitoring_allowed(user)
        targets = MonitoringService(self.db, self.executor.validator, self.entitlements)

        if target_id is not None:
            target = targets.get_target(user, target_id)
        else:
            target = targets.default_target(user)
            if target is None:
                raise NotFoundError("No monitoring target. Activate monitoring first.")

        run_url = target.default_url
        switch_to = None
        if url is not None:
            try:
                run_url = await asyncio.to_thread(self.executor.validator.validate, url)
            except URLValidationError as e:
                raise ValidationError(e.message, {"reason": e.reason.value})
            normalized = normalize_url_for_compare(run_url)
            if normalized != target.normalized_url:
                clash = (
                    self.db.query(MonitoringTarget)
                    .filter(
                        MonitoringTarget.user_id == user.id,
                        MonitoringTarget.normalized_url == normalized,
                        MonitoringTarget.id != target.id,
                        MonitoringTarget.deleted_at.is_(None),
                    )
                    .first()
                )
                if clash is not None:
                    raise ConflictError("This URL is already monitored by another target")
                switch_to = normalized

        with correlation_scope("run"):
            run, notification = await self.run_target(target, user, RunTrigger.MANUAL, run_url)

        if switch_to is not None:
            target.default_url = run_url
            target.normalized_url = switch_to
            self.db.commit()
            logger.info(f"Monitoring target {target.id} switched to {run_url}")

        return RunNowResponse(run=run_to_response(run), notified=notification.sent)


async def run_tick() -> TickSummary:
    """Build an engine and run a single tick; used by the command line entry."""
    from app.database import create_db_engine, create_session_factory, init_db, session_scope

    engine = create_db_engine(settings.database_url)
    init_db(engine)
    factory = create_session_factory(engine)
    try:
        with session_scope(factory) as db:
            scheduler = MonitoringScheduler(db, AuditExecutor(db))
            return await scheduler.tick()
    finally:
        engine.dispose()


if __name__ == "__main__":
    from app.middleware.correlation_id import setup_logging_with_correlation_id

    setup_logging_with_correlation_id(
        level=logging.DEBUG if settings.debug else logging.INFO,
        json_format=settings.app_env == "production",
    )
    result = asyncio.run(run_tick())
    print(result.model_dump_json())
