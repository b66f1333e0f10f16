"""
Monitoring Targets

Lifecycle of an account's monitored URLs: activation, configuration
changes, soft deletion and the status/history views. Targets are keyed by
(account, normalized URL); activating a URL that was deleted earlier
revives the old row so its run history stays attached.
"""

import asyncio
import logging
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session

from app.database import ensure_utc, utc_now
from app.exceptions import ConflictError, NotFoundError, ValidationError
from app.models import (
    AuditRecord,
    CadenceMode,
    MonitoringProfile,
    MonitoringRun,
    MonitoringTarget,
    User,
)
from app.schemas.monitoring import (
    ActivateRequest,
    ConfigUpdateRequest,
    EntitlementResponse,
    HistoryResponse,
    RunResponse,
    StatusResponse,
    TargetResponse,
)
from app.services.cadence import next_run_for, normalize_cadence
from app.services.diff import normalize_diff, normalize_summary
from app.services.entitlements import EntitlementService
from app.utils.validators import TargetValidator, URLValidationError, normalize_url_for_compare

logger = logging.getLogger(__name__)

HISTORY_MAX_LIMIT = 50
HISTORY_DEFAULT_LIMIT = 20


def target_to_response(target: MonitoringTarget) -> TargetResponse:
    return TargetResponse(
        id=target.id,
        default_url=target.default_url,
        profile=target.profile.value,
        active=target.active,
        cadence_mode=target.cadence_mode.value,
        cadence_value=target.cadence_value,
        next_run_at=ensure_utc(target.next_run_at),
        last_run_at=ensure_utc(target.last_run_at),
        created_at=ensure_utc(target.created_at),
    )


def run_to_response(run: MonitoringRun) -> RunResponse:
    snapshot = run.summary_json or {}
    return RunResponse(
        id=run.id,
        target_id=run.target_id,
        trigger=run.trigger.value,
        run_url=run.run_url,
        status=run.status.value,
        audit_id=run.audit_id,
        summary=normalize_summary(snapshot["summary"]) if snapshot.get("summary") else None,
        diff=normalize_diff(run.diff_json),
        error_message=run.error_message,
        started_at=ensure_utc(run.started_at),
        finished_at=ensure_utc(run.finished_at),
    )


class MonitoringService:
    """Target management for one database session."""

    def __init__(
        self,
        db: Session,
        validator: Optional[TargetValidator] = None,
        entitlements: Optional[EntitlementService] = None,
    ):
        self.db = db
        self.validator = validator or TargetValidator()
        self.entitlements = entitlements or EntitlementService(db)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _targets(self, user: User):
        return self.db.query(MonitoringTarget).filter(
            MonitoringTarget.user_id == user.id,
            MonitoringTarget.deleted_at.is_(None),
        )

    def list_targets(self, user: User) -> List[MonitoringTarget]:
        return self._targets(user).order_by(MonitoringTarget.created_at.asc()).all()

    def get_target(self, user: User, target_id) -> MonitoringTarget:
        target = self._targets(user).filter(MonitoringTarget.id == target_id).first()
        if target is None:
            raise NotFoundError("Monitoring target not found")
        return target

    def default_target(self, user: User) -> Optional[MonitoringTarget]:
        """Most recently touched live target, preferring active ones."""
        return (
            self._targets(user)
            .order_by(MonitoringTarget.active.desc(), MonitoringTarget.updated_at.desc())
            .first()
        )

    def count_active_targets(self, user: User, exclude_id=None) -> int:
        query = self._targets(user).filter(MonitoringTarget.active.is_(True))
        if exclude_id is not None:
            query = query.filter(MonitoringTarget.id != exclude_id)
        return query.count()

    def latest_audit_url(self, user: User) -> Optional[str]:
        audit = (
            self.db.query(AuditRecord)
            .filter(AuditRecord.user_id == user.id)
            .order_by(AuditRecord.created_at.desc())
            .first()
        )
        return audit.url if audit else None

    def latest_run(self, target_ids) -> Optional[MonitoringRun]:
        if not target_ids:
            return None
        return (
            self.db.query(MonitoringRun)
            .filter(MonitoringRun.target_id.in_(target_ids))
            .order_by(MonitoringRun.started_at.desc())
            .first()
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def _canonical(self, raw: str) -> Tuple[str, str]:
        try:
            url = await asyncio.to_thread(self.validator.validate, raw)
        except URLValidationError as e:
            raise ValidationError(e.message, {"reason": e.reason.value})
        return url, normalize_url_for_compare(url)

    async def activate(
        self,
        user: User,
        request: ActivateRequest,
        now: Optional[datetime] = None,
    ) -> MonitoringTarget:
        """
        Start monitoring a URL.

        The URL defaults to the account's latest audit. Activating a URL
        that already has a target updates and re-activates it.

        Raises:
            EntitlementError: Prerequisite, access or domain limit
            ValidationError: No usable URL
        """
        self.entitlements.ensure_monitoring_allowed(user)
        now = now or utc_now()

        raw_url = (request.default_url or "").strip() or self.latest_audit_url(user)
        if not raw_url:
            existing_default = self.default_target(user)
            raw_url = existing_default.default_url if existing_default else None
        if not raw_url:
            raise ValidationError("No URL to monitor. Run an audit first or provide a URL.")

        url, normalized = await self._canonical(raw_url)

        target = (
            self.db.query(MonitoringTarget)
            .filter(
                MonitoringTarget.user_id == user.id,
                MonitoringTarget.normalized_url == normalized,
            )
            .order_by(MonitoringTarget.deleted_at.isnot(None), MonitoringTarget.deleted_at.desc())
            .first()
        )

        counted = target is not None and target.active and target.deleted_at is None
        if not counted:
            self.entitlements.ensure_domain_capacity(
                user, self.count_active_targets(user)
            )

        requested_mode = CadenceMode(request.cadence_mode) if request.cadence_mode else None
        if target is None:
            mode, value = normalize_cadence(requested_mode, request.cadence_value)
            target = MonitoringTarget(
                user_id=user.id,
                default_url=url,
                normalized_url=normalized,
                profile=MonitoringProfile(request.profile or "wad"),
                cadence_mode=mode,
                cadence_value=value,
            )
            self.db.add(target)
        else:
            mode, value = normalize_cadence(
                requested_mode or target.cadence_mode,
                request.cadence_value if request.cadence_value is not None else target.cadence_value,
            )
            target.default_url = url
            if request.profile:
                target.profile = MonitoringProfile(request.profile)
            target.cadence_mode = mode
            target.cadence_value = value
            target.deleted_at = None

        target.active = True
        target.anchor_at = now
        target.next_run_at = next_run_for(target, user.monitoring_tier, now)
        target.updated_at = now

        self.db.commit()
        self.db.refresh(target)
        logger.info(f"Monitoring activated for {user.id}: {url} (next run {target.next_run_at})")
        return target

    async def update_config(
        self,
        user: User,
        request: ConfigUpdateRequest,
        now: Optional[datetime] = None,
    ) -> MonitoringTarget:
        """
        Change a target's URL, profile, cadence or active flag.

        Raises:
            NotFoundError: No such live target for this account
            ConflictError: The new URL is already monitored by another target
            EntitlementError: Re-activation beyond the domain limit
        """
        self.entitlements.ensure_monitoring_allowed(user)
        now = now or utc_now()
        target = self.get_target(user, request.target_id)

        if request.default_url is not None:
            url, normalized = await self._canonical(request.default_url)
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
                target.normalized_url = normalized
            target.default_url = url

        if request.profile is not None:
            target.profile = MonitoringProfile(request.profile)

        reschedule = False
        if request.cadence_mode is not None or request.cadence_value is not None:
            mode = CadenceMode(request.cadence_mode) if request.cadence_mode else target.cadence_mode
            target.cadence_mode, target.cadence_value = normalize_cadence(
                mode,
                request.cadence_value if request.cadence_value is not None else target.cadence_value,
            )
            reschedule = True

        if request.active is not None and request.active != target.active:
            if request.active:
                self.entitlements.ensure_domain_capacity(
                    user, self.count_active_targets(user, exclude_id=target.id)
                )
                reschedule = True
            target.active = request.active

        if reschedule and target.active:
            target.anchor_at = now
            target.next_run_at = next_run_for(target, user.monitoring_tier, now)

        target.updated_at = now
        self.db.commit()
        self.db.refresh(target)
        logger.info(f"Monitoring target {target.id} updated for {user.id}")
        return target

    def delete_target(self, user: User, target_id, now: Optional[datetime] = None) -> None:
        """Soft delete: the row and its runs stay, the scheduler ignores it."""
        target = self.get_target(user, target_id)
        now = now or utc_now()
        target.active = False
        target.deleted_at = now
        target.updated_at = now
        self.db.commit()
        logger.info(f"Monitoring target {target.id} deleted for {user.id}")

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def entitlement_view(self, user: User) -> EntitlementResponse:
        return EntitlementResponse(
            monitoring_active=bool(user.monitoring_active),
            monitoring_until=ensure_utc(user.monitoring_until),
            monitoring_tier=user.monitoring_tier.value,
            domains_limit=user.effective_domains_limit,
            monthly_runs=user.effective_monthly_runs,
            has_prerequisite=self.entitlements.has_prerequisite(user),
        )

    def status(self, user: User) -> StatusResponse:
        targets = self.list_targets(user)
        primary = self.default_target(user)
        latest = self.latest_run([t.id for t in targets])
        return StatusResponse(
            entitlement=self.entitlement_view(user),
            has_access=self.entitlements.has_monitoring_access(user),
            latest_audit_url=self.latest_audit_url(user),
            target=target_to_response(primary) if primary else None,
            targets=[target_to_response(t) for t in targets],
            latest_run=run_to_response(latest) if latest else None,
        )

    def history(
        self,
        user: User,
        target_id=None,
        page: int = 1,
        limit: int = HISTORY_DEFAULT_LIMIT,
    ) -> HistoryResponse:
        """Runs newest first. Runs of deleted targets stay visible."""
        page = max(1, page)
        limit = max(1, min(HISTORY_MAX_LIMIT, limit))

        query = (
            self.db.query(MonitoringRun)
            .join(MonitoringTarget, MonitoringRun.target_id == MonitoringTarget.id)
            .filter(MonitoringTarget.user_id == user.id)
        )
        if target_id is not None:
            query = query.filter(MonitoringRun.target_id == target_id)

        # One extra row tells whether another page exists
        rows = (
            query.order_by(MonitoringRun.started_at.desc())
            .offset((page - 1) * limit)
            .limit(limit + 1)
            .all()
        )
        return HistoryResponse(
            runs=[run_to_response(run) for run in rows[:limit]],
            page=page,
            limit=limit,
            has_more=len(rows) > limit,
        )
