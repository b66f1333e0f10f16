"""
Entitlement Service

Decides what an account may do (manual scans, monitoring) and applies
entitlement changes from scan completions and billing events.

All balance changes are single-row conditional UPDATEs whose predicate
matches the state that justified the change, so concurrent requests can
never push scan_credits below zero.
"""

import enum
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from app.database import ensure_utc, utc_now
from app.exceptions import EntitlementError
from app.models import (
    AuditKind,
    AuditRecord,
    MONITORING_TIER_LIMITS,
    MonitoringTarget,
    PlanType,
    Tier,
    User,
)

logger = logging.getLogger(__name__)

# Scan credits granted per purchase tier
CREDITS_BY_TIER = {
    Tier.BASIC: 5,
    Tier.PRO: 15,
}

REFUND_CAS_ATTEMPTS = 5


class PurchaseType(enum.Enum):
    AUDIT = "audit"
    MONITORING = "monitoring"


@dataclass(frozen=True)
class Purchase:
    type: PurchaseType
    tier: Tier


class EntitlementReason:
    """Reason codes carried by EntitlementError."""
    NO_CREDITS = "no_credits"
    FREE_SCAN_USED = "free_scan_used"
    MONITORING_PREREQUISITE_MISSING = "monitoring_prerequisite_missing"
    MONITORING_INACTIVE = "monitoring_inactive"
    DOMAIN_LIMIT_REACHED = "domain_limit_reached"


def credits_for_tier(tier: Tier) -> int:
    return CREDITS_BY_TIER.get(tier, CREDITS_BY_TIER[Tier.BASIC])


class EntitlementService:
    """Entitlement checks and mutations for one database session."""

    def __init__(self, db: Session):
        self.db = db

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    @staticmethod
    def has_prerequisite(user: User) -> bool:
        """Monitoring can only be bought after a completed paid scan."""
        return bool(user.is_admin or user.paid_scan_completed)

    @staticmethod
    def has_monitoring_access(user: User, now: Optional[datetime] = None) -> bool:
        if user.is_admin:
            return True
        if not user.monitoring_active:
            return False
        until = ensure_utc(user.monitoring_until)
        return until is None or until > (now or utc_now())

    @staticmethod
    def access_level(user: User) -> AuditKind:
        if user.is_admin or user.plan == PlanType.PAID:
            return AuditKind.PAID
        return AuditKind.FREE

    def can_run_manual_scan(self, user: User) -> bool:
        try:
            self.ensure_can_run_manual_scan(user)
        except EntitlementError:
            return False
        return True

    def ensure_can_run_manual_scan(self, user: User) -> AuditKind:
        """
        Return the kind of scan the account may run now.

        Raises:
            EntitlementError: no_credits or free_scan_used
        """
        kind = self.access_level(user)
        if user.is_admin:
            return kind

        if kind == AuditKind.PAID:
            if (user.scan_credits or 0) <= 0:
                raise EntitlementError(
                    EntitlementReason.NO_CREDITS,
                    "No scan credits left. Purchase a scan package to continue.",
                )
            return kind

        if user.free_scan_used:
            raise EntitlementError(
                EntitlementReason.FREE_SCAN_USED,
                "The free scan has already been used. Purchase a scan package to continue.",
            )
        return kind

    def ensure_monitoring_allowed(self, user: User) -> None:
        if not self.has_prerequisite(user):
            raise EntitlementError(
                EntitlementReason.MONITORING_PREREQUISITE_MISSING,
                "Monitoring requires a completed paid scan.",
            )
        if not self.has_monitoring_access(user):
            raise EntitlementError(
                EntitlementReason.MONITORING_INACTIVE,
                "Monitoring is not active for this account.",
            )

    def ensure_domain_capacity(self, user: User, active_targets: int) -> None:
        if user.is_admin:
            return
        limit = user.effective_domains_limit
        if active_targets >= limit:
            raise EntitlementError(
                EntitlementReason.DOMAIN_LIMIT_REACHED,
                f"Your plan allows monitoring {limit} domain(s).",
                {"limit": limit},
            )

    # ------------------------------------------------------------------
    # Scan completion
    # ------------------------------------------------------------------

    def record_scan_completion(self, user: User, kind: AuditKind) -> None:
        """Debit the entitlement after a successfully stored scan."""
        users = self.db.query(User).filter(User.id == user.id)

        if kind == AuditKind.PAID:
            if user.is_admin:
                users.update({User.paid_scan_completed: True}, synchronize_session=False)
            else:
                debited = users.filter(User.scan_credits > 0).update(
                    {
                        User.scan_credits: User.scan_credits - 1,
                        User.paid_scan_completed: True,
                    },
                    synchronize_session=False,
                )
                if debited == 0:
                    # Balance was consumed concurrently; still record the completed scan
                    logger.warning(f"No credit left to debit for user {user.id}")
                    users.update({User.paid_scan_completed: True}, synchronize_session=False)
        else:
            users.filter(User.free_scan_used.is_(False)).update(
                {User.free_scan_used: True}, synchronize_session=False
            )

        self.db.commit()
        self.db.refresh(user)
        logger.info(
            f"Recorded {kind.value} scan for user {user.id} (credits left: {user.scan_credits})"
        )

    # ------------------------------------------------------------------
    # Billing
    # ------------------------------------------------------------------

    def apply_purchase(self, user: User, purchase: Purchase) -> str:
        """Apply an order. Returns a short outcome label for logging/metrics."""
        users = self.db.query(User).filter(User.id == user.id)

        if purchase.type == PurchaseType.MONITORING:
            if not self.has_prerequisite(user):
                logger.info(f"Monitoring purchase skipped for {user.id}: prerequisite missing")
                return "skipped_prerequisite"

            limits = MONITORING_TIER_LIMITS[purchase.tier]
            users.update(
                {
                    User.monitoring_active: True,
                    User.monitoring_until: None,
                    User.monitoring_tier: purchase.tier,
                    User.monitoring_domains_limit: limits["domains"],
                    User.monitoring_monthly_runs: limits["monthly_runs"],
                },
                synchronize_session=False,
            )
            self.db.commit()
            self.db.refresh(user)
            logger.info(f"Monitoring {purchase.tier.value} activated for {user.id}")
            return "monitoring_activated"

        amount = credits_for_tier(purchase.tier)
        users.update(
            {
                User.scan_credits: User.scan_credits + amount,
                User.plan: PlanType.PAID,
                User.scan_tier: purchase.tier,
            },
            synchronize_session=False,
        )
        self.db.commit()

        if self.unlock_latest_free_audit(user):
            users.filter(User.paid_scan_completed.is_(False)).update(
                {User.paid_scan_completed: True}, synchronize_session=False
            )
            self.db.commit()

        self.db.refresh(user)
        logger.info(f"Added {amount} scan credits for {user.id} (now {user.scan_credits})")
        return "credits_added"

    def unlock_latest_free_audit(self, user: User) -> bool:
        """Upgrade the account's most recent free audit to paid."""
        audit = (
            self.db.query(AuditRecord)
            .filter(AuditRecord.user_id == user.id, AuditRecord.kind == AuditKind.FREE)
            .order_by(AuditRecord.created_at.desc())
            .first()
        )
        if audit is None:
            return False

        upgraded = (
            self.db.query(AuditRecord)
            .filter(AuditRecord.id == audit.id, AuditRecord.kind == AuditKind.FREE)
            .update({AuditRecord.kind: AuditKind.PAID}, synchronize_session=False)
        )
        self.db.commit()
        if upgraded:
            logger.info(f"Unlocked free audit {audit.id} for {user.id}")
        return bool(upgraded)

    def apply_refund(self, user: User, purchase: Purchase) -> str:
        """Reverse an order. Credits are clamped at zero."""
        users = self.db.query(User).filter(User.id == user.id)

        if purchase.type == PurchaseType.MONITORING:
            users.update(
                {
                    User.monitoring_active: False,
                    User.monitoring_until: None,
                    User.monitoring_tier: Tier.NONE,
                    User.monitoring_domains_limit: 0,
                    User.monitoring_monthly_runs: 0,
                },
                synchronize_session=False,
            )
            deactivated = (
                self.db.query(MonitoringTarget)
                .filter(MonitoringTarget.user_id == user.id, MonitoringTarget.active.is_(True))
                .update(
                    {MonitoringTarget.active: False, MonitoringTarget.updated_at: utc_now()},
                    synchronize_session=False,
                )
            )
            self.db.commit()
            self.db.refresh(user)
            logger.info(
                f"Monitoring refunded for {user.id}; {deactivated} target(s) deactivated"
            )
            return "monitoring_revoked"

        amount = credits_for_tier(purchase.tier)
        for _ in range(REFUND_CAS_ATTEMPTS):
            self.db.refresh(user)
            observed = user.scan_credits or 0
            remaining = max(0, observed - amount)
            values = {User.scan_credits: remaining}
            if remaining == 0:
                values[User.plan] = PlanType.FREE
                values[User.scan_tier] = Tier.NONE
            swapped = users.filter(User.scan_credits == observed).update(
                values, synchronize_session=False
            )
            self.db.commit()
            if swapped:
                self.db.refresh(user)
                logger.info(f"Refunded {amount} credits for {user.id} (now {remaining})")
                return "credits_refunded"

        logger.error(f"Refund for {user.id} lost {REFUND_CAS_ATTEMPTS} balance races")
        raise RuntimeError("Could not apply refund: scan credit balance kept changing")
