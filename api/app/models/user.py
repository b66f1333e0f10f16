"""
User Model

Defines the User table for authentication and the account's entitlement
state (free scan, purchased scan credits and monitoring subscription).
"""

import enum
import uuid

from sqlalchemy import Column, String, Boolean, DateTime, Integer, CheckConstraint, Enum as SQLEnum
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from app.database import Base, utc_now


class PlanType(enum.Enum):
    """Account plan. Paid once a scan purchase has been applied."""
    FREE = "free"
    PAID = "paid"


class Tier(enum.Enum):
    """Purchase tier shared by scan credits and monitoring."""
    NONE = "none"
    BASIC = "basic"
    PRO = "pro"


# Fallback monitoring limits when the stored values are missing or zero
MONITORING_TIER_LIMITS = {
    Tier.BASIC: {"domains": 2, "monthly_runs": 4},
    Tier.PRO: {"domains": 8, "monthly_runs": 8},
}


class User(Base):
    """
    User model for authentication and entitlement state.

    scan_credits is only ever changed through conditional UPDATE statements
    (see EntitlementService) and can never go below zero.
    """

    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint("scan_credits >= 0", name="ck_users_scan_credits_non_negative"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email = Column(String(255), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=False)
    full_name = Column(String(255), nullable=True)

    # Status
    is_active = Column(Boolean, default=True, nullable=False)
    is_admin = Column(Boolean, default=False, nullable=False)

    # Scan entitlement
    plan = Column(SQLEnum(PlanType), default=PlanType.FREE, nullable=False)
    free_scan_used = Column(Boolean, default=False, nullable=False)
    paid_scan_completed = Column(Boolean, default=False, nullable=False)
    scan_credits = Column(Integer, default=0, nullable=False)
    scan_tier = Column(SQLEnum(Tier), default=Tier.NONE, nullable=False)

    # Monitoring entitlement
    monitoring_active = Column(Boolean, default=False, nullable=False)
    monitoring_until = Column(DateTime(timezone=True), nullable=True)
    monitoring_tier = Column(SQLEnum(Tier), default=Tier.NONE, nullable=False)
    monitoring_domains_limit = Column(Integer, nullable=True)
    monitoring_monthly_runs = Column(Integer, nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    # Relationships
    audits = relationship("AuditRecord", back_populates="user", cascade="all, delete-orphan")
    monitoring_targets = relationship(
        "MonitoringTarget", back_populates="user", cascade="all, delete-orphan"
    )

    def __repr__(self):
        return f"<User {self.email}>"

    @property
    def effective_domains_limit(self) -> int:
        if self.monitoring_domains_limit:
            return self.monitoring_domains_limit
        limits = MONITORING_TIER_LIMITS.get(self.monitoring_tier)
        return limits["domains"] if limits else 0

    @property
    def effective_monthly_runs(self) -> int:
        if self.monitoring_monthly_runs:
            return self.monitoring_monthly_runs
        limits = MONITORING_TIER_LIMITS.get(self.monitoring_tier)
        return limits["monthly_runs"] if limits else 0
