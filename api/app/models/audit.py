"""
Audit Models

An AuditRecord is the stored outcome of one executed scan: the summary and
the top issues (redacted for free audits). The complete issue list lives in
AuditDetail, written in the same unit as the record.
"""

import enum
import uuid

from sqlalchemy import Column, String, DateTime, ForeignKey, JSON, Enum as SQLEnum, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from app.database import Base, utc_now


class AuditKind(enum.Enum):
    """Whether the audit ran under the free or the paid entitlement."""
    FREE = "free"
    PAID = "paid"


class AuditSource(enum.Enum):
    """What requested the audit; only manual scans count toward the scan rate limit."""
    MANUAL = "manual"
    MONITORING = "monitoring"


class AuditRecord(Base):
    """Stored scan result visible in the account's audit history."""

    __tablename__ = "audits"
    __table_args__ = (
        Index("ix_audits_user_created", "user_id", "created_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    url = Column(String(2048), nullable=False)
    kind = Column(SQLEnum(AuditKind), nullable=False)
    source = Column(SQLEnum(AuditSource), nullable=False, default=AuditSource.MANUAL)

    summary = Column(JSON, nullable=False)
    top_issues = Column(JSON, nullable=False, default=list)

    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    user = relationship("User", back_populates="audits")
    detail = relationship(
        "AuditDetail", back_populates="audit", uselist=False, cascade="all, delete-orphan"
    )

    def __repr__(self):
        return f"<AuditRecord {self.id} {self.kind.value} {self.url}>"


class AuditDetail(Base):
    """Full issue list for one audit."""

    __tablename__ = "audit_details"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    audit_id = Column(
        UUID(as_uuid=True),
        ForeignKey("audits.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    url = Column(String(2048), nullable=False)
    issues = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    audit = relationship("AuditRecord", back_populates="detail")

    def __repr__(self):
        return f"<AuditDetail {self.audit_id}>"
