from __future__ import annotations
from sqlalchemy import (
    Column, String, Float, Integer, Boolean, Date, DateTime, Text,
    ForeignKey, UniqueConstraint, Index,
)
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
import uuid

from auditflow.models.db import Base
from auditflow.models.enums import AuditStatus, ReviewStatus


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


# One row per audit. status / is_locked / snapshot are the only shared mutable state
# of the workflow engine, every write to them goes through a compare-and-swap UPDATE.
class Audit(Base):
    __tablename__ = "audits"
    __table_args__ = (
        Index("ix_audits_org", "organization_id"),
        Index("ix_audits_org_status", "organization_id", "status"),
    )

    id = Column(String, primary_key=True, default=_uuid)
    organization_id = Column(String, nullable=False)

    name = Column(String, nullable=False)
    type = Column(String, nullable=False)
    framework_name = Column(String, nullable=True)
    all_controls = Column(Boolean, nullable=False, default=False)

    # lifecycle
    status = Column(String, nullable=False, default=AuditStatus.DRAFT.value)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=True)
    period_start = Column(Date, nullable=True)
    period_end = Column(Date, nullable=True)
    closed_at = Column(DateTime(timezone=True), nullable=True)

    # assignment - internal user OR external email, never both
    assigned_auditor_id = Column(String, nullable=True)
    external_auditor_email = Column(String, nullable=True)
    owner_id = Column(String, nullable=False)

    # final report
    executive_summary = Column(Text, nullable=True)
    audit_conclusion = Column(Text, nullable=True)
    signed_document_ref = Column(String, nullable=True)
    signed_at = Column(DateTime(timezone=True), nullable=True)
    signed_by_id = Column(String, nullable=True)

    is_locked = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=_now)

    audit_controls = relationship("AuditControl", back_populates="audit", order_by="AuditControl.id")
    snapshot = relationship("ComplianceSnapshot", back_populates="audit", uselist=False)


class AuditControl(Base):
    __tablename__ = "audit_controls"
    __table_args__ = (UniqueConstraint("audit_id", "control_id", name="uq_audit_control"),)

    id = Column(String, primary_key=True, default=_uuid)
    audit_id = Column(String, ForeignKey("audits.id"), nullable=False)
    control_id = Column(String, ForeignKey("controls.id"), nullable=False)
    organization_id = Column(String, nullable=False)

    review_status = Column(String, nullable=False, default=ReviewStatus.PENDING.value)
    notes = Column(Text, nullable=True)
    reviewed_by = Column(String, nullable=True)
    reviewed_at = Column(DateTime(timezone=True), nullable=True)

    audit = relationship("Audit", back_populates="audit_controls")
    control = relationship("Control")


# Frozen at sign time and never updated. unique(audit_id) means a second capture fails
# at the database even if two signers somehow got past the status check.
class ComplianceSnapshot(Base):
    __tablename__ = "compliance_snapshots"
    __table_args__ = (UniqueConstraint("audit_id", name="uq_snapshot_audit"),)

    id = Column(String, primary_key=True, default=_uuid)
    audit_id = Column(String, ForeignKey("audits.id"), nullable=False)
    organization_id = Column(String, nullable=False)
    captured_at = Column(DateTime(timezone=True), nullable=False, default=_now)

    total_controls = Column(Integer, nullable=False, default=0)
    compliant_controls = Column(Integer, nullable=False, default=0)
    non_compliant_controls = Column(Integer, nullable=False, default=0)
    not_applicable_controls = Column(Integer, nullable=False, default=0)
    pending_controls = Column(Integer, nullable=False, default=0)
    compliance_pct = Column(Float, nullable=False, default=0.0)

    total_findings = Column(Integer, nullable=False, default=0)
    open_findings = Column(Integer, nullable=False, default=0)
    closed_findings = Column(Integer, nullable=False, default=0)
    major_findings = Column(Integer, nullable=False, default=0)
    minor_findings = Column(Integer, nullable=False, default=0)
    observation_findings = Column(Integer, nullable=False, default=0)
    ofi_findings = Column(Integer, nullable=False, default=0)

    critical_risks = Column(Integer, nullable=False, default=0)
    high_risks = Column(Integer, nullable=False, default=0)
    medium_risks = Column(Integer, nullable=False, default=0)
    low_risks = Column(Integer, nullable=False, default=0)

    audit = relationship("Audit", back_populates="snapshot")
