from __future__ import annotations
from sqlalchemy import Column, String, Date, DateTime, Text, ForeignKey, Index
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
import uuid

from auditflow.models.db import Base
from auditflow.models.enums import FindingStatus


# A gap raised against one in-scope control of an audit. Carries its own remediation
# lifecycle; severity is set once at creation.
class Finding(Base):
    __tablename__ = "findings"
    __table_args__ = (
        Index("ix_findings_org", "organization_id"),
        Index("ix_findings_audit", "audit_id"),
        Index("ix_findings_assignee", "assigned_to"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    organization_id = Column(String, nullable=False)
    audit_id = Column(String, ForeignKey("audits.id"), nullable=False)
    control_id = Column(String, ForeignKey("controls.id"), nullable=False)

    severity = Column(String, nullable=False)
    description = Column(Text, nullable=False)
    status = Column(String, nullable=False, default=FindingStatus.OPEN.value)

    assigned_to = Column(String, nullable=True)
    remediation_plan = Column(Text, nullable=True)
    due_date = Column(Date, nullable=True)
    evidence_url = Column(String, nullable=True)

    created_by = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    closed_at = Column(DateTime(timezone=True), nullable=True)  # set once, on -> CLOSED

    audit = relationship("Audit")
    control = relationship("Control")
