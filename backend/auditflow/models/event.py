from __future__ import annotations
from sqlalchemy import Column, String, DateTime, Integer, Index
from datetime import datetime, timezone

from auditflow.models.db import Base


# Append-only trail of workflow transitions. Rows are written in the same transaction
# as the state change they describe, so the trail never shows a transition that rolled back.
class WorkflowEvent(Base):
    __tablename__ = "workflow_events"
    __table_args__ = (
        Index("ix_events_entity", "entity_type", "entity_id"),
        Index("ix_events_audit", "audit_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    organization_id = Column(String, nullable=False)

    entity_type = Column(String, nullable=False)  # "audit" | "finding" | "audit_control"
    entity_id = Column(String, nullable=False)
    audit_id = Column(String, nullable=False)

    action = Column(String, nullable=False)
    from_status = Column(String, nullable=True)
    to_status = Column(String, nullable=True)
    actor_id = Column(String, nullable=False)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
