from __future__ import annotations
from datetime import datetime, timezone
import uuid

from sqlalchemy import Column, String, DateTime, Index

from auditflow.models.db import Base

# Organization-level catalogue rows the workflow engine reads but never owns.
# Controls are selected into audit scope; risks are only counted at snapshot time.


class Control(Base):
    __tablename__ = "controls"
    __table_args__ = (Index("ix_controls_org", "organization_id"),)

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    organization_id = Column(String, nullable=False)

    iso_reference = Column(String, nullable=False)  # e.g. "A.5.1"
    title = Column(String, nullable=False)
    status = Column(String, nullable=False, default="NOT_IMPLEMENTED")

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))


class Risk(Base):
    __tablename__ = "risks"
    __table_args__ = (Index("ix_risks_org", "organization_id"),)

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    organization_id = Column(String, nullable=False)

    title = Column(String, nullable=False)
    level = Column(String, nullable=False)  # RiskLevel value
    status = Column(String, nullable=False, default="OPEN")

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
