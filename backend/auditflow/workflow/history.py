from __future__ import annotations
from typing import List, Optional

from sqlalchemy.orm import Session

from auditflow.models.event import WorkflowEvent


def record_event(
    db: Session,
    *,
    organization_id: str,
    entity_type: str,
    entity_id: str,
    audit_id: str,
    action: str,
    actor_id: str,
    from_status: Optional[str] = None,
    to_status: Optional[str] = None,
) -> WorkflowEvent:
    # staged only; committed together with the transition it records
    ev = WorkflowEvent(
        organization_id=organization_id,
        entity_type=entity_type,
        entity_id=entity_id,
        audit_id=audit_id,
        action=action,
        from_status=from_status,
        to_status=to_status,
        actor_id=actor_id,
    )
    db.add(ev)
    return ev


def entity_history(db: Session, entity_type: str, entity_id: str) -> List[WorkflowEvent]:
    return (
        db.query(WorkflowEvent)
        .filter(WorkflowEvent.entity_type == entity_type, WorkflowEvent.entity_id == entity_id)
        .order_by(WorkflowEvent.id.asc())
        .all()
    )
