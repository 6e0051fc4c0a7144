"""
Finding remediation workflow.

    OPEN -> IN_REMEDIATION -> READY_FOR_REVIEW -> CLOSED
                                      |
                                      +--> OPEN   (reject)

Closed is terminal and there is no other backward edge. Every write checks,
in order: the finding exists in the caller's organization, its audit is not
locked, the guard allows the actor, and the edge is in TRANSITIONS. The status
write itself is a compare-and-swap on the prior status, so two findings never
need to coordinate and a single finding can't be moved twice from one state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from auditflow.models.audit import Audit, AuditControl
from auditflow.models.enums import FindingSeverity, FindingStatus
from auditflow.models.event import WorkflowEvent
from auditflow.models.finding import Finding
from auditflow.workflow.audit_lifecycle import coerce_enum, load_audit
from auditflow.workflow.errors import (
    AuditLockedError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from auditflow.workflow.guard import Action, Actor, require
from auditflow.workflow.history import entity_history, record_event
from auditflow.workflow.lock import ensure_audit_unlocked, ensure_unlocked

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Transition:
    name: str
    action: Action
    source: FindingStatus
    target: FindingStatus


TRANSITIONS: Dict[str, Transition] = {
    t.name: t
    for t in (
        Transition("start remediation", Action.START_REMEDIATION, FindingStatus.OPEN, FindingStatus.IN_REMEDIATION),
        Transition("submit for review", Action.SUBMIT_FOR_REVIEW, FindingStatus.IN_REMEDIATION, FindingStatus.READY_FOR_REVIEW),
        Transition("accept", Action.ACCEPT_FINDING, FindingStatus.READY_FOR_REVIEW, FindingStatus.CLOSED),
        Transition("reject", Action.REJECT_FINDING, FindingStatus.READY_FOR_REVIEW, FindingStatus.OPEN),
    )
}

UPDATABLE_FIELDS = frozenset({"description", "remediation_plan", "due_date", "evidence_url", "assigned_to"})


def _now() -> datetime:
    return datetime.now(timezone.utc)


def is_overdue(finding: Any, today: Optional[date] = None) -> bool:
    """Read-time derivation, never stored: past due date and not yet closed."""
    if not finding.due_date or finding.status == FindingStatus.CLOSED:
        return False
    today = today or datetime.now(timezone.utc).date()
    return finding.due_date < today


def _unlocked(audit_id: str):
    return select(Audit.id).where(Audit.id == audit_id, Audit.is_locked.is_(False))


def load_finding(db: Session, actor: Actor, finding_id: str) -> Finding:
    finding = (
        db.query(Finding)
        .populate_existing()
        .filter(Finding.id == finding_id)
        .first()
    )
    if finding is None or finding.organization_id != actor.organization_id:
        raise NotFoundError("finding", finding_id)
    return finding


def _load_for_write(db: Session, actor: Actor, finding_id: str):
    finding = load_finding(db, actor, finding_id)
    audit = load_audit(db, actor, finding.audit_id)
    ensure_unlocked(audit)
    return finding, audit


def create_finding(
    db: Session,
    actor: Actor,
    audit_id: str,
    control_id: str,
    severity: Any,
    description: Optional[str],
    assigned_to: Optional[str] = None,
    due_date: Optional[date] = None,
    remediation_plan: Optional[str] = None,
) -> Finding:
    audit = load_audit(db, actor, audit_id)
    ensure_unlocked(audit)
    require(actor, Action.CREATE_FINDING, audit)

    in_scope = (
        db.query(AuditControl.id)
        .filter(AuditControl.audit_id == audit.id, AuditControl.control_id == control_id)
        .first()
    )
    if in_scope is None:
        raise NotFoundError("audit control", control_id)
    sev = coerce_enum(FindingSeverity, severity, "severity")
    description = (description or "").strip()
    if not description:
        raise ValidationError("Finding description is required", field="description")

    finding = Finding(
        organization_id=audit.organization_id,
        audit_id=audit.id,
        control_id=control_id,
        severity=sev.value,
        description=description,
        status=FindingStatus.OPEN.value,
        assigned_to=(assigned_to or "").strip() or None,
        due_date=due_date,
        remediation_plan=(remediation_plan or "").strip() or None,
        created_by=actor.user_id,
    )
    try:
        db.add(finding)
        db.flush()
        # re-check inside the transaction: a sign may have landed since load_audit
        ensure_audit_unlocked(db, audit.id)
        record_event(
            db, organization_id=finding.organization_id, entity_type="finding", entity_id=finding.id,
            audit_id=audit.id, action="create", actor_id=actor.user_id, to_status=finding.status,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(finding)
    logger.info("finding created: id=%s audit=%s control=%s severity=%s by=%s",
                finding.id, audit.id, control_id, finding.severity, actor.user_id)
    return finding


def transition_finding(db: Session, actor: Actor, finding_id: str, name: str) -> Finding:
    transition = TRANSITIONS[name]
    finding, audit = _load_for_write(db, actor, finding_id)
    require(actor, transition.action, audit, finding)
    if finding.status != transition.source:
        raise InvalidTransitionError("finding", finding.id, finding.status, name)

    values: Dict[str, Any] = {"status": transition.target.value}
    if transition.target == FindingStatus.CLOSED:
        values["closed_at"] = _now()

    try:
        matched = (
            db.query(Finding)
            .filter(
                Finding.id == finding.id,
                Finding.status == transition.source.value,
                Finding.audit_id.in_(_unlocked(audit.id)),
            )
            .update(values, synchronize_session=False)
        )
        if matched != 1:
            db.rollback()
            ensure_audit_unlocked(db, audit.id)
            current = db.query(Finding.status).filter(Finding.id == finding.id).scalar()
            raise InvalidTransitionError("finding", finding.id, current, name)
        record_event(
            db, organization_id=finding.organization_id, entity_type="finding", entity_id=finding.id,
            audit_id=audit.id, action=name, actor_id=actor.user_id,
            from_status=transition.source.value, to_status=transition.target.value,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(finding)
    logger.info("finding %s: id=%s %s -> %s by=%s", name, finding.id,
                transition.source.value, transition.target.value, actor.user_id)
    return finding


def start_remediation(db: Session, actor: Actor, finding_id: str) -> Finding:
    return transition_finding(db, actor, finding_id, "start remediation")


def submit_for_review(db: Session, actor: Actor, finding_id: str) -> Finding:
    return transition_finding(db, actor, finding_id, "submit for review")


def accept_finding(db: Session, actor: Actor, finding_id: str) -> Finding:
    return transition_finding(db, actor, finding_id, "accept")


def reject_finding(db: Session, actor: Actor, finding_id: str) -> Finding:
    return transition_finding(db, actor, finding_id, "reject")


def update_finding(db: Session, actor: Actor, finding_id: str, changes: Dict[str, Any]) -> Finding:
    """Description / plan / due date / evidence / assignee edits. Never touches status or severity."""
    finding, audit = _load_for_write(db, actor, finding_id)

    unknown = set(changes) - UPDATABLE_FIELDS
    if unknown:
        raise ValidationError(f"Fields not editable: {', '.join(sorted(unknown))}", field=sorted(unknown)[0])
    if "description" in changes and not (changes["description"] or "").strip():
        raise ValidationError("Finding description is required", field="description")

    action = Action.ATTACH_EVIDENCE if set(changes) == {"evidence_url"} else Action.UPDATE_FINDING
    require(actor, action, audit, finding)
    if "assigned_to" in changes and changes["assigned_to"] != finding.assigned_to:
        require(actor, Action.REASSIGN_FINDING, audit, finding)
    if finding.status == FindingStatus.CLOSED:
        raise InvalidTransitionError("finding", finding.id, finding.status, "update")
    if not changes:
        return finding

    values = {k: (v.strip() or None) if isinstance(v, str) else v for k, v in changes.items()}
    try:
        matched = (
            db.query(Finding)
            .filter(
                Finding.id == finding.id,
                Finding.status != FindingStatus.CLOSED.value,
                Finding.audit_id.in_(_unlocked(audit.id)),
            )
            .update(values, synchronize_session=False)
        )
        if matched != 1:
            db.rollback()
            ensure_audit_unlocked(db, audit.id)
            raise InvalidTransitionError("finding", finding.id, FindingStatus.CLOSED.value, "update")
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(finding)
    logger.info("finding updated: id=%s fields=%s by=%s", finding.id, sorted(values), actor.user_id)
    return finding


def attach_evidence(db: Session, actor: Actor, finding_id: str, evidence_url: Optional[str]) -> Finding:
    if not (evidence_url or "").strip():
        raise ValidationError("evidence_url is required", field="evidence_url")
    return update_finding(db, actor, finding_id, {"evidence_url": evidence_url})


def delete_finding(db: Session, actor: Actor, finding_id: str) -> None:
    finding, audit = _load_for_write(db, actor, finding_id)
    require(actor, Action.DELETE_FINDING, audit, finding)
    try:
        deleted = (
            db.query(Finding)
            .filter(Finding.id == finding.id, Finding.audit_id.in_(_unlocked(audit.id)))
            .delete(synchronize_session=False)
        )
        if deleted != 1:
            raise AuditLockedError(audit.id)
        record_event(
            db, organization_id=finding.organization_id, entity_type="finding", entity_id=finding.id,
            audit_id=audit.id, action="delete", actor_id=actor.user_id, from_status=finding.status,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info("finding deleted: id=%s audit=%s by=%s", finding_id, audit.id, actor.user_id)


def get_finding(db: Session, actor: Actor, finding_id: str) -> Finding:
    return load_finding(db, actor, finding_id)


def list_findings(
    db: Session,
    actor: Actor,
    severity: Optional[str] = None,
    status: Optional[str] = None,
    overdue: bool = False,
    control_id: Optional[str] = None,
    audit_id: Optional[str] = None,
    today: Optional[date] = None,
) -> List[Finding]:
    q = db.query(Finding).filter(Finding.organization_id == actor.organization_id)
    if severity:
        q = q.filter(Finding.severity == coerce_enum(FindingSeverity, severity, "severity").value)
    if status:
        q = q.filter(Finding.status == coerce_enum(FindingStatus, status, "status").value)
    if control_id:
        q = q.filter(Finding.control_id == control_id)
    if audit_id:
        q = q.filter(Finding.audit_id == audit_id)
    rows = q.order_by(Finding.created_at.desc()).all()
    if overdue:
        rows = [f for f in rows if is_overdue(f, today)]
    return rows


def my_tasks(db: Session, actor: Actor) -> List[Finding]:
    """Open work assigned to the caller."""
    return (
        db.query(Finding)
        .filter(
            Finding.organization_id == actor.organization_id,
            Finding.assigned_to == actor.user_id,
            Finding.status != FindingStatus.CLOSED.value,
        )
        .order_by(Finding.due_date.is_(None), Finding.due_date.asc(), Finding.created_at.asc())
        .all()
    )


def finding_history(db: Session, actor: Actor, finding_id: str) -> List[WorkflowEvent]:
    finding = load_finding(db, actor, finding_id)
    return entity_history(db, "finding", finding.id)