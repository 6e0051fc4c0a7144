"""
Audit lifecycle manager.

    DRAFT -> PLANNED -> IN_PROGRESS -> COMPLETED

Linear, no backward edges, COMPLETED is terminal. PLANNED and IN_PROGRESS are
optional: an audit may be signed straight from DRAFT or PLANNED, which is how
the report page behaves today. Signing locks the audit and freezes a
compliance snapshot in the same transaction.

Every function takes the request's SQLAlchemy session and the acting user,
and either commits a complete change or raises a WorkflowError with nothing
written.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from auditflow.models.audit import Audit, AuditControl
from auditflow.models.enums import AuditStatus, AuditType, ReviewStatus
from auditflow.models.organization import Control
from auditflow.workflow.errors import (
    AuditLockedError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from auditflow.workflow.guard import Action, Actor, require
from auditflow.workflow.history import record_event
from auditflow.workflow.lock import ensure_unlocked
from auditflow.workflow.snapshot import capture_snapshot, report_metrics

logger = logging.getLogger(__name__)

STARTABLE = (AuditStatus.DRAFT.value, AuditStatus.PLANNED.value)
SIGNABLE = (AuditStatus.DRAFT.value, AuditStatus.PLANNED.value, AuditStatus.IN_PROGRESS.value)

REPORT_FIELDS = frozenset({"executive_summary", "audit_conclusion", "signed_document_ref"})
EDITABLE_FIELDS = frozenset({
    "name", "framework_name", "start_date", "end_date", "period_start", "period_end",
    "assigned_auditor_id", "external_auditor_email",
})


def _now() -> datetime:
    return datetime.now(timezone.utc)


def coerce_enum(enum_cls, value: Any, field: str):
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(f"{field} must be one of: {allowed}", field=field) from None


def _clean(text: Optional[str]) -> Optional[str]:
    if text is None:
        return None
    text = text.strip()
    return text or None


def _check_auditor(assigned_auditor_id: Optional[str], external_auditor_email: Optional[str]) -> None:
    if assigned_auditor_id and external_auditor_email:
        raise ValidationError(
            "Assign either an internal auditor or an external auditor email, not both",
            field="assigned_auditor_id",
        )
    if external_auditor_email and "@" not in external_auditor_email:
        raise ValidationError("external_auditor_email is not an email address", field="external_auditor_email")


def _check_dates(start: Optional[date], end: Optional[date], field: str = "end_date") -> None:
    if start and end and end < start:
        raise ValidationError(f"{field} is before its start date", field=field)


def load_audit(db: Session, actor: Actor, audit_id: str) -> Audit:
    # populate_existing: every request decides on the row as stored, not a cached copy
    audit = (
        db.query(Audit)
        .populate_existing()
        .filter(Audit.id == audit_id)
        .first()
    )
    # another organization's audit is reported exactly like a missing one
    if audit is None or audit.organization_id != actor.organization_id:
        raise NotFoundError("audit", audit_id)
    return audit


def _current_status(db: Session, audit_id: str) -> str:
    return db.query(Audit.status).filter(Audit.id == audit_id).scalar() or "UNKNOWN"


def _resolve_scope(db: Session, actor: Actor, control_ids: Iterable[str], all_controls: bool) -> List[Control]:
    org_controls = db.query(Control).filter(Control.organization_id == actor.organization_id)
    if all_controls:
        return org_controls.order_by(Control.iso_reference).all()

    wanted = list(dict.fromkeys(control_ids))  # de-dup, keep order
    if not wanted:
        raise ValidationError("Audit scope is empty: select controls or use all controls", field="control_ids")

    found = {c.id: c for c in org_controls.filter(Control.id.in_(wanted)).all()}
    for cid in wanted:
        if cid not in found:
            raise NotFoundError("control", cid)
    return [found[cid] for cid in wanted]


def create_audit(
    db: Session,
    actor: Actor,
    *,
    name: Optional[str],
    type: Any,
    start_date: Optional[date],
    end_date: Optional[date] = None,
    control_ids: Optional[Iterable[str]] = None,
    all_controls: bool = False,
    assigned_auditor_id: Optional[str] = None,
    external_auditor_email: Optional[str] = None,
    framework_name: Optional[str] = None,
    period_start: Optional[date] = None,
    period_end: Optional[date] = None,
) -> Audit:
    require(actor, Action.CREATE_AUDIT)

    name = _clean(name)
    if not name:
        raise ValidationError("Audit name is required", field="name")
    if start_date is None:
        raise ValidationError("Audit start date is required", field="start_date")
    audit_type = coerce_enum(AuditType, type, "type")
    assigned_auditor_id = _clean(assigned_auditor_id)
    external_auditor_email = _clean(external_auditor_email)
    _check_auditor(assigned_auditor_id, external_auditor_email)
    _check_dates(start_date, end_date)
    _check_dates(period_start, period_end, field="period_end")

    controls = _resolve_scope(db, actor, control_ids or [], all_controls)

    audit = Audit(
        organization_id=actor.organization_id,
        name=name,
        type=audit_type.value,
        framework_name=_clean(framework_name),
        all_controls=bool(all_controls),
        status=AuditStatus.DRAFT.value,
        start_date=start_date,
        end_date=end_date,
        period_start=period_start,
        period_end=period_end,
        assigned_auditor_id=assigned_auditor_id,
        external_auditor_email=external_auditor_email,
        owner_id=actor.user_id,
        is_locked=False,
    )
    try:
        db.add(audit)
        db.flush()  # assigns audit.id for the join rows
        for control in controls:
            db.add(AuditControl(
                audit_id=audit.id,
                control_id=control.id,
                organization_id=actor.organization_id,
                review_status=ReviewStatus.PENDING.value,
            ))
        record_event(
            db, organization_id=audit.organization_id, entity_type="audit", entity_id=audit.id,
            audit_id=audit.id, action="create", actor_id=actor.user_id, to_status=audit.status,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(audit)
    logger.info("audit created: id=%s org=%s controls=%d by=%s", audit.id, audit.organization_id, len(controls), actor.user_id)
    return audit


def _transition(
    db: Session,
    actor: Actor,
    audit: Audit,
    *,
    allowed_from: tuple,
    to_status: AuditStatus,
    action: str,
    extra: Optional[Dict[str, Any]] = None,
) -> None:
    """Compare-and-swap on status: the UPDATE only matches while the row is still in allowed_from."""
    from_status = audit.status
    values: Dict[str, Any] = {"status": to_status.value}
    values.update(extra or {})
    matched = (
        db.query(Audit)
        .filter(
            Audit.id == audit.id,
            Audit.status.in_(allowed_from),
            Audit.is_locked.is_(False),
        )
        .update(values, synchronize_session=False)
    )
    if matched != 1:
        db.rollback()
        current = _current_status(db, audit.id)
        logger.warning("lost status race on audit %s: wanted %s, row is %s", audit.id, action, current)
        raise InvalidTransitionError("audit", audit.id, current, action)
    record_event(
        db, organization_id=audit.organization_id, entity_type="audit", entity_id=audit.id,
        audit_id=audit.id, action=action, actor_id=actor.user_id,
        from_status=from_status, to_status=to_status.value,
    )


def plan_audit(db: Session, actor: Actor, audit_id: str) -> Audit:
    audit = load_audit(db, actor, audit_id)
    require(actor, Action.PLAN_AUDIT, audit)
    if audit.status != AuditStatus.DRAFT:
        raise InvalidTransitionError("audit", audit.id, audit.status, "plan")
    try:
        _transition(db, actor, audit, allowed_from=(AuditStatus.DRAFT.value,), to_status=AuditStatus.PLANNED, action="plan")
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(audit)
    logger.info("audit planned: id=%s by=%s", audit.id, actor.user_id)
    return audit


def start_audit(db: Session, actor: Actor, audit_id: str) -> Audit:
    audit = load_audit(db, actor, audit_id)
    require(actor, Action.START_AUDIT, audit)
    if audit.status not in STARTABLE:
        raise InvalidTransitionError("audit", audit.id, audit.status, "start")
    try:
        _transition(db, actor, audit, allowed_from=STARTABLE, to_status=AuditStatus.IN_PROGRESS, action="start")
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(audit)
    logger.info("audit started: id=%s by=%s", audit.id, actor.user_id)
    return audit


def _report_values(changes: Dict[str, Any]) -> Dict[str, Any]:
    unknown = set(changes) - REPORT_FIELDS
    if unknown:
        raise ValidationError(f"Unknown report fields: {', '.join(sorted(unknown))}", field=sorted(unknown)[0])
    return {k: (v.strip() or None) if isinstance(v, str) else v for k, v in changes.items()}


def update_audit(db: Session, actor: Actor, audit_id: str, changes: Dict[str, Any]) -> Audit:
    """Edit schedule, name or auditor assignment. Scope is fixed at creation."""
    audit = load_audit(db, actor, audit_id)
    ensure_unlocked(audit)
    require(actor, Action.UPDATE_AUDIT, audit)

    unknown = set(changes) - EDITABLE_FIELDS
    if unknown:
        raise ValidationError(f"Fields not editable: {', '.join(sorted(unknown))}", field=sorted(unknown)[0])
    if "name" in changes and not _clean(changes["name"]):
        raise ValidationError("Audit name is required", field="name")
    if "start_date" in changes and changes["start_date"] is None:
        raise ValidationError("Audit start date is required", field="start_date")

    merged = {f: changes.get(f, getattr(audit, f)) for f in EDITABLE_FIELDS}
    # switching auditor kind clears the other one
    if _clean(changes.get("assigned_auditor_id")) and "external_auditor_email" not in changes:
        merged["external_auditor_email"] = None
    if _clean(changes.get("external_auditor_email")) and "assigned_auditor_id" not in changes:
        merged["assigned_auditor_id"] = None
    merged["name"] = _clean(merged["name"])
    merged["framework_name"] = _clean(merged["framework_name"])
    merged["assigned_auditor_id"] = _clean(merged["assigned_auditor_id"])
    merged["external_auditor_email"] = _clean(merged["external_auditor_email"])
    _check_auditor(merged["assigned_auditor_id"], merged["external_auditor_email"])
    _check_dates(merged["start_date"], merged["end_date"])
    _check_dates(merged["period_start"], merged["period_end"], field="period_end")

    try:
        matched = (
            db.query(Audit)
            .filter(Audit.id == audit.id, Audit.is_locked.is_(False))
            .update(merged, synchronize_session=False)
        )
        if matched != 1:
            raise AuditLockedError(audit.id)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(audit)
    logger.info("audit updated: id=%s fields=%s by=%s", audit.id, sorted(changes), actor.user_id)
    return audit


def update_report(db: Session, actor: Actor, audit_id: str, changes: Dict[str, Any]) -> Audit:
    """Save the final-report draft (summary, conclusion, signed document reference)."""
    audit = load_audit(db, actor, audit_id)
    ensure_unlocked(audit)
    require(actor, Action.UPDATE_REPORT, audit)
    values = _report_values(changes)
    if not values:
        return audit
    try:
        matched = (
            db.query(Audit)
            .filter(Audit.id == audit.id, Audit.is_locked.is_(False))
            .update(values, synchronize_session=False)
        )
        if matched != 1:
            raise AuditLockedError(audit.id)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(audit)
    return audit


def sign_and_complete_audit(
    db: Session,
    actor: Actor,
    audit_id: str,
    report: Optional[Dict[str, Any]] = None,
) -> Audit:
    """Persist report edits, lock the audit, capture the snapshot. One transaction, at most once."""
    audit = load_audit(db, actor, audit_id)
    require(actor, Action.SIGN_AUDIT, audit)
    if audit.status not in SIGNABLE or audit.is_locked:
        raise InvalidTransitionError("audit", audit.id, audit.status, "sign and complete")

    values = _report_values(report or {})
    now = _now()
    values.update({
        "is_locked": True,
        "closed_at": now,
        "signed_at": now,
        "signed_by_id": actor.user_id,
    })
    try:
        _transition(db, actor, audit, allowed_from=SIGNABLE, to_status=AuditStatus.COMPLETED,
                    action="sign and complete", extra=values)
        capture_snapshot(db, audit, now)
        db.commit()
    except IntegrityError:
        # unique(audit_id) on the snapshot: someone else captured it first
        db.rollback()
        raise InvalidTransitionError("audit", audit.id, AuditStatus.COMPLETED.value, "sign and complete") from None
    except Exception:
        db.rollback()
        raise
    db.refresh(audit)
    logger.info("audit signed and locked: id=%s by=%s", audit.id, actor.user_id)
    return audit


def list_audits(
    db: Session,
    actor: Actor,
    status: Optional[str] = None,
    type: Optional[str] = None,
    search: Optional[str] = None,
) -> List[Audit]:
    q = db.query(Audit).filter(Audit.organization_id == actor.organization_id)
    if status:
        q = q.filter(Audit.status == coerce_enum(AuditStatus, status, "status").value)
    if type:
        q = q.filter(Audit.type == coerce_enum(AuditType, type, "type").value)
    if search:
        q = q.filter(Audit.name.ilike(f"%{search.strip()}%"))
    return q.order_by(Audit.created_at.desc()).all()


def get_audit(db: Session, actor: Actor, audit_id: str) -> Audit:
    audit = load_audit(db, actor, audit_id)
    require(actor, Action.VIEW, audit)
    return audit


def list_audit_controls(db: Session, actor: Actor, audit_id: str) -> List[AuditControl]:
    audit = get_audit(db, actor, audit_id)
    return (
        db.query(AuditControl)
        .join(Control, Control.id == AuditControl.control_id)
        .filter(AuditControl.audit_id == audit.id)
        .order_by(Control.iso_reference)
        .all()
    )


def set_audit_control_review(
    db: Session,
    actor: Actor,
    audit_id: str,
    control_id: str,
    review_status: Optional[str] = None,
    notes: Optional[str] = None,
) -> AuditControl:
    """Last-write-wins review of one in-scope control. No transition rules beyond the lock."""
    audit = load_audit(db, actor, audit_id)
    ensure_unlocked(audit)
    require(actor, Action.REVIEW_CONTROL, audit)

    row = (
        db.query(AuditControl)
        .populate_existing()
        .filter(AuditControl.audit_id == audit.id, AuditControl.control_id == control_id)
        .first()
    )
    if row is None:
        raise NotFoundError("audit control", control_id)
    if review_status is None and notes is None:
        raise ValidationError("Nothing to update: give review_status and/or notes", field="review_status")

    values: Dict[str, Any] = {"reviewed_by": actor.user_id, "reviewed_at": _now()}
    if review_status is not None:
        values["review_status"] = coerce_enum(ReviewStatus, review_status, "review_status").value
    if notes is not None:
        values["notes"] = notes

    unlocked = select(Audit.id).where(Audit.id == audit.id, Audit.is_locked.is_(False))
    try:
        # the row write and the parent lock check are one statement
        matched = (
            db.query(AuditControl)
            .filter(AuditControl.id == row.id, AuditControl.audit_id.in_(unlocked))
            .update(values, synchronize_session=False)
        )
        if matched != 1:
            raise AuditLockedError(audit.id)
        record_event(
            db, organization_id=audit.organization_id, entity_type="audit_control", entity_id=row.id,
            audit_id=audit.id, action="review", actor_id=actor.user_id,
            from_status=row.review_status, to_status=values.get("review_status", row.review_status),
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(row)
    logger.info("control reviewed: audit=%s control=%s status=%s by=%s", audit.id, control_id, row.review_status, actor.user_id)
    return row


def get_audit_report(db: Session, actor: Actor, audit_id: str) -> Dict[str, Any]:
    """Report read model: frozen snapshot for a completed audit, live aggregates before that."""
    audit = get_audit(db, actor, audit_id)
    metrics = report_metrics(db, audit)
    return {"audit": audit, "metrics": metrics}
