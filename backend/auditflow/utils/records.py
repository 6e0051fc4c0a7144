from __future__ import annotations
from datetime import date, datetime
from typing import Any, Dict, Optional

from auditflow.models.audit import Audit, AuditControl
from auditflow.models.event import WorkflowEvent
from auditflow.models.finding import Finding
from auditflow.workflow.finding_workflow import is_overdue
from auditflow.workflow.snapshot import snapshot_metrics

# ORM rows -> plain dicts for JSON responses. Dates go out as ISO strings.


def _iso(value: Optional[date | datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def audit_to_dict(a: Audit, include_controls: bool = False) -> Dict[str, Any]:
    out: Dict[str, Any] = {
        "id": a.id,
        "organization_id": a.organization_id,
        "name": a.name,
        "type": a.type,
        "framework_name": a.framework_name,
        "all_controls": a.all_controls,
        "status": a.status,
        "start_date": _iso(a.start_date),
        "end_date": _iso(a.end_date),
        "period_start": _iso(a.period_start),
        "period_end": _iso(a.period_end),
        "assigned_auditor_id": a.assigned_auditor_id,
        "external_auditor_email": a.external_auditor_email,
        "owner_id": a.owner_id,
        "executive_summary": a.executive_summary,
        "audit_conclusion": a.audit_conclusion,
        "signed_document_ref": a.signed_document_ref,
        "signed_at": _iso(a.signed_at),
        "signed_by_id": a.signed_by_id,
        "is_locked": a.is_locked,
        "closed_at": _iso(a.closed_at),
        "created_at": _iso(a.created_at),
        # frozen at sign time; None until the audit is signed
        "snapshot": snapshot_metrics(a.snapshot) if a.snapshot is not None else None,
    }
    if include_controls:
        out["audit_controls"] = [audit_control_to_dict(ac) for ac in a.audit_controls]
    return out


def audit_control_to_dict(ac: AuditControl) -> Dict[str, Any]:
    control = ac.control
    return {
        "id": ac.id,
        "audit_id": ac.audit_id,
        "control_id": ac.control_id,
        "review_status": ac.review_status,
        "notes": ac.notes,
        "reviewed_by": ac.reviewed_by,
        "reviewed_at": _iso(ac.reviewed_at),
        "control": {
            "id": control.id,
            "iso_reference": control.iso_reference,
            "title": control.title,
            "status": control.status,
        } if control is not None else None,
    }


def finding_to_dict(f: Finding, today: Optional[date] = None) -> Dict[str, Any]:
    return {
        "id": f.id,
        "organization_id": f.organization_id,
        "audit_id": f.audit_id,
        "control_id": f.control_id,
        "severity": f.severity,
        "status": f.status,
        "description": f.description,
        "assigned_to": f.assigned_to,
        "remediation_plan": f.remediation_plan,
        "due_date": _iso(f.due_date),
        "evidence_url": f.evidence_url,
        "created_by": f.created_by,
        "created_at": _iso(f.created_at),
        "closed_at": _iso(f.closed_at),
        "overdue": is_overdue(f, today),  # derived at read time
    }


def event_to_dict(e: WorkflowEvent) -> Dict[str, Any]:
    return {
        "id": e.id,
        "entity_type": e.entity_type,
        "entity_id": e.entity_id,
        "audit_id": e.audit_id,
        "action": e.action,
        "from_status": e.from_status,
        "to_status": e.to_status,
        "actor_id": e.actor_id,
        "created_at": _iso(e.created_at),
    }
