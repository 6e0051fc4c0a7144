# Audit lifecycle endpoints - thin wrappers over auditflow.workflow.audit_lifecycle.
# Every handler resolves the caller into an Actor and hands it to the engine;
# workflow errors are rendered by the handler registered in main.py.

from __future__ import annotations
from datetime import date
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from auditflow.deps_auth import get_actor
from auditflow.models.db import get_db
from auditflow.utils.records import audit_control_to_dict, audit_to_dict
from auditflow.workflow import audit_lifecycle as lifecycle
from auditflow.workflow.guard import Actor

router = APIRouter()


class CreateAuditRequest(BaseModel):
    name: Optional[str] = None
    type: Optional[str] = None
    framework_name: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    period_start: Optional[date] = None
    period_end: Optional[date] = None
    assigned_auditor_id: Optional[str] = None
    external_auditor_email: Optional[str] = None
    control_ids: List[str] = Field(default_factory=list)
    all_controls: bool = False


class UpdateAuditRequest(BaseModel):
    name: Optional[str] = None
    framework_name: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    period_start: Optional[date] = None
    period_end: Optional[date] = None
    assigned_auditor_id: Optional[str] = None
    external_auditor_email: Optional[str] = None


class ReportFields(BaseModel):
    executive_summary: Optional[str] = None
    audit_conclusion: Optional[str] = None
    signed_document_ref: Optional[str] = None


class ControlReviewRequest(BaseModel):
    review_status: Optional[str] = None
    notes: Optional[str] = None


@router.post("", status_code=201)
def create_audit(req: CreateAuditRequest, actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    audit = lifecycle.create_audit(db, actor, **req.model_dump())
    return audit_to_dict(audit)


@router.get("")
def list_audits(
    status: Optional[str] = None,
    type: Optional[str] = None,
    search: Optional[str] = None,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    return [audit_to_dict(a) for a in lifecycle.list_audits(db, actor, status=status, type=type, search=search)]


@router.get("/{audit_id}")
def get_audit(audit_id: str, actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    return audit_to_dict(lifecycle.get_audit(db, actor, audit_id), include_controls=True)


@router.patch("/{audit_id}")
def update_audit(audit_id: str, req: UpdateAuditRequest, actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    # exclude_unset: only fields the client actually sent are edits; explicit nulls clear
    audit = lifecycle.update_audit(db, actor, audit_id, req.model_dump(exclude_unset=True))
    return audit_to_dict(audit)


@router.post("/{audit_id}/plan")
def plan_audit(audit_id: str, actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    return audit_to_dict(lifecycle.plan_audit(db, actor, audit_id))


@router.post("/{audit_id}/start")
def start_audit(audit_id: str, actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    return audit_to_dict(lifecycle.start_audit(db, actor, audit_id))


@router.get("/{audit_id}/controls")
def list_audit_controls(audit_id: str, actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    return [audit_control_to_dict(ac) for ac in lifecycle.list_audit_controls(db, actor, audit_id)]


@router.patch("/{audit_id}/controls/{control_id}")
def review_control(
    audit_id: str,
    control_id: str,
    req: ControlReviewRequest,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    row = lifecycle.set_audit_control_review(
        db, actor, audit_id, control_id, review_status=req.review_status, notes=req.notes,
    )
    return audit_control_to_dict(row)


@router.get("/{audit_id}/report")
def get_report(audit_id: str, actor: Actor = Depends(get_actor), db: Session = Depends(get_db)) -> Dict[str, Any]:
    report = lifecycle.get_audit_report(db, actor, audit_id)
    return {"audit": audit_to_dict(report["audit"]), "metrics": report["metrics"]}


@router.patch("/{audit_id}/report")
def update_report(audit_id: str, req: ReportFields, actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    audit = lifecycle.update_report(db, actor, audit_id, req.model_dump(exclude_unset=True))
    return audit_to_dict(audit)


@router.post("/{audit_id}/sign-and-complete")
def sign_and_complete(
    audit_id: str,
    req: Optional[ReportFields] = None,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    report = req.model_dump(exclude_unset=True) if req else {}
    audit = lifecycle.sign_and_complete_audit(db, actor, audit_id, report)
    return audit_to_dict(audit)
