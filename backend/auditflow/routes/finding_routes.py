# Finding remediation endpoints. The transition endpoints take no body: the
# target state is fixed by the route, never by the client.

from __future__ import annotations
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel
from sqlalchemy.orm import Session

from auditflow.deps_auth import get_actor
from auditflow.models.db import get_db
from auditflow.utils.records import event_to_dict, finding_to_dict
from auditflow.workflow import finding_workflow as workflow
from auditflow.workflow.guard import Actor

router = APIRouter()


class CreateFindingRequest(BaseModel):
    audit_id: str
    control_id: str
    severity: Optional[str] = None
    description: Optional[str] = None
    assigned_to: Optional[str] = None
    due_date: Optional[date] = None
    remediation_plan: Optional[str] = None


class UpdateFindingRequest(BaseModel):
    description: Optional[str] = None
    remediation_plan: Optional[str] = None
    due_date: Optional[date] = None
    evidence_url: Optional[str] = None
    assigned_to: Optional[str] = None


class EvidenceRequest(BaseModel):
    evidence_url: Optional[str] = None


@router.post("", status_code=201)
def create_finding(req: CreateFindingRequest, actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    return finding_to_dict(workflow.create_finding(db, actor, **req.model_dump()))


@router.get("")
def list_findings(
    severity: Optional[str] = None,
    status: Optional[str] = None,
    overdue: bool = False,
    control_id: Optional[str] = None,
    audit_id: Optional[str] = None,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    rows = workflow.list_findings(
        db, actor, severity=severity, status=status, overdue=overdue, control_id=control_id, audit_id=audit_id,
    )
    return [finding_to_dict(f) for f in rows]


# declared before /{finding_id} so "my-tasks" is not read as an id
@router.get("/my-tasks")
def my_tasks(actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    return [finding_to_dict(f) for f in workflow.my_tasks(db, actor)]


@router.get("/{finding_id}")
def get_finding(finding_id: str, actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    return finding_to_dict(workflow.get_finding(db, actor, finding_id))


@router.patch("/{finding_id}")
def update_finding(finding_id: str, req: UpdateFindingRequest, actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    finding = workflow.update_finding(db, actor, finding_id, req.model_dump(exclude_unset=True))
    return finding_to_dict(finding)


@router.delete("/{finding_id}", status_code=204)
def delete_finding(finding_id: str, actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    workflow.delete_finding(db, actor, finding_id)
    return Response(status_code=204)


@router.post("/{finding_id}/start-remediation")
def start_remediation(finding_id: str, actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    return finding_to_dict(workflow.start_remediation(db, actor, finding_id))


@router.post("/{finding_id}/submit-review")
def submit_for_review(finding_id: str, actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    return finding_to_dict(workflow.submit_for_review(db, actor, finding_id))


@router.post("/{finding_id}/accept")
def accept(finding_id: str, actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    return finding_to_dict(workflow.accept_finding(db, actor, finding_id))


@router.post("/{finding_id}/reject")
def reject(finding_id: str, actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    return finding_to_dict(workflow.reject_finding(db, actor, finding_id))


@router.post("/{finding_id}/evidence")
def attach_evidence(finding_id: str, req: EvidenceRequest, actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    return finding_to_dict(workflow.attach_evidence(db, actor, finding_id, req.evidence_url))


@router.get("/{finding_id}/history")
def history(finding_id: str, actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    return [event_to_dict(e) for e in workflow.finding_history(db, actor, finding_id)]
