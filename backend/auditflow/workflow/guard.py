"""
Authorization guard for audit and finding transitions.

Pure decisions over an explicit actor context: no session, no database, no
cached user. Every transition in the engine calls `require` before it writes,
regardless of what the client chose to show the user.

Two tiers:
- audit authority: SUPER_ADMIN, ORG_ADMIN, SECURITY_OWNER, or the AUDITOR
  assigned to this audit (internal id or external email)
- finding actor: the finding's assignee, or audit authority

Accept / reject need audit authority, and are refused to the finding's assignee even
when they hold that authority: nobody closes their own fix.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from auditflow.models.enums import Role
from auditflow.workflow.errors import PermissionDeniedError

logger = logging.getLogger(__name__)

ADMIN_ROLES = frozenset({Role.SUPER_ADMIN, Role.ORG_ADMIN, Role.SECURITY_OWNER})


@dataclass(frozen=True)
class Actor:
    user_id: str
    organization_id: str
    role: Role
    email: Optional[str] = None


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: str = ""

    def __bool__(self) -> bool:
        return self.allowed


class Action(str, Enum):
    CREATE_AUDIT = "create audit"
    PLAN_AUDIT = "plan audit"
    UPDATE_AUDIT = "update audit"
    START_AUDIT = "start audit"
    SIGN_AUDIT = "sign and complete audit"
    UPDATE_REPORT = "update audit report"
    REVIEW_CONTROL = "review audit control"
    CREATE_FINDING = "create finding"
    DELETE_FINDING = "delete finding"
    START_REMEDIATION = "start remediation"
    SUBMIT_FOR_REVIEW = "submit finding for review"
    ACCEPT_FINDING = "accept finding"
    REJECT_FINDING = "reject finding"
    UPDATE_FINDING = "update finding"
    REASSIGN_FINDING = "reassign finding"
    ATTACH_EVIDENCE = "attach evidence"
    VIEW = "view"


SCHEDULING_ACTIONS = frozenset({Action.CREATE_AUDIT, Action.PLAN_AUDIT, Action.UPDATE_AUDIT})

AUTHORITY_ACTIONS = frozenset({
    Action.START_AUDIT,
    Action.SIGN_AUDIT,
    Action.UPDATE_REPORT,
    Action.REVIEW_CONTROL,
    Action.CREATE_FINDING,
    Action.DELETE_FINDING,
    Action.ACCEPT_FINDING,
    Action.REJECT_FINDING,
    Action.REASSIGN_FINDING,
})

# the assignee of a finding may never review their own fix
REVIEW_ACTIONS = frozenset({Action.ACCEPT_FINDING, Action.REJECT_FINDING})

# assignee OR audit authority
FINDING_ACTOR_ACTIONS = frozenset({
    Action.START_REMEDIATION,
    Action.SUBMIT_FOR_REVIEW,
    Action.UPDATE_FINDING,
    Action.ATTACH_EVIDENCE,
})


def is_admin(actor: Actor) -> bool:
    return actor.role in ADMIN_ROLES


def is_assigned_auditor(actor: Actor, audit: Any) -> bool:
    if actor.role != Role.AUDITOR:
        return False
    if audit.assigned_auditor_id and actor.user_id == audit.assigned_auditor_id:
        return True
    email = (actor.email or "").strip().lower()
    return bool(email) and email == (audit.external_auditor_email or "").strip().lower()


def has_audit_authority(actor: Actor, audit: Any) -> bool:
    return is_admin(actor) or is_assigned_auditor(actor, audit)


def can_schedule_audits(actor: Actor) -> bool:
    return is_admin(actor)


def is_finding_assignee(actor: Actor, finding: Any) -> bool:
    return bool(finding.assigned_to) and finding.assigned_to == actor.user_id


def decide(actor: Actor, action: Action, audit: Any = None, finding: Any = None) -> Decision:
    """Total decision function: returns a Decision for every (actor, action) pair."""
    if audit is not None and audit.organization_id != actor.organization_id:
        return Decision(False, "outside the actor's organization")

    if action == Action.VIEW:
        return Decision(True)

    if action in SCHEDULING_ACTIONS:
        if can_schedule_audits(actor):
            return Decision(True)
        return Decision(False, "audit scheduling requires an admin or security owner role")

    if audit is None:
        return Decision(False, "no audit context")

    if action in REVIEW_ACTIONS:
        if finding is None:
            return Decision(False, "no finding context")
        if is_finding_assignee(actor, finding):
            return Decision(False, "the assignee cannot review their own remediation")

    if action in AUTHORITY_ACTIONS:
        if has_audit_authority(actor, audit):
            return Decision(True)
        return Decision(False, "requires audit authority (admin, security owner or the assigned auditor)")

    if action in FINDING_ACTOR_ACTIONS:
        if finding is None:
            return Decision(False, "no finding context")
        if is_finding_assignee(actor, finding) or has_audit_authority(actor, audit):
            return Decision(True)
        return Decision(False, "only the assignee or audit authority may do this")

    return Decision(False, f"unknown action {action!r}")


def require(actor: Actor, action: Action, audit: Any = None, finding: Any = None) -> None:
    decision = decide(actor, action, audit=audit, finding=finding)
    if not decision.allowed:
        logger.warning(
            "permission denied: actor=%s role=%s action=%s audit=%s finding=%s reason=%s",
            actor.user_id, actor.role.value, action.value,
            getattr(audit, "id", None), getattr(finding, "id", None), decision.reason,
        )
        raise PermissionDeniedError(action.value, decision.reason)
