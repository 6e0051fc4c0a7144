from types import SimpleNamespace

import pytest

from auditflow.models.enums import Role
from auditflow.workflow.errors import PermissionDeniedError
from auditflow.workflow.guard import (
    Action,
    Actor,
    decide,
    has_audit_authority,
    is_assigned_auditor,
    require,
)


def make_audit(**kw):
    base = dict(id="aud-1", organization_id="org-1", assigned_auditor_id=None, external_auditor_email=None)
    base.update(kw)
    return SimpleNamespace(**base)


def make_finding(assigned_to="dev-1"):
    return SimpleNamespace(id="f-1", assigned_to=assigned_to)


def actor(role, user_id="u-1", email=None, org="org-1"):
    return Actor(user_id=user_id, organization_id=org, role=role, email=email)


@pytest.mark.parametrize("role", [Role.SUPER_ADMIN, Role.ORG_ADMIN, Role.SECURITY_OWNER])
def test_admin_tiers_hold_audit_authority(role):
    assert has_audit_authority(actor(role), make_audit())


@pytest.mark.parametrize("role", [Role.CONTRIBUTOR, Role.VIEWER])
def test_plain_roles_have_no_audit_authority(role):
    assert not has_audit_authority(actor(role), make_audit(assigned_auditor_id="u-1"))


def test_only_the_assigned_auditor_has_authority():
    audit = make_audit(assigned_auditor_id="auditor-1")
    assert has_audit_authority(actor(Role.AUDITOR, "auditor-1"), audit)
    assert not has_audit_authority(actor(Role.AUDITOR, "auditor-2"), audit)


def test_external_auditor_matched_by_email_case_insensitively():
    audit = make_audit(external_auditor_email="Lead@AuditFirm.com")
    assert is_assigned_auditor(actor(Role.AUDITOR, "ext-1", email="lead@auditfirm.com"), audit)
    assert not is_assigned_auditor(actor(Role.AUDITOR, "ext-1", email=None), audit)


def test_assignee_may_work_the_finding_but_not_accept_it():
    audit, finding = make_audit(), make_finding("dev-1")
    dev = actor(Role.CONTRIBUTOR, "dev-1")
    for action in (Action.START_REMEDIATION, Action.SUBMIT_FOR_REVIEW, Action.UPDATE_FINDING, Action.ATTACH_EVIDENCE):
        assert decide(dev, action, audit, finding).allowed
    for action in (Action.ACCEPT_FINDING, Action.REJECT_FINDING, Action.REASSIGN_FINDING):
        assert not decide(dev, action, audit, finding).allowed


def test_non_assignee_contributor_is_denied_finding_work():
    decision = decide(actor(Role.CONTRIBUTOR, "dev-2"), Action.START_REMEDIATION, make_audit(), make_finding("dev-1"))
    assert not decision
    assert "assignee" in decision.reason


def test_audit_authority_may_accept_and_reject():
    audit = make_audit(assigned_auditor_id="auditor-1")
    lead = actor(Role.AUDITOR, "auditor-1")
    assert decide(lead, Action.ACCEPT_FINDING, audit, make_finding()).allowed
    assert decide(lead, Action.REJECT_FINDING, audit, make_finding()).allowed


def test_authority_cannot_review_their_own_fix():
    audit = make_audit(assigned_auditor_id="auditor-1")
    for reviewer in (actor(Role.ORG_ADMIN, "admin-1"), actor(Role.AUDITOR, "auditor-1")):
        own = make_finding(reviewer.user_id)
        # still the finding actor, so the remediation steps stay open to them
        assert decide(reviewer, Action.SUBMIT_FOR_REVIEW, audit, own).allowed
        for action in (Action.ACCEPT_FINDING, Action.REJECT_FINDING):
            decision = decide(reviewer, action, audit, own)
            assert not decision
            assert "own" in decision.reason


def test_review_needs_a_finding():
    assert not decide(actor(Role.ORG_ADMIN), Action.ACCEPT_FINDING, make_audit()).allowed


def test_scheduling_is_admin_only():
    assert decide(actor(Role.SECURITY_OWNER), Action.CREATE_AUDIT).allowed
    assert not decide(actor(Role.AUDITOR), Action.CREATE_AUDIT).allowed
    assert not decide(actor(Role.CONTRIBUTOR), Action.PLAN_AUDIT, make_audit()).allowed


def test_everyone_in_the_organization_can_view():
    assert decide(actor(Role.VIEWER), Action.VIEW, make_audit()).allowed


def test_other_organization_is_always_denied():
    outsider = actor(Role.SUPER_ADMIN, org="org-2")
    for action in Action:
        assert not decide(outsider, action, make_audit(), make_finding()).allowed


def test_require_raises_permission_denied():
    with pytest.raises(PermissionDeniedError) as exc:
        require(actor(Role.VIEWER), Action.SIGN_AUDIT, make_audit())
    assert exc.value.status_code == 403
    assert exc.value.action == "sign and complete audit"


def test_decisions_have_no_side_effects():
    audit, finding = make_audit(), make_finding()
    before = (dict(vars(audit)), dict(vars(finding)))
    decide(actor(Role.VIEWER), Action.ACCEPT_FINDING, audit, finding)
    assert (vars(audit), vars(finding)) == before
