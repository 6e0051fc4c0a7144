from auditflow.models.enums import Role
from auditflow.workflow.guard import Actor


def headers_for(actor):
    h = {"X-User-Id": actor.user_id, "X-Org-Id": actor.organization_id, "X-User-Role": actor.role.value}
    if actor.email:
        h["X-User-Email"] = actor.email
    return h


ADMIN = Actor(user_id="admin-1", organization_id="org-1", role=Role.ORG_ADMIN)
AUDITOR = Actor(user_id="auditor-1", organization_id="org-1", role=Role.AUDITOR)
DEV = Actor(user_id="dev-1", organization_id="org-1", role=Role.CONTRIBUTOR)
OUTSIDER = Actor(user_id="admin-9", organization_id="org-2", role=Role.ORG_ADMIN)


def _create_audit(client, **overrides):
    body = {
        "name": "ISO 27001 internal audit",
        "type": "INTERNAL",
        "start_date": "2026-01-10",
        "end_date": "2026-02-10",
        "control_ids": ["ctl-1", "ctl-2", "ctl-3", "ctl-4", "ctl-5"],
        "assigned_auditor_id": "auditor-1",
    }
    body.update(overrides)
    r = client.post("/audits", json=body, headers=headers_for(ADMIN))
    assert r.status_code == 201, r.text
    return r.json()


def _start(client, audit_id):
    r = client.post(f"/audits/{audit_id}/start", headers=headers_for(AUDITOR))
    assert r.status_code == 200, r.text
    return r.json()


def _raise_finding(client, audit_id, control_id="ctl-1", **overrides):
    body = {
        "audit_id": audit_id,
        "control_id": control_id,
        "severity": "MAJOR",
        "description": "No MFA on the admin console",
        "assigned_to": "dev-1",
    }
    body.update(overrides)
    r = client.post("/findings", json=body, headers=headers_for(AUDITOR))
    assert r.status_code == 201, r.text
    return r.json()


def test_health(client):
    assert client.get("/health").json()["status"] == "ok"


def test_missing_identity_is_unauthorized(client):
    assert client.get("/audits").status_code == 401
    bad_role = dict(headers_for(ADMIN), **{"X-User-Role": "JANITOR"})
    assert client.get("/audits", headers=bad_role).status_code == 401


def test_create_start_and_read_audit(client):
    audit = _create_audit(client)
    assert audit["status"] == "DRAFT"
    assert audit["is_locked"] is False
    assert audit["snapshot"] is None

    started = _start(client, audit["id"])
    assert started["status"] == "IN_PROGRESS"

    detail = client.get(f"/audits/{audit['id']}", headers=headers_for(DEV)).json()
    assert sorted(ac["control_id"] for ac in detail["audit_controls"]) == ["ctl-1", "ctl-2", "ctl-3", "ctl-4", "ctl-5"]
    assert all(ac["review_status"] == "PENDING" for ac in detail["audit_controls"])


def test_create_audit_validation_error_shape(client):
    r = client.post("/audits", json={"name": "No type", "start_date": "2026-01-10", "control_ids": ["ctl-1"]},
                    headers=headers_for(ADMIN))
    assert r.status_code == 400
    assert r.json()["error"] == "validation_error"
    assert r.json()["field"] == "type"


def test_second_start_is_a_conflict(client):
    audit = _create_audit(client)
    _start(client, audit["id"])
    r = client.post(f"/audits/{audit['id']}/start", headers=headers_for(AUDITOR))
    assert r.status_code == 409
    assert r.json()["error"] == "invalid_transition"
    assert r.json()["current_status"] == "IN_PROGRESS"


def test_other_organization_sees_not_found(client):
    audit = _create_audit(client)
    r = client.get(f"/audits/{audit['id']}", headers=headers_for(OUTSIDER))
    assert r.status_code == 404
    assert client.get("/audits", headers=headers_for(OUTSIDER)).json() == []


def test_assignee_flow_and_forbidden_accept(client):
    audit = _create_audit(client)
    _start(client, audit["id"])
    finding = _raise_finding(client, audit["id"])
    fid = finding["id"]

    r = client.post(f"/findings/{fid}/start-remediation", headers=headers_for(DEV))
    assert r.status_code == 200 and r.json()["status"] == "IN_REMEDIATION"

    r = client.post(f"/findings/{fid}/accept", headers=headers_for(DEV))
    assert r.status_code == 403
    assert r.json()["error"] == "permission_denied"

    r = client.post(f"/findings/{fid}/accept", headers=headers_for(AUDITOR))
    assert r.status_code == 409

    tasks = client.get("/findings/my-tasks", headers=headers_for(DEV)).json()
    assert [t["id"] for t in tasks] == [fid]


def test_reject_and_close_with_history(client):
    audit = _create_audit(client)
    _start(client, audit["id"])
    fid = _raise_finding(client, audit["id"])["id"]

    for path, who in [
        ("start-remediation", DEV),
        ("submit-review", DEV),
        ("reject", AUDITOR),
        ("start-remediation", DEV),
        ("submit-review", DEV),
        ("accept", AUDITOR),
    ]:
        r = client.post(f"/findings/{fid}/{path}", headers=headers_for(who))
        assert r.status_code == 200, (path, r.text)

    final = client.get(f"/findings/{fid}", headers=headers_for(DEV)).json()
    assert final["status"] == "CLOSED"
    assert final["closed_at"] is not None

    history = client.get(f"/findings/{fid}/history", headers=headers_for(DEV)).json()
    assert [e["to_status"] for e in history] == [
        "OPEN", "IN_REMEDIATION", "READY_FOR_REVIEW", "OPEN", "IN_REMEDIATION", "READY_FOR_REVIEW", "CLOSED",
    ]


def test_sign_freezes_report_and_locks_everything(client):
    audit = _create_audit(client)
    aid = audit["id"]
    _start(client, aid)
    for control_id, status in [("ctl-1", "NON_COMPLIANT"), ("ctl-2", "COMPLIANT"),
                               ("ctl-3", "COMPLIANT"), ("ctl-4", "NOT_APPLICABLE")]:
        r = client.patch(f"/audits/{aid}/controls/{control_id}", json={"review_status": status},
                         headers=headers_for(AUDITOR))
        assert r.status_code == 200, r.text
    fid = _raise_finding(client, aid)["id"]

    live = client.get(f"/audits/{aid}/report", headers=headers_for(DEV)).json()["metrics"]
    assert live["source"] == "live" and live["compliance_pct"] == 50.0

    r = client.post(f"/audits/{aid}/sign-and-complete",
                    json={"executive_summary": "One major gap", "audit_conclusion": "Conditional pass"},
                    headers=headers_for(AUDITOR))
    assert r.status_code == 200, r.text
    signed = r.json()
    assert signed["status"] == "COMPLETED"
    assert signed["is_locked"] is True
    assert signed["executive_summary"] == "One major gap"
    assert signed["snapshot"]["compliance_pct"] == 50.0
    assert signed["snapshot"]["open_findings"] == 1
    fetched = client.get(f"/audits/{aid}", headers=headers_for(DEV)).json()
    assert fetched["snapshot"] == signed["snapshot"]

    report = client.get(f"/audits/{aid}/report", headers=headers_for(DEV)).json()
    assert report["metrics"]["source"] == "snapshot"
    assert report["metrics"]["compliance_pct"] == 50.0
    assert report["metrics"]["open_findings"] == 1

    locked_calls = [
        client.post(f"/findings/{fid}/start-remediation", headers=headers_for(DEV)),
        client.patch(f"/findings/{fid}", json={"remediation_plan": "late"}, headers=headers_for(DEV)),
        client.patch(f"/audits/{aid}/controls/ctl-5", json={"review_status": "COMPLIANT"}, headers=headers_for(AUDITOR)),
        client.patch(f"/audits/{aid}/report", json={"executive_summary": "rewritten"}, headers=headers_for(AUDITOR)),
        client.delete(f"/findings/{fid}", headers=headers_for(AUDITOR)),
    ]
    for r in locked_calls:
        assert r.status_code == 423, r.text
        assert r.json()["error"] == "audit_locked"

    again = client.post(f"/audits/{aid}/sign-and-complete", headers=headers_for(ADMIN))
    assert again.status_code == 409
    assert client.get(f"/audits/{aid}/report", headers=headers_for(DEV)).json() == report


def test_delete_finding_returns_no_content(client):
    audit = _create_audit(client)
    fid = _raise_finding(client, audit["id"])["id"]
    assert client.delete(f"/findings/{fid}", headers=headers_for(DEV)).status_code == 403
    assert client.delete(f"/findings/{fid}", headers=headers_for(AUDITOR)).status_code == 204
    assert client.get(f"/findings/{fid}", headers=headers_for(AUDITOR)).status_code == 404
