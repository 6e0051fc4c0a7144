import os
import tempfile

# point the app's default engine at a throwaway sqlite file before anything imports it
_TMP = tempfile.mkdtemp(prefix="auditflow-tests-")
os.environ.setdefault("DB_URL", f"sqlite:///{_TMP}/app.db")
os.environ.setdefault("AUDITFLOW_LOG_LEVEL", "WARNING")

from datetime import date

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from auditflow.main import app
from auditflow.models.db import Base, build_engine, get_db
from auditflow.models.enums import RiskLevel, Role
from auditflow.models.organization import Control, Risk
from auditflow.workflow import audit_lifecycle as lifecycle
from auditflow.workflow.guard import Actor

ORG = "org-1"
OTHER_ORG = "org-2"


@pytest.fixture
def engine(tmp_path):
    eng = build_engine(f"sqlite:///{tmp_path}/auditflow.db")
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def controls(db):
    """Five in-scope candidates plus two more, all in ORG, and one control in OTHER_ORG."""
    rows = [
        Control(id=f"ctl-{i}", organization_id=ORG, iso_reference=f"A.5.{i}", title=f"Control {i}")
        for i in range(1, 8)
    ]
    rows.append(Control(id="ctl-x", organization_id=OTHER_ORG, iso_reference="A.5.1", title="Foreign control"))
    db.add_all(rows)
    db.add_all([
        Risk(organization_id=ORG, title="Ransomware", level=RiskLevel.CRITICAL.value),
        Risk(organization_id=ORG, title="Laptop theft", level=RiskLevel.HIGH.value),
        Risk(organization_id=ORG, title="Vendor outage", level=RiskLevel.HIGH.value),
        Risk(organization_id=ORG, title="Typo squatting", level=RiskLevel.LOW.value),
        Risk(organization_id=OTHER_ORG, title="Someone else's risk", level=RiskLevel.HIGH.value),
    ])
    db.commit()
    return [f"ctl-{i}" for i in range(1, 8)]


@pytest.fixture
def scope(controls):
    return controls[:5]


@pytest.fixture
def admin():
    return Actor(user_id="admin-1", organization_id=ORG, role=Role.ORG_ADMIN)


@pytest.fixture
def auditor():
    return Actor(user_id="auditor-1", organization_id=ORG, role=Role.AUDITOR, email="auditor@firm.com")


@pytest.fixture
def other_auditor():
    return Actor(user_id="auditor-2", organization_id=ORG, role=Role.AUDITOR)


@pytest.fixture
def assignee():
    return Actor(user_id="dev-1", organization_id=ORG, role=Role.CONTRIBUTOR)


@pytest.fixture
def viewer():
    return Actor(user_id="viewer-1", organization_id=ORG, role=Role.VIEWER)


@pytest.fixture
def outsider():
    return Actor(user_id="admin-9", organization_id=OTHER_ORG, role=Role.ORG_ADMIN)


@pytest.fixture
def draft_audit(db, admin, scope):
    return lifecycle.create_audit(
        db, admin,
        name="ISO 27001 internal audit",
        type="INTERNAL",
        start_date=date(2026, 1, 10),
        end_date=date(2026, 2, 10),
        control_ids=scope,
        assigned_auditor_id="auditor-1",
    )


@pytest.fixture
def started_audit(db, auditor, draft_audit):
    return lifecycle.start_audit(db, auditor, draft_audit.id)


@pytest.fixture
def client(session_factory, controls):
    def _override():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _override
    try:
        with TestClient(app) as c:
            yield c
    finally:
        app.dependency_overrides.clear()

