from __future__ import annotations
import logging
from typing import Any

from sqlalchemy.orm import Session

from auditflow.models.audit import Audit
from auditflow.workflow.errors import AuditLockedError

logger = logging.getLogger(__name__)

# Once an audit is signed nothing it certified may change: control reviews,
# findings, report fields. Reads are never gated here.


def is_mutation_allowed(audit: Any) -> bool:
    return not audit.is_locked


def ensure_unlocked(audit: Any) -> None:
    if not is_mutation_allowed(audit):
        logger.warning("rejected mutation against locked audit %s", audit.id)
        raise AuditLockedError(audit.id)


def is_audit_locked(db: Session, audit_id: str) -> bool:
    """Fresh read of the lock flag, bypassing any stale copy in the session identity map."""
    locked = db.query(Audit.is_locked).filter(Audit.id == audit_id).scalar()
    return bool(locked)


def ensure_audit_unlocked(db: Session, audit_id: str) -> None:
    if is_audit_locked(db, audit_id):
        logger.warning("rejected mutation against locked audit %s", audit_id)
        raise AuditLockedError(audit_id)
