"""
Compliance snapshot engine.

compute_metrics() is the live aggregate over an audit's control reviews, its
findings and the organization's risk register. capture_snapshot() freezes that
aggregate into a ComplianceSnapshot row exactly once, inside the sign
transaction. After that, report_metrics() only ever returns the stored row:
later changes to controls or risks elsewhere in the organization cannot move
the numbers a signed report shows.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict

from sqlalchemy import func
from sqlalchemy.orm import Session

from auditflow.models.audit import Audit, AuditControl, ComplianceSnapshot
from auditflow.models.enums import FindingSeverity, FindingStatus, ReviewStatus, RiskLevel
from auditflow.models.finding import Finding
from auditflow.models.organization import Risk

logger = logging.getLogger(__name__)

# metric key -> snapshot column; both reads (live and frozen) expose the same keys
METRIC_FIELDS = (
    "total_controls",
    "compliant_controls",
    "non_compliant_controls",
    "not_applicable_controls",
    "pending_controls",
    "compliance_pct",
    "total_findings",
    "open_findings",
    "closed_findings",
    "major_findings",
    "minor_findings",
    "observation_findings",
    "ofi_findings",
    "critical_risks",
    "high_risks",
    "medium_risks",
    "low_risks",
)


def compliance_percentage(compliant: int, total: int, not_applicable: int) -> float:
    # not-applicable controls are out of the denominator; pending ones count against it
    assessable = total - not_applicable
    if assessable <= 0:
        return 0.0
    return round(100.0 * compliant / assessable, 1)


def _grouped_counts(db: Session, column, *filters) -> Dict[str, int]:
    rows = db.query(column, func.count()).filter(*filters).group_by(column).all()
    return {str(key): int(n) for key, n in rows}


def compute_metrics(db: Session, audit: Audit) -> Dict[str, Any]:
    reviews = _grouped_counts(db, AuditControl.review_status, AuditControl.audit_id == audit.id)
    statuses = _grouped_counts(db, Finding.status, Finding.audit_id == audit.id)
    severities = _grouped_counts(db, Finding.severity, Finding.audit_id == audit.id)
    risks = _grouped_counts(db, Risk.level, Risk.organization_id == audit.organization_id)

    total_controls = sum(reviews.values())
    compliant = reviews.get(ReviewStatus.COMPLIANT.value, 0)
    not_applicable = reviews.get(ReviewStatus.NOT_APPLICABLE.value, 0)

    total_findings = sum(statuses.values())
    closed = statuses.get(FindingStatus.CLOSED.value, 0)

    return {
        "total_controls": total_controls,
        "compliant_controls": compliant,
        "non_compliant_controls": reviews.get(ReviewStatus.NON_COMPLIANT.value, 0),
        "not_applicable_controls": not_applicable,
        "pending_controls": reviews.get(ReviewStatus.PENDING.value, 0),
        "compliance_pct": compliance_percentage(compliant, total_controls, not_applicable),
        "total_findings": total_findings,
        "open_findings": total_findings - closed,
        "closed_findings": closed,
        "major_findings": severities.get(FindingSeverity.MAJOR.value, 0),
        "minor_findings": severities.get(FindingSeverity.MINOR.value, 0),
        "observation_findings": severities.get(FindingSeverity.OBSERVATION.value, 0),
        "ofi_findings": severities.get(FindingSeverity.OFI.value, 0),
        "critical_risks": risks.get(RiskLevel.CRITICAL.value, 0),
        "high_risks": risks.get(RiskLevel.HIGH.value, 0),
        "medium_risks": risks.get(RiskLevel.MEDIUM.value, 0),
        "low_risks": risks.get(RiskLevel.LOW.value, 0),
    }


def capture_snapshot(db: Session, audit: Audit, captured_at: datetime) -> ComplianceSnapshot:
    """Stage the frozen metrics row. The caller owns the transaction and commits it."""
    metrics = compute_metrics(db, audit)
    snap = ComplianceSnapshot(
        audit_id=audit.id,
        organization_id=audit.organization_id,
        captured_at=captured_at,
        **metrics,
    )
    db.add(snap)
    logger.info(
        "snapshot captured: audit=%s compliance_pct=%s open_findings=%s closed_findings=%s",
        audit.id, metrics["compliance_pct"], metrics["open_findings"], metrics["closed_findings"],
    )
    return snap


def snapshot_metrics(snap: ComplianceSnapshot) -> Dict[str, Any]:
    out: Dict[str, Any] = {k: getattr(snap, k) for k in METRIC_FIELDS}
    out["captured_at"] = snap.captured_at.isoformat() if snap.captured_at else None
    return out


def load_snapshot(db: Session, audit_id: str) -> ComplianceSnapshot | None:
    return db.query(ComplianceSnapshot).filter(ComplianceSnapshot.audit_id == audit_id).first()


def report_metrics(db: Session, audit: Audit) -> Dict[str, Any]:
    """Snapshot for locked audits (never recomputed), live aggregate otherwise."""
    if audit.is_locked:
        snap = load_snapshot(db, audit.id)
        if snap is not None:
            return {"source": "snapshot", **snapshot_metrics(snap)}
        # a locked audit without a snapshot means the sign transaction was bypassed
        logger.error("locked audit %s has no compliance snapshot", audit.id)
        raise RuntimeError(f"Locked audit {audit.id} has no compliance snapshot")
    return {"source": "live", **compute_metrics(db, audit)}
