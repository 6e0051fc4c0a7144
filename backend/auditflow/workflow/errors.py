"""
Exception types raised by the compliance workflow engine.

Every error is a logical failure: it is surfaced to the caller as-is and never
retried. Each class carries the HTTP status and a stable error code the API
layer renders, so routes never have to translate them one by one.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class WorkflowError(Exception):
    """Base class for all workflow engine errors."""

    status_code = 500
    code = "workflow_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} (details: {self.details})"
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "detail": self.message, **self.details}


class ValidationError(WorkflowError):
    """Malformed or missing required input. Nothing is written."""

    status_code = 400
    code = "validation_error"

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message, {"field": field} if field else None)
        self.field = field


class InvalidTransitionError(WorkflowError):
    """Requested transition is not legal from the entity's current state."""

    status_code = 409
    code = "invalid_transition"

    def __init__(self, entity: str, entity_id: str, current: str, action: str):
        super().__init__(
            f"Cannot {action} {entity} {entity_id}: current status is {current}",
            {"entity": entity, "entity_id": entity_id, "current_status": current, "action": action},
        )
        self.current = current
        self.action = action


class PermissionDeniedError(WorkflowError):
    """Actor lacks the role or relationship the transition requires."""

    status_code = 403
    code = "permission_denied"

    def __init__(self, action: str, reason: str):
        super().__init__(f"Not allowed to {action}: {reason}", {"action": action})
        self.action = action
        self.reason = reason


class AuditLockedError(WorkflowError):
    """Mutation attempted against a signed (locked) audit."""

    status_code = 423
    code = "audit_locked"

    def __init__(self, audit_id: str):
        super().__init__(
            f"Audit {audit_id} is signed and locked; its data is read-only",
            {"audit_id": audit_id},
        )
        self.audit_id = audit_id


class NotFoundError(WorkflowError):
    """Entity does not exist, or belongs to another organization."""

    status_code = 404
    code = "not_found"

    def __init__(self, entity: str, entity_id: str):
        super().__init__(f"{entity.capitalize()} not found: {entity_id}", {"entity": entity, "entity_id": entity_id})
        self.entity = entity
        self.entity_id = entity_id
