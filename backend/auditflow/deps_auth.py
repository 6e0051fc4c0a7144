# Identity lives outside this service: an upstream gateway authenticates the caller
# and forwards who they are. We only turn those headers into an explicit Actor,
# which is then passed into every workflow call.
from __future__ import annotations
from typing import Optional

from fastapi import Header, HTTPException

from auditflow.models.enums import Role
from auditflow.workflow.guard import Actor


def get_actor(
    x_user_id: Optional[str] = Header(None),
    x_org_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
    x_user_email: Optional[str] = Header(None),
) -> Actor:
    if not x_user_id or not x_org_id or not x_user_role:
        raise HTTPException(status_code=401, detail="Missing caller identity headers")
    try:
        role = Role(x_user_role.strip().upper())
    except ValueError:
        raise HTTPException(status_code=401, detail=f"Unknown role: {x_user_role}")
    return Actor(
        user_id=x_user_id.strip(),
        organization_id=x_org_id.strip(),
        role=role,
        email=x_user_email.strip() if x_user_email else None,
    )
