"""Audit logging service."""

from __future__ import annotations

from typing import Optional

from flask import g, has_request_context, request

from extensions import db
from models import AuditLog


def log_action(
    action: str,
    entity_type: str,
    entity_id: Optional[str],
    *,
    user_id: Optional[str] = None,
    old_values: Optional[dict] = None,
    new_values: Optional[dict] = None,
) -> AuditLog:
    """Record an audit log entry.

    NOTE: This does NOT commit; the caller commits it together with the
    change being audited.  *user_id* defaults to the authenticated user.
    """
    ip_address = user_agent = None
    if has_request_context():
        if user_id is None:
            user = getattr(g, "current_user", None)
            user_id = user.id if user else None
        ip_address = request.remote_addr
        user_agent = request.headers.get("User-Agent")
    entry = AuditLog(
        user_id=user_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        old_values=old_values,
        new_values=new_values,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    db.session.add(entry)
    return entry
