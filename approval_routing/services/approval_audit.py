"""
Audit Trail Recorder.

Appends ApprovalHistory rows. Uses ``flush`` so callers keep transaction
control: the history row commits (or rolls back) together with the state
change it describes.
"""

from __future__ import annotations

from flask import has_request_context, request
from sqlalchemy import select

from approval_routing.models import db
from approval_routing.models.approval import ApprovalHistory, ApprovalWorkflow
from approval_routing.services.helpers.scoped_queries import load


def _get_client_ip() -> str | None:
    """Real client IP, honouring X-Forwarded-For from load balancers."""
    forwarded_for = request.headers.get("X-Forwarded-For", "")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    return request.remote_addr


def record_history(
    *,
    workflow_id: int,
    action: str,
    actor_user_id: int | None,
    step_id: int | None = None,
    comments: str | None = None,
) -> ApprovalHistory:
    """Append one history row; client IP / user agent captured inside a request."""
    ip_address = user_agent = None
    if has_request_context():
        ip_address = _get_client_ip()
        user_agent = (request.headers.get("User-Agent") or "")[:255] or None

    entry = ApprovalHistory(
        workflow_id=workflow_id,
        step_id=step_id,
        action=action,
        actor_user_id=actor_user_id,
        comments=(comments or "").strip() or None,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    db.session.add(entry)
    db.session.flush()
    return entry


def get_history(workflow_id: int, tenant_id: str | None = None) -> list[ApprovalHistory]:
    """History of one workflow in insertion order."""
    load(ApprovalWorkflow, workflow_id, tenant_id=tenant_id)
    return list(
        db.session.execute(
            select(ApprovalHistory)
            .where(ApprovalHistory.workflow_id == workflow_id)
            .order_by(ApprovalHistory.created_at, ApprovalHistory.id)
        ).scalars()
    )
