"""
Approval Routing Engine
In-app notification model.

Models:
    - Notification: approval notice delivered to one user, with read tracking

Only the default in-app notifier writes these rows, and always in its own
transaction after the engine has committed.
"""

from approval_routing.models import db
from approval_routing.models.base import TenantModel, utcnow


# ── Constants ────────────────────────────────────────────────────────────────

NOTIFICATION_CATEGORIES = {"approval_request", "approval_delegated", "approval_overdue", "approval_escalated"}
NOTIFICATION_SEVERITIES = {"info", "warning", "error", "success"}


class Notification(TenantModel):
    """
    In-app notification entity.

    One record per recipient per event.
    """

    __tablename__ = "notifications"
    __table_args__ = (
        db.Index("ix_notifications_recipient_read", "recipient_user_id", "is_read"),
    )

    id = db.Column(db.Integer, primary_key=True)
    recipient_user_id = db.Column(db.Integer, nullable=False, index=True)
    title = db.Column(db.String(300), nullable=False)
    message = db.Column(db.Text, default="")
    category = db.Column(db.String(30), default="approval_request")
    severity = db.Column(db.String(20), default="info")

    # Link to source entity
    entity_type = db.Column(db.String(40), default="")
    entity_id = db.Column(db.String(64), nullable=True)
    workflow_id = db.Column(db.Integer, nullable=True, index=True)
    stage = db.Column(db.Integer, nullable=True)
    due_date = db.Column(db.DateTime(timezone=True), nullable=True)

    # Read tracking
    is_read = db.Column(db.Boolean, default=False)
    read_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    def mark_read(self):
        self.is_read = True
        self.read_at = utcnow()

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "recipient_user_id": self.recipient_user_id,
            "title": self.title,
            "message": self.message,
            "category": self.category,
            "severity": self.severity,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "workflow_id": self.workflow_id,
            "stage": self.stage,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "is_read": self.is_read,
            "read_at": self.read_at.isoformat() if self.read_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Notification {self.id}: {self.title[:40]}>"
