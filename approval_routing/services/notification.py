"""
Approval Routing Engine
Notification Service.

The engine never delivers notifications itself. It builds ApprovalNotice
values and hands them to a Notifier injected through its constructor, only
after the engine transaction has committed. Delivery failures are logged and
never reach the caller.

    Notifier        protocol: notify(notice) -> None
    InAppNotifier   default sink, one Notification row per notice
    NullNotifier    used when APPROVAL_NOTIFICATIONS_ENABLED is off
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Iterable, Protocol

from approval_routing.models import db
from approval_routing.models.notification import Notification

logger = logging.getLogger(__name__)


class NoticeKind(str, Enum):
    REQUESTED = "REQUESTED"
    DELEGATED = "DELEGATED"
    OVERDUE = "OVERDUE"
    ESCALATED = "ESCALATED"


# kind → (Notification.category, Notification.severity)
_CATEGORY = {
    NoticeKind.REQUESTED: ("approval_request", "info"),
    NoticeKind.DELEGATED: ("approval_delegated", "info"),
    NoticeKind.OVERDUE: ("approval_overdue", "warning"),
    NoticeKind.ESCALATED: ("approval_escalated", "warning"),
}


@dataclass(frozen=True)
class ApprovalNotice:
    """Everything a sink needs to tell one user about one approval event."""

    kind: NoticeKind
    tenant_id: str
    recipient_user_id: int
    workflow_id: int
    entity_type: str
    entity_id: str
    stage: int | None = None
    role: str | None = None
    due_date: datetime | None = None
    extra: dict = field(default_factory=dict)

    @property
    def title(self) -> str:
        subject = f"{self.entity_type} {self.entity_id}"
        if self.kind is NoticeKind.REQUESTED:
            return f"Approval required: {subject}"
        if self.kind is NoticeKind.DELEGATED:
            return f"Approval delegated to you: {subject}"
        if self.kind is NoticeKind.OVERDUE:
            return f"Approval overdue: {subject}"
        return f"Approval escalated: {subject}"

    @property
    def message(self) -> str:
        parts = []
        if self.stage is not None:
            parts.append(f"Stage {self.stage}" + (f" ({self.role})" if self.role else ""))
        if self.due_date is not None:
            parts.append(f"due {self.due_date:%Y-%m-%d %H:%M}")
        if self.extra.get("reason"):
            parts.append(f"reason: {self.extra['reason']}")
        return ", ".join(parts)


class Notifier(Protocol):
    def notify(self, notice: ApprovalNotice) -> None:
        ...


class NullNotifier:
    """Discards every notice."""

    def notify(self, notice: ApprovalNotice) -> None:
        logger.debug("Notification suppressed: %s → user %s", notice.kind.value, notice.recipient_user_id)


class InAppNotifier:
    """Writes one in-app Notification row per notice, in its own commit."""

    def notify(self, notice: ApprovalNotice) -> None:
        NotificationService.create_from_notice(notice)


def dispatch(notifier: Notifier, notices: Iterable[ApprovalNotice]) -> int:
    """Deliver notices one by one, logging and swallowing sink failures.

    Returns the number of notices the sink accepted.
    """
    delivered = 0
    for notice in notices:
        try:
            notifier.notify(notice)
            delivered += 1
        except Exception:
            logger.exception(
                "Notifier failed for %s notice",
                notice.kind.value,
                extra={
                    "tenant_id": notice.tenant_id,
                    "workflow_id": notice.workflow_id,
                    "recipient_user_id": notice.recipient_user_id,
                },
            )
            db.session.rollback()
    return delivered


class NotificationService:
    """Stateless service class for notification operations."""

    @staticmethod
    def create_from_notice(notice: ApprovalNotice) -> Notification:
        """
        Create a single notification record for an approval notice.

        Returns:
            The created Notification instance (already committed).
        """
        category, severity = _CATEGORY[notice.kind]
        notif = Notification(
            tenant_id=notice.tenant_id,
            recipient_user_id=notice.recipient_user_id,
            title=notice.title,
            message=notice.message,
            category=category,
            severity=severity,
            entity_type=notice.entity_type,
            entity_id=notice.entity_id,
            workflow_id=notice.workflow_id,
            stage=notice.stage,
            due_date=notice.due_date,
        )
        db.session.add(notif)
        db.session.commit()
        return notif

    @staticmethod
    def list_for_recipient(tenant_id, recipient_user_id, unread_only=False, limit=50, offset=0):
        """Retrieve notifications for a recipient, newest first."""
        q = Notification.query_for_tenant(tenant_id).filter_by(recipient_user_id=recipient_user_id)
        if unread_only:
            q = q.filter_by(is_read=False)
        total = q.count()
        items = q.order_by(Notification.created_at.desc(), Notification.id.desc()).offset(offset).limit(limit).all()
        return items, total

    @staticmethod
    def mark_read(notification_id, tenant_id):
        """Mark a single notification as read."""
        notif = Notification.query_for_tenant(tenant_id).filter_by(id=notification_id).first()
        if notif:
            notif.mark_read()
            db.session.commit()
        return notif
