"""
Approval Routing Engine
Project role registry model.

Models:
    - ProjectRoleAssignment: (project, role) → user + optional deputy

The registry is maintained by the project-setup module; the approval engine
only reads it (see services/role_resolver.py).
"""

from __future__ import annotations

import logging
from enum import Enum

from approval_routing.models import db
from approval_routing.models.base import TenantModel, utcnow

logger = logging.getLogger(__name__)


class RoleKind(str, Enum):
    """Closed set of approver roles a step template may name."""

    PACKAGE_MANAGER = "PACKAGE_MANAGER"
    COMMERCIAL_MANAGER = "COMMERCIAL_MANAGER"
    PROJECT_MANAGER = "PROJECT_MANAGER"
    PROJECT_DIRECTOR = "PROJECT_DIRECTOR"
    CONTRACTS_MANAGER = "CONTRACTS_MANAGER"
    QS_COST_MANAGER = "QS_COST_MANAGER"
    CLIENT_REPRESENTATIVE = "CLIENT_REPRESENTATIVE"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, name: str | None) -> "RoleKind":
        """Map a free-form role string onto a RoleKind, UNKNOWN when it does not match."""
        normalised = (name or "").strip().upper().replace(" ", "_").replace("-", "_")
        if normalised and normalised != cls.UNKNOWN.value:
            try:
                return cls(normalised)
            except ValueError:
                pass
        logger.warning("Unrecognised approver role %r", name)
        return cls.UNKNOWN

    @classmethod
    def known_values(cls) -> list[str]:
        return sorted(r.value for r in cls if r is not cls.UNKNOWN)


class ProjectRoleAssignment(TenantModel):
    """
    One person holding one role on one project.

    Business rules:
    - Several rows may exist for the same (project, role); the resolver takes
      the lowest id among the active ones that carry the required capability.
    - deputy_user_id is the escalation contact for overdue steps.
    """

    __tablename__ = "project_role_assignments"
    __table_args__ = (
        db.Index("ix_project_roles_project_role", "project_id", "role"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, nullable=False, index=True)
    role = db.Column(db.String(50), nullable=False,
                     comment="PACKAGE_MANAGER | COMMERCIAL_MANAGER | PROJECT_MANAGER | ...")
    user_id = db.Column(db.Integer, nullable=False, index=True)
    deputy_user_id = db.Column(db.Integer, nullable=True)

    # Capability flags per entity kind
    can_approve_packages = db.Column(db.Boolean, nullable=False, default=True)
    can_approve_contracts = db.Column(db.Boolean, nullable=False, default=True)
    can_approve_variations = db.Column(db.Boolean, nullable=False, default=True)
    can_approve_payments = db.Column(db.Boolean, nullable=False, default=False)

    receive_notifications = db.Column(db.Boolean, nullable=False, default=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "project_id": self.project_id,
            "role": self.role,
            "user_id": self.user_id,
            "deputy_user_id": self.deputy_user_id,
            "can_approve_packages": self.can_approve_packages,
            "can_approve_contracts": self.can_approve_contracts,
            "can_approve_variations": self.can_approve_variations,
            "can_approve_payments": self.can_approve_payments,
            "receive_notifications": self.receive_notifications,
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<ProjectRoleAssignment p{self.project_id} {self.role} → u{self.user_id}>"
