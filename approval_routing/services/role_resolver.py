"""
Role Resolver — maps (tenant, project, role, entity kind) onto a concrete user.

Reads the ProjectRoleAssignment registry; never writes it. Absence of a
matching row means "unassigned" and is returned as None, never raised.

Selection rule: among active rows for the (tenant, project, role) whose
capability flag for the entity kind is set, the lowest id wins.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import select

from approval_routing.models import db
from approval_routing.models.approval import EntityKind
from approval_routing.models.project_role import ProjectRoleAssignment, RoleKind

logger = logging.getLogger(__name__)


_CAPABILITY_BY_KIND = {
    EntityKind.PACKAGE: ProjectRoleAssignment.can_approve_packages,
    EntityKind.CONTRACT: ProjectRoleAssignment.can_approve_contracts,
    EntityKind.VARIATION: ProjectRoleAssignment.can_approve_variations,
    EntityKind.PAYMENT_APPLICATION: ProjectRoleAssignment.can_approve_payments,
}
_missing = set(EntityKind) - set(_CAPABILITY_BY_KIND)
if _missing:
    raise RuntimeError(f"No capability flag for entity kinds: {sorted(k.value for k in _missing)}")


@dataclass(frozen=True)
class RoleResolution:
    user_id: int
    deputy_user_id: int | None
    project_role_id: int


class RoleResolver:
    """Registry lookups used by the router, the progression controller and the sweeper."""

    def resolve(self, tenant_id: str, project_id: int, role, entity_kind: EntityKind) -> RoleResolution | None:
        kind = role if isinstance(role, RoleKind) else RoleKind.parse(role)
        if kind is RoleKind.UNKNOWN:
            return None

        row = db.session.execute(
            select(ProjectRoleAssignment)
            .where(
                ProjectRoleAssignment.tenant_id == tenant_id,
                ProjectRoleAssignment.project_id == project_id,
                ProjectRoleAssignment.role == kind.value,
                ProjectRoleAssignment.is_active.is_(True),
                _CAPABILITY_BY_KIND[EntityKind(entity_kind)].is_(True),
            )
            .order_by(ProjectRoleAssignment.id)
            .limit(1)
        ).scalar_one_or_none()

        if row is None:
            logger.debug(
                "No %s on project %s for %s", kind.value, project_id, EntityKind(entity_kind).value,
                extra={"tenant_id": tenant_id},
            )
            return None
        return RoleResolution(user_id=row.user_id, deputy_user_id=row.deputy_user_id, project_role_id=row.id)

    def deputy_for(self, tenant_id: str, project_id: int, role, entity_kind: EntityKind) -> int | None:
        resolution = self.resolve(tenant_id, project_id, role, entity_kind)
        return resolution.deputy_user_id if resolution else None

    def deputy_for_step(self, tenant_id: str, project_id: int, step, entity_kind: EntityKind) -> int | None:
        """Deputy of the registry row the step was resolved from, else of the role."""
        if step.project_role_id is not None:
            row = db.session.get(ProjectRoleAssignment, step.project_role_id)
            if row is not None and row.is_active:
                return row.deputy_user_id
        return self.deputy_for(tenant_id, project_id, step.role, entity_kind)
