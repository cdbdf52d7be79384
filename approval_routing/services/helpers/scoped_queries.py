"""
Tenant-scoped query helpers.

Every get-by-id coming from an HTTP request MUST go through get_scoped so a
caller can never reach another tenant's workflow, step or threshold by
guessing ids. Cross-tenant access is indistinguishable from a missing record
(both raise NotFoundError → HTTP 404).

In-process callers that already hold a trusted id (scheduler jobs, CLI
commands, the engine façade without a tenant) use get_required.

Models without their own tenant_id column (ApprovalStep, ApprovalHistory)
are scoped through their ``workflow`` relationship.

Usage:
    threshold = get_scoped(ApprovalThreshold, threshold_id, tenant_id=tenant_id)
    step = get_scoped(ApprovalStep, step_id, tenant_id=tenant_id, for_update=True)
    step = load(ApprovalStep, step_id, tenant_id=None, for_update=True)
"""

import logging

from sqlalchemy import select

from approval_routing.core.exceptions import NotFoundError
from approval_routing.models import db

logger = logging.getLogger(__name__)

_SCOPE_KWARGS = ("tenant_id", "project_id")


def _scoped_select(model, pk, scopes: dict, for_update: bool):
    stmt = select(model).where(model.id == pk)
    joined = False
    for field, value in scopes.items():
        if hasattr(model, field):
            stmt = stmt.where(getattr(model, field) == value)
            continue
        parent = model.workflow.property.mapper.class_
        if not joined:
            stmt = stmt.join(model.workflow)
            joined = True
        stmt = stmt.where(getattr(parent, field) == value)
    if for_update:
        # SQLite ignores FOR UPDATE; the step version column covers it there.
        stmt = stmt.with_for_update(of=model)
    return stmt


def get_scoped(model, pk, *, tenant_id=None, project_id=None, for_update=False):
    """Fetch a single entity by PK with a mandatory scope filter.

    Args:
        model: SQLAlchemy model class with an ``id`` PK and either the scope
               column itself or a ``workflow`` relationship that carries it.
        pk: Primary key value to look up.
        tenant_id: Scope by tenant_id.
        project_id: Scope by project_id.
        for_update: Lock the row (SELECT ... FOR UPDATE) where supported.

    Raises:
        ValueError: If no scope parameter is provided, or a scope cannot be
                    applied to the model.
        NotFoundError: If the entity does not exist OR belongs to another scope.
    """
    scopes = {k: v for k, v in (("tenant_id", tenant_id), ("project_id", project_id)) if v is not None}
    if not scopes:
        raise ValueError(
            f"{model.__name__} id={pk} requires at least one scope filter "
            f"({', '.join(_SCOPE_KWARGS)}). Unscoped lookups must use get_required."
        )

    unreachable = [f for f in scopes if not hasattr(model, f) and not hasattr(model, "workflow")]
    if unreachable:
        raise ValueError(
            f"{model.__name__} id={pk}: scope field(s) {sorted(unreachable)} not available. "
            "Refusing to perform an unscoped lookup."
        )

    result = db.session.execute(_scoped_select(model, pk, scopes, for_update)).scalar_one_or_none()
    if result is None:
        logger.debug("get_scoped: %s id=%s not found in scope %s", model.__name__, pk, scopes)
        raise NotFoundError(resource=model.__name__, resource_id=pk)
    return result


def get_required(model, pk, *, for_update=False):
    """Unscoped fetch by PK for trusted in-process callers; NotFoundError if absent."""
    result = db.session.execute(_scoped_select(model, pk, {}, for_update)).scalar_one_or_none()
    if result is None:
        raise NotFoundError(resource=model.__name__, resource_id=pk)
    return result


def load(model, pk, *, tenant_id=None, for_update=False):
    """get_scoped when a tenant is known, get_required otherwise."""
    if tenant_id is not None:
        return get_scoped(model, pk, tenant_id=tenant_id, for_update=for_update)
    return get_required(model, pk, for_update=for_update)
