"""
Engine-wide exception hierarchy.

Every service in the approval engine raises one of these types; blueprints
register handlers against them once and get consistent HTTP status codes
everywhere.

    NotFoundError               workflow / step / threshold id does not exist   → 404
    UnauthorizedError           actor may not act on the step                   → 403
    InvalidStateError           status does not permit the transition           → 409
    ValidationError             missing or malformed mandatory input            → 422
    ConfigurationConflictError  overlapping ranges / in-use threshold mutation  → 409

Usage:
    from approval_routing.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="ApprovalStep", resource_id=42)
    raise ValidationError("reason is required", details={"reason": "required"})
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist within the given scope.

    Used for BOTH genuinely missing records AND cross-tenant lookups, so a
    caller cannot probe for the existence of another tenant's workflows.

    Args:
        resource: Human-readable model name (e.g. "ApprovalWorkflow").
        resource_id: The PK that was looked up. Included in logs, not in HTTP response.
        tenant_id: Optional. The scope that was enforced. For debug logging only.
    """

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        tenant_id: str | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.tenant_id = tenant_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        if tenant_id is not None:
            msg += f" (tenant={tenant_id})"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input fails business-rule validation in the service layer.

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class UnauthorizedError(Exception):
    """Raised when the actor is neither the assignee nor the delegate of a step.

    Administrative bypass (override / cancel) never raises this; those
    operations are gated at the caller boundary.
    """

    def __init__(self, message: str, *, actor_id: int | None = None, step_id: int | None = None) -> None:
        self.actor_id = actor_id
        self.step_id = step_id
        super().__init__(message)


class InvalidStateError(Exception):
    """Raised when a step or workflow is not in a status that permits the transition.

    Covers "already decided", "workflow already terminal", "not the active
    stage" and the loser of a concurrent decision on the same step.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConfigurationConflictError(Exception):
    """Raised for threshold registry conflicts.

    Either the new range overlaps an active threshold for the same
    (tenant, entity type), or the caller tried to change the range / step
    templates of a threshold that live workflows were built from.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)
