"""
Approval Routing Engine
Blueprint registry and shared request helpers.
"""

import logging

from flask import Blueprint, g, request

from approval_routing.core.exceptions import (
    ConfigurationConflictError,
    InvalidStateError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from approval_routing.utils.errors import E, api_error

logger = logging.getLogger(__name__)


class MissingPrincipal(Exception):
    """Request reached an endpoint without the identity headers it needs."""


def pagination_args(default_limit=50, max_limit=200) -> tuple[int, int]:
    """Read limit/offset query params, clamped.

    Returns:
        (limit, offset)
    """
    try:
        limit = min(max(int(request.args.get("limit", default_limit)), 1), max_limit)
    except (ValueError, TypeError):
        limit = default_limit
    try:
        offset = max(int(request.args.get("offset", 0)), 0)
    except (ValueError, TypeError):
        offset = 0
    return limit, offset


def require_tenant() -> str:
    tenant_id = getattr(g, "tenant_id", None)
    if not tenant_id:
        raise MissingPrincipal("X-Tenant-Id header is required")
    return tenant_id


def require_user() -> int:
    user_id = getattr(g, "user_id", None)
    if user_id is None:
        raise MissingPrincipal("X-User-Id header is required")
    return user_id


def json_body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def register_error_handlers(bp: Blueprint) -> None:
    """Map engine exceptions onto JSON error responses for one blueprint."""

    @bp.errorhandler(MissingPrincipal)
    def _handle_missing_principal(error: MissingPrincipal):
        return api_error(E.UNAUTHENTICATED, str(error))

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(error: NotFoundError):
        return api_error(E.NOT_FOUND, f"{error.resource} not found")

    @bp.errorhandler(UnauthorizedError)
    def _handle_unauthorized(error: UnauthorizedError):
        return api_error(E.FORBIDDEN, str(error))

    @bp.errorhandler(InvalidStateError)
    def _handle_invalid_state(error: InvalidStateError):
        return api_error(E.CONFLICT_STATE, str(error), details=error.details)

    @bp.errorhandler(ConfigurationConflictError)
    def _handle_config_conflict(error: ConfigurationConflictError):
        return api_error(E.CONFLICT_CONFIG, str(error), details=error.details)

    @bp.errorhandler(ValidationError)
    def _handle_validation(error: ValidationError):
        return api_error(E.VALIDATION_RULE, str(error), details=error.details)
