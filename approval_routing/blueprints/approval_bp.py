"""
Approval Workflow Blueprint.

Routes (all under /api/v1/approvals):
  GET    /pending                              – steps the caller can act on now
  GET    /stats/me                             – caller's approval counters
  POST   /route                                – route an entity for approval
  POST   /requires-approval                    – would this value need approval?
  GET    /entities/<entity_type>/<entity_id>   – entity's active workflow
  GET    /<wid>                                – workflow with steps
  GET    /<wid>/history                        – immutable audit trail
  POST   /steps/<sid>/decide                   – record a decision
  POST   /steps/<sid>/delegate                 – hand the step to another user
  POST   /steps/<sid>/assign                   – bind an unassigned step
  POST   /<wid>/override                       – force-approve (privileged)
  POST   /<wid>/cancel                         – withdraw (privileged)
  POST   /sweep                                – run the escalation sweep now

The principal comes from X-Tenant-Id / X-User-Id (see request_context).
Privileged routes (assign, override, cancel, sweep) are gated upstream;
the engine does not check permissions for them. The service layer owns
all business rules and commits.
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

from approval_routing.blueprints import (
    json_body,
    pagination_args,
    register_error_handlers,
    require_tenant,
    require_user,
)
from approval_routing.services.approval_engine import get_engine
from approval_routing.utils.errors import E, api_error

logger = logging.getLogger(__name__)

approval_bp = Blueprint("approval_bp", __name__, url_prefix="/api/v1/approvals")
register_error_handlers(approval_bp)


# ── helpers ──────────────────────────────────────────────────────────────


def _int_field(data: dict, field: str, *, required: bool = True):
    raw = data.get(field)
    if raw is None or raw == "":
        if required:
            return None, api_error(E.VALIDATION_REQUIRED, f"{field} is required")
        return None, None
    if isinstance(raw, bool):
        return None, api_error(E.VALIDATION_INVALID, f"{field} must be an integer")
    try:
        return int(raw), None
    except (TypeError, ValueError):
        return None, api_error(E.VALIDATION_INVALID, f"{field} must be an integer")


def _step_payload(step) -> dict:
    data = step.to_dict()
    data["workflow"] = step.workflow.to_dict(include_steps=False)
    return data


# ═════════════════════════════════════════════════════════════════════════════
# QUERIES
# ═════════════════════════════════════════════════════════════════════════════


@approval_bp.route("/pending", methods=["GET"])
def pending_approvals():
    """Steps the caller can decide now, soonest due first.

    Query params: entity_type?, project_id?, limit?, offset?
    """
    tenant_id, user_id = require_tenant(), require_user()
    limit, offset = pagination_args()
    steps, total = get_engine().pending_for_user(
        tenant_id,
        user_id,
        entity_type=request.args.get("entity_type") or None,
        project_id=request.args.get("project_id", type=int),
        limit=limit,
        offset=offset,
    )
    return jsonify({
        "approvals": [_step_payload(s) for s in steps],
        "total": total,
        "limit": limit,
        "offset": offset,
    })


@approval_bp.route("/stats/me", methods=["GET"])
def my_stats():
    tenant_id, user_id = require_tenant(), require_user()
    return jsonify(get_engine().stats_for_user(tenant_id, user_id))


@approval_bp.route("/<int:workflow_id>", methods=["GET"])
def get_workflow(workflow_id):
    workflow = get_engine().get_workflow(workflow_id, tenant_id=require_tenant())
    return jsonify(workflow.to_dict())


@approval_bp.route("/<int:workflow_id>/history", methods=["GET"])
def workflow_history(workflow_id):
    entries = get_engine().get_history(workflow_id, tenant_id=require_tenant())
    return jsonify({"workflow_id": workflow_id, "history": [h.to_dict() for h in entries]})


@approval_bp.route("/entities/<entity_type>/<entity_id>", methods=["GET"])
def entity_workflow(entity_type, entity_id):
    """Active workflow of one entity; ``workflow`` is null when there is none."""
    workflow = get_engine().get_active_workflow(entity_type, entity_id, tenant_id=require_tenant())
    return jsonify({
        "entity_type": entity_type.upper(),
        "entity_id": entity_id,
        "workflow": workflow.to_dict() if workflow else None,
    })


# ═════════════════════════════════════════════════════════════════════════════
# ROUTING
# ═════════════════════════════════════════════════════════════════════════════


@approval_bp.route("/route", methods=["POST"])
def route_for_approval():
    """Route an entity into its approval workflow.

    Body: { entity_type, entity_id, entity_value, project_id, notes? }
    Returns 201 with the workflow, or 200 with workflow=null when the value
    falls under no threshold.
    """
    tenant_id, user_id = require_tenant(), require_user()
    data = json_body()
    project_id, err = _int_field(data, "project_id")
    if err:
        return err
    if data.get("entity_value") is None:
        return api_error(E.VALIDATION_REQUIRED, "entity_value is required")

    workflow = get_engine().route_for_approval(
        data.get("entity_type"),
        data.get("entity_id"),
        data.get("entity_value"),
        project_id=project_id,
        tenant_id=tenant_id,
        initiated_by_user_id=user_id,
        notes=data.get("notes"),
    )
    if workflow is None:
        return jsonify({"requires_approval": False, "workflow": None}), 200
    return jsonify({"requires_approval": True, "workflow": workflow.to_dict()}), 201


@approval_bp.route("/requires-approval", methods=["POST"])
def requires_approval():
    """Body: { entity_type, entity_value }"""
    tenant_id = require_tenant()
    data = json_body()
    if data.get("entity_value") is None:
        return api_error(E.VALIDATION_REQUIRED, "entity_value is required")
    required = get_engine().requires_approval(data.get("entity_type"), data.get("entity_value"), tenant_id)
    return jsonify({"requires_approval": required})


# ═════════════════════════════════════════════════════════════════════════════
# STEP ACTIONS
# ═════════════════════════════════════════════════════════════════════════════


@approval_bp.route("/steps/<int:step_id>/decide", methods=["POST"])
def decide(step_id):
    """Body: { decision, comments?, conditions? }"""
    tenant_id, user_id = require_tenant(), require_user()
    data = json_body()
    if not data.get("decision"):
        return api_error(E.VALIDATION_REQUIRED, "decision is required")
    workflow = get_engine().decide(
        step_id,
        data["decision"],
        user_id,
        comments=data.get("comments"),
        conditions=data.get("conditions"),
        tenant_id=tenant_id,
    )
    return jsonify(workflow.to_dict())


@approval_bp.route("/steps/<int:step_id>/delegate", methods=["POST"])
def delegate(step_id):
    """Body: { to_user_id, reason? }"""
    tenant_id, user_id = require_tenant(), require_user()
    data = json_body()
    to_user_id, err = _int_field(data, "to_user_id")
    if err:
        return err
    step = get_engine().delegate(step_id, user_id, to_user_id, data.get("reason"), tenant_id=tenant_id)
    return jsonify(step.to_dict())


@approval_bp.route("/steps/<int:step_id>/assign", methods=["POST"])
def assign(step_id):
    """Body: { user_id, reason? }"""
    tenant_id, actor_id = require_tenant(), require_user()
    data = json_body()
    user_id, err = _int_field(data, "user_id")
    if err:
        return err
    step = get_engine().assign_step(step_id, user_id, actor_id, data.get("reason"), tenant_id=tenant_id)
    return jsonify(step.to_dict())


# ═════════════════════════════════════════════════════════════════════════════
# ADMINISTRATIVE
# ═════════════════════════════════════════════════════════════════════════════


@approval_bp.route("/<int:workflow_id>/override", methods=["POST"])
def override(workflow_id):
    """Body: { reason }"""
    tenant_id, user_id = require_tenant(), require_user()
    data = json_body()
    workflow = get_engine().override(workflow_id, user_id, data.get("reason"), tenant_id=tenant_id)
    return jsonify(workflow.to_dict())


@approval_bp.route("/<int:workflow_id>/cancel", methods=["POST"])
def cancel(workflow_id):
    """Body: { reason }"""
    tenant_id, user_id = require_tenant(), require_user()
    data = json_body()
    workflow = get_engine().cancel(workflow_id, user_id, data.get("reason"), tenant_id=tenant_id)
    return jsonify(workflow.to_dict())


@approval_bp.route("/sweep", methods=["POST"])
def sweep():
    flagged = get_engine().sweep_overdue()
    logger.info("Escalation sweep triggered via API: %d workflows flagged", flagged)
    return jsonify({"workflows_flagged": flagged})
