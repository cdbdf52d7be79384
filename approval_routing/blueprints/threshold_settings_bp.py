"""
Approval threshold settings.

Tenant administrators configure which value bands require approval and the
chain of roles each band routes through.

Routes (all under /api/v1/settings/approvals):
  GET    /thresholds                             – list (entity_type?, is_active?)
  POST   /thresholds                             – create
  POST   /thresholds/seed-defaults               – install the default construction set
  GET    /thresholds/<tid>                       – detail with recent workflows
  PUT    /thresholds/<tid>                       – update
  DELETE /thresholds/<tid>                       – delete, or deactivate when used
  POST   /thresholds/<tid>/test                  – does a value fall in range?
  GET    /thresholds/match/<entity_type>/<value> – which threshold applies
"""

import logging

from flask import Blueprint, jsonify, request

from approval_routing.blueprints import json_body, register_error_handlers, require_tenant
from approval_routing.services import threshold_service
from approval_routing.utils.errors import E, api_error

logger = logging.getLogger(__name__)

threshold_settings_bp = Blueprint(
    "threshold_settings_bp", __name__, url_prefix="/api/v1/settings/approvals",
)
register_error_handlers(threshold_settings_bp)


def _bool_arg(name):
    raw = request.args.get(name)
    if raw is None or raw == "":
        return None
    return raw.lower() in ("1", "true", "yes")


@threshold_settings_bp.route("/thresholds", methods=["GET"])
def list_thresholds():
    tenant_id = require_tenant()
    items = threshold_service.list_thresholds(
        tenant_id,
        entity_type=request.args.get("entity_type") or None,
        is_active=_bool_arg("is_active"),
    )
    return jsonify({"thresholds": items, "total": len(items)})


@threshold_settings_bp.route("/thresholds", methods=["POST"])
def create_threshold():
    """Body: { entity_type, name, min_value, max_value?, approval_steps, ... }"""
    tenant_id = require_tenant()
    data = json_body()
    if not data:
        return api_error(E.VALIDATION_REQUIRED, "Request body is required")
    threshold = threshold_service.create_threshold(tenant_id, data)
    return jsonify(threshold.to_dict()), 201


@threshold_settings_bp.route("/thresholds/seed-defaults", methods=["POST"])
def seed_defaults():
    result = threshold_service.seed_default_thresholds(require_tenant())
    status = 201 if result["created"] else 200
    return jsonify(result), status


@threshold_settings_bp.route("/thresholds/<int:threshold_id>", methods=["GET"])
def get_threshold(threshold_id):
    return jsonify(threshold_service.get_threshold_detail(require_tenant(), threshold_id))


@threshold_settings_bp.route("/thresholds/<int:threshold_id>", methods=["PUT"])
def update_threshold(threshold_id):
    tenant_id = require_tenant()
    data = json_body()
    if not data:
        return api_error(E.VALIDATION_REQUIRED, "Request body is required")
    threshold = threshold_service.update_threshold(tenant_id, threshold_id, data)
    return jsonify(threshold.to_dict())


@threshold_settings_bp.route("/thresholds/<int:threshold_id>", methods=["DELETE"])
def delete_threshold(threshold_id):
    return jsonify(threshold_service.delete_threshold(require_tenant(), threshold_id))


@threshold_settings_bp.route("/thresholds/<int:threshold_id>/test", methods=["POST"])
def evaluate_threshold(threshold_id):
    """Body: { value }"""
    data = json_body()
    return jsonify(threshold_service.evaluate_threshold(require_tenant(), threshold_id, data.get("value")))


@threshold_settings_bp.route("/thresholds/match/<entity_type>/<value>", methods=["GET"])
def match_threshold(entity_type, value):
    threshold = threshold_service.match_threshold(require_tenant(), entity_type, value)
    return jsonify({
        "entity_type": entity_type.upper(),
        "value": value,
        "requires_approval": threshold is not None,
        "threshold": threshold.to_dict() if threshold else None,
    })
