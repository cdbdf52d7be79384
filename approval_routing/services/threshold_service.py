"""
Threshold Registry & Matcher.

Thresholds map a value band of one entity type to an ordered approval chain.
This module owns their lifecycle (create / update / soft delete) and the
matching rule used when an entity is routed.

Business rules:
    - Ranges are half-open [min_value, max_value); NULL max is unbounded.
    - Active thresholds for the same (tenant, entity_type) never overlap.
    - A threshold referenced by a PENDING / IN_PROGRESS workflow keeps its
      range and approval_steps frozen (ConfigurationConflictError); the
      caller must create a new threshold instead.
    - Deleting a threshold that any workflow has ever used deactivates it.
"""

from __future__ import annotations

import logging
from decimal import Decimal

from flask import current_app, has_app_context
from sqlalchemy import func, select

from approval_routing.core.exceptions import ConfigurationConflictError, ValidationError
from approval_routing.models import db
from approval_routing.models.approval import (
    ApprovalThreshold,
    ApprovalWorkflow,
    EntityKind,
    WorkflowStatus,
    parse_step_templates,
    to_decimal,
)
from approval_routing.services.helpers.scoped_queries import get_scoped

logger = logging.getLogger(__name__)

_FLAG_FIELDS = (
    "requires_risk_assessment",
    "requires_design_review",
    "requires_hsqe",
    "requires_client_approval",
)
_SHAPE_FIELDS = ("min_value", "max_value", "approval_steps")


# ── Private helpers ────────────────────────────────────────────────────────────


def _parse_range(min_raw, max_raw) -> tuple[Decimal, Decimal | None]:
    if min_raw is None or min_raw == "":
        raise ValidationError("min_value is required", details={"min_value": "required"})
    min_value = to_decimal(min_raw, "min_value")
    if min_value < 0:
        raise ValidationError("min_value must be >= 0", details={"min_value": "negative"})
    max_value = None if max_raw in (None, "") else to_decimal(max_raw, "max_value")
    if max_value is not None and max_value <= min_value:
        raise ValidationError(
            "max_value must be greater than min_value",
            details={"max_value": "must exceed min_value"},
        )
    return min_value, max_value


def _parse_positive_int(raw, field: str) -> int:
    if isinstance(raw, bool):
        raise ValidationError(f"{field} must be an integer", details={field: "invalid"})
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer", details={field: "invalid"}) from None
    if value < 1:
        raise ValidationError(f"{field} must be >= 1", details={field: "invalid"})
    return value


def _default_target_days() -> int:
    if has_app_context():
        return current_app.config.get("APPROVAL_DEFAULT_TARGET_DAYS", 5)
    return 5


def _find_overlap(tenant_id, entity_type, min_value, max_value, exclude_id=None):
    stmt = select(ApprovalThreshold).where(
        ApprovalThreshold.tenant_id == tenant_id,
        ApprovalThreshold.entity_type == entity_type,
        ApprovalThreshold.is_active.is_(True),
    )
    if exclude_id is not None:
        stmt = stmt.where(ApprovalThreshold.id != exclude_id)
    for other in db.session.execute(stmt.order_by(ApprovalThreshold.min_value)).scalars():
        if other.overlaps(min_value, max_value):
            return other
    return None


def _raise_overlap(other: ApprovalThreshold):
    raise ConfigurationConflictError(
        "Threshold range overlaps with existing threshold",
        details={
            "overlapping_threshold": {
                "id": other.id,
                "name": other.name,
                "range": other.range_label(),
            }
        },
    )


def _next_sequence(tenant_id, entity_type) -> int:
    current = db.session.execute(
        select(func.max(ApprovalThreshold.sequence)).where(
            ApprovalThreshold.tenant_id == tenant_id,
            ApprovalThreshold.entity_type == entity_type,
        )
    ).scalar()
    return (current or 0) + 1


def count_active_workflows(threshold_id: int) -> int:
    return db.session.execute(
        select(func.count(ApprovalWorkflow.id)).where(
            ApprovalWorkflow.threshold_id == threshold_id,
            ApprovalWorkflow.status.in_(WorkflowStatus.ACTIVE),
        )
    ).scalar() or 0


def count_workflows(threshold_id: int) -> int:
    return db.session.execute(
        select(func.count(ApprovalWorkflow.id)).where(ApprovalWorkflow.threshold_id == threshold_id)
    ).scalar() or 0


# ── Registry ───────────────────────────────────────────────────────────────────


def list_thresholds(tenant_id: str, entity_type: str | None = None, is_active: bool | None = None) -> list[dict]:
    """Tenant thresholds ordered by entity type, sequence, min value; with usage counts."""
    stmt = select(ApprovalThreshold).where(ApprovalThreshold.tenant_id == tenant_id)
    if entity_type:
        stmt = stmt.where(ApprovalThreshold.entity_type == EntityKind.parse(entity_type).value)
    if is_active is not None:
        stmt = stmt.where(ApprovalThreshold.is_active.is_(is_active))
    stmt = stmt.order_by(
        ApprovalThreshold.entity_type, ApprovalThreshold.sequence, ApprovalThreshold.min_value,
    )
    items = []
    for t in db.session.execute(stmt).scalars():
        data = t.to_dict()
        data["workflow_count"] = count_workflows(t.id)
        items.append(data)
    return items


def get_threshold(tenant_id: str, threshold_id: int) -> ApprovalThreshold:
    return get_scoped(ApprovalThreshold, threshold_id, tenant_id=tenant_id)


def get_threshold_detail(tenant_id: str, threshold_id: int) -> dict:
    """Threshold payload plus its ten most recent workflows."""
    threshold = get_threshold(tenant_id, threshold_id)
    recent = db.session.execute(
        select(ApprovalWorkflow)
        .where(ApprovalWorkflow.threshold_id == threshold.id)
        .order_by(ApprovalWorkflow.created_at.desc(), ApprovalWorkflow.id.desc())
        .limit(10)
    ).scalars().all()
    data = threshold.to_dict()
    data["workflow_count"] = count_workflows(threshold.id)
    data["active_workflow_count"] = count_active_workflows(threshold.id)
    data["recent_workflows"] = [w.to_dict(include_steps=False) for w in recent]
    return data


def create_threshold(tenant_id: str, data: dict) -> ApprovalThreshold:
    """Validate and insert a threshold.

    Raises:
        ValidationError: missing/malformed fields or step templates.
        ConfigurationConflictError: range overlaps an active threshold.
    """
    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError("name is required", details={"name": "required"})
    entity_type = EntityKind.parse(data.get("entity_type")).value
    min_value, max_value = _parse_range(data.get("min_value"), data.get("max_value"))
    templates = parse_step_templates(data.get("approval_steps"))
    is_active = data.get("is_active", True) is not False

    if is_active:
        other = _find_overlap(tenant_id, entity_type, min_value, max_value)
        if other is not None:
            _raise_overlap(other)

    sequence = data.get("sequence")
    target_days = data.get("target_approval_days")
    threshold = ApprovalThreshold(
        tenant_id=tenant_id,
        entity_type=entity_type,
        name=name,
        description=(data.get("description") or "").strip() or None,
        min_value=min_value,
        max_value=max_value,
        approval_steps=[t.to_dict() for t in templates],
        target_approval_days=_parse_positive_int(
            target_days if target_days is not None else _default_target_days(), "target_approval_days",
        ),
        sequence=(
            _parse_positive_int(sequence, "sequence")
            if sequence is not None
            else _next_sequence(tenant_id, entity_type)
        ),
        is_active=is_active,
        **{f: bool(data.get(f, False)) for f in _FLAG_FIELDS},
    )
    db.session.add(threshold)
    db.session.commit()

    logger.info(
        "Approval threshold created",
        extra={"tenant_id": tenant_id, "threshold_id": threshold.id, "entity_type": entity_type},
    )
    return threshold


def update_threshold(tenant_id: str, threshold_id: int, data: dict) -> ApprovalThreshold:
    """Partial update.

    Range / approval_steps changes are refused while active workflows
    reference the threshold. Name, description, flags, sequence, target days
    and the active flag remain editable.
    """
    threshold = get_threshold(tenant_id, threshold_id)

    shape_change = [f for f in _SHAPE_FIELDS if f in data]
    if shape_change:
        active = count_active_workflows(threshold.id)
        if active:
            raise ConfigurationConflictError(
                "Cannot modify threshold rules while it has active workflows",
                details={
                    "active_workflows": active,
                    "fields": shape_change,
                    "suggestion": "Create a new threshold instead or wait for workflows to complete",
                },
            )

    min_value = Decimal(threshold.min_value)
    max_value = Decimal(threshold.max_value) if threshold.max_value is not None else None
    if "min_value" in data or "max_value" in data:
        min_value, max_value = _parse_range(
            data.get("min_value", min_value),
            data["max_value"] if "max_value" in data else max_value,
        )
    is_active = threshold.is_active if "is_active" not in data else bool(data["is_active"])

    if is_active and ("min_value" in data or "max_value" in data or not threshold.is_active):
        other = _find_overlap(tenant_id, threshold.entity_type, min_value, max_value, exclude_id=threshold.id)
        if other is not None:
            _raise_overlap(other)

    changes: dict = {}
    if "name" in data:
        changes["name"] = (data["name"] or "").strip()
        if not changes["name"]:
            raise ValidationError("name cannot be empty", details={"name": "required"})
    if "description" in data:
        changes["description"] = (data["description"] or "").strip() or None
    if "approval_steps" in data:
        changes["approval_steps"] = [t.to_dict() for t in parse_step_templates(data["approval_steps"])]
    if "target_approval_days" in data:
        changes["target_approval_days"] = _parse_positive_int(data["target_approval_days"], "target_approval_days")
    if "sequence" in data:
        changes["sequence"] = _parse_positive_int(data["sequence"], "sequence")
    for flag in _FLAG_FIELDS:
        if flag in data:
            changes[flag] = bool(data[flag])
    changes.update(min_value=min_value, max_value=max_value, is_active=is_active)

    # Nothing touches the row until every field has parsed
    for field, value in changes.items():
        setattr(threshold, field, value)

    db.session.commit()
    logger.info(
        "Approval threshold updated",
        extra={"tenant_id": tenant_id, "threshold_id": threshold.id, "fields": sorted(data)},
    )
    return threshold


def delete_threshold(tenant_id: str, threshold_id: int) -> dict:
    """Hard-delete an unused threshold; deactivate one that workflows reference."""
    threshold = get_threshold(tenant_id, threshold_id)
    if count_workflows(threshold.id):
        threshold.is_active = False
        db.session.commit()
        logger.info(
            "Approval threshold deactivated",
            extra={"tenant_id": tenant_id, "threshold_id": threshold.id},
        )
        return {
            "deleted": False,
            "deactivated": True,
            "message": "Threshold has been used in workflows and was deactivated instead of deleted",
        }

    db.session.delete(threshold)
    db.session.commit()
    logger.info("Approval threshold deleted", extra={"tenant_id": tenant_id, "threshold_id": threshold_id})
    return {"deleted": True, "deactivated": False, "message": "Threshold deleted"}


def evaluate_threshold(tenant_id: str, threshold_id: int, value) -> dict:
    """Would ``value`` fall inside this threshold's range?"""
    if value is None or value == "":
        raise ValidationError("value is required", details={"value": "required"})
    threshold = get_threshold(tenant_id, threshold_id)
    return {
        "matches": threshold.contains(value),
        "threshold": {
            "id": threshold.id,
            "name": threshold.name,
            "min_value": str(threshold.min_value),
            "max_value": str(threshold.max_value) if threshold.max_value is not None else None,
        },
        "value": str(to_decimal(value)),
    }


# ── Matcher ────────────────────────────────────────────────────────────────────


def match_threshold(tenant_id: str, entity_type, value) -> ApprovalThreshold | None:
    """Return the active threshold whose [min, max) contains ``value``, or None.

    More than one hit means the registry is corrupt; the lowest
    (sequence, id) wins and a warning is logged.
    """
    kind = EntityKind.parse(entity_type)
    value = to_decimal(value, "entity_value")

    candidates = db.session.execute(
        select(ApprovalThreshold)
        .where(
            ApprovalThreshold.tenant_id == tenant_id,
            ApprovalThreshold.entity_type == kind.value,
            ApprovalThreshold.is_active.is_(True),
        )
        .order_by(ApprovalThreshold.min_value, ApprovalThreshold.id)
    ).scalars().all()

    hits = [t for t in candidates if t.contains(value)]
    if not hits:
        return None
    if len(hits) > 1:
        hits.sort(key=lambda t: (t.sequence, t.id))
        logger.warning(
            "Overlapping approval thresholds for %s value %s: %s; using %s",
            kind.value,
            value,
            [t.id for t in hits],
            hits[0].id,
            extra={"tenant_id": tenant_id, "entity_type": kind.value},
        )
    return hits[0]


def requires_approval(tenant_id: str, entity_type, value) -> bool:
    return match_threshold(tenant_id, entity_type, value) is not None


# ── Default construction threshold set ─────────────────────────────────────────


def _chain(*roles):
    return [{"stage": i, "role": r, "required": True} for i, r in enumerate(roles, 1)]


DEFAULT_THRESHOLDS: list[dict] = [
    {"entity_type": "PACKAGE", "name": "Small Works Package", "min_value": 0, "max_value": 50000,
     "sequence": 1, "target_approval_days": 3,
     "approval_steps": _chain("PACKAGE_MANAGER", "COMMERCIAL_MANAGER"),
     "description": "Packages under 50k, two-stage approval"},
    {"entity_type": "PACKAGE", "name": "Medium Value Package", "min_value": 50000, "max_value": 250000,
     "sequence": 2, "target_approval_days": 5, "requires_risk_assessment": True,
     "approval_steps": _chain("PACKAGE_MANAGER", "COMMERCIAL_MANAGER", "PROJECT_MANAGER"),
     "description": "Packages 50k to 250k, three-stage approval with risk assessment"},
    {"entity_type": "PACKAGE", "name": "High Value Package", "min_value": 250000, "max_value": 1000000,
     "sequence": 3, "target_approval_days": 7, "requires_risk_assessment": True,
     "requires_design_review": True,
     "approval_steps": _chain("PACKAGE_MANAGER", "COMMERCIAL_MANAGER", "PROJECT_MANAGER", "PROJECT_DIRECTOR"),
     "description": "Packages 250k to 1M, four-stage approval with risk and design review"},
    {"entity_type": "PACKAGE", "name": "Major Package", "min_value": 1000000, "max_value": None,
     "sequence": 4, "target_approval_days": 10, "requires_risk_assessment": True,
     "requires_design_review": True, "requires_client_approval": True,
     "approval_steps": _chain("PACKAGE_MANAGER", "COMMERCIAL_MANAGER", "PROJECT_MANAGER",
                              "PROJECT_DIRECTOR", "CLIENT_REPRESENTATIVE"),
     "description": "Packages over 1M, five-stage approval with client sign-off"},
    {"entity_type": "CONTRACT", "name": "Standard Contract", "min_value": 0, "max_value": 500000,
     "sequence": 1, "target_approval_days": 5,
     "approval_steps": _chain("CONTRACTS_MANAGER", "COMMERCIAL_MANAGER"),
     "description": "Contracts under 500k"},
    {"entity_type": "CONTRACT", "name": "Major Contract", "min_value": 500000, "max_value": None,
     "sequence": 2, "target_approval_days": 7, "requires_client_approval": True,
     "approval_steps": _chain("CONTRACTS_MANAGER", "COMMERCIAL_MANAGER", "PROJECT_DIRECTOR"),
     "description": "Contracts over 500k, requires director approval"},
    {"entity_type": "VARIATION", "name": "Minor Variation", "min_value": 0, "max_value": 10000,
     "sequence": 1, "target_approval_days": 2,
     "approval_steps": _chain("PACKAGE_MANAGER"),
     "description": "Variations under 10k, single approval"},
    {"entity_type": "VARIATION", "name": "Standard Variation", "min_value": 10000, "max_value": 50000,
     "sequence": 2, "target_approval_days": 3,
     "approval_steps": _chain("PACKAGE_MANAGER", "COMMERCIAL_MANAGER"),
     "description": "Variations 10k to 50k"},
    {"entity_type": "VARIATION", "name": "Significant Variation", "min_value": 50000, "max_value": None,
     "sequence": 3, "target_approval_days": 5, "requires_client_approval": True,
     "approval_steps": _chain("PACKAGE_MANAGER", "COMMERCIAL_MANAGER", "PROJECT_MANAGER"),
     "description": "Variations over 50k, requires PM and client approval"},
    {"entity_type": "PAYMENT_APPLICATION", "name": "Standard Payment", "min_value": 0, "max_value": 100000,
     "sequence": 1, "target_approval_days": 3,
     "approval_steps": _chain("QS_COST_MANAGER", "COMMERCIAL_MANAGER"),
     "description": "Payment applications under 100k"},
    {"entity_type": "PAYMENT_APPLICATION", "name": "Large Payment", "min_value": 100000, "max_value": None,
     "sequence": 2, "target_approval_days": 5,
     "approval_steps": _chain("QS_COST_MANAGER", "COMMERCIAL_MANAGER", "PROJECT_DIRECTOR"),
     "description": "Payment applications over 100k, requires director approval"},
]


def seed_default_thresholds(tenant_id: str) -> dict:
    """Install DEFAULT_THRESHOLDS for a tenant.

    Entries whose range would overlap an existing active threshold are
    skipped, so re-running is harmless.
    """
    created, skipped = [], []
    for entry in DEFAULT_THRESHOLDS:
        try:
            threshold = create_threshold(tenant_id, entry)
        except ConfigurationConflictError:
            db.session.rollback()
            skipped.append(f"{entry['entity_type']}:{entry['name']}")
            continue
        created.append(threshold.id)
    logger.info(
        "Default approval thresholds seeded: %d created, %d skipped",
        len(created), len(skipped),
        extra={"tenant_id": tenant_id},
    )
    return {"created": created, "skipped": skipped}
