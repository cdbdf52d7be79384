"""
Approval Router — Workflow Factory + Step Assignment Engine.

Entry point of the engine: given an entity and its value, find the
threshold, build the workflow with one step per template stage, bind each
step to a user from the project role registry and open stage 1.

    route() → match_threshold → build workflow (PENDING, steps PENDING)
            → assign_steps (stage 1 IN_REVIEW) → workflow IN_PROGRESS
            → commit → REQUESTED notice for stage 1

Unresolved roles never fail routing: the step stays unassigned, a
warning is logged and the workflow payload carries it under ``warnings``.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from approval_routing.core.exceptions import InvalidStateError, ValidationError
from approval_routing.models import db
from approval_routing.models.approval import (
    ApprovalStep,
    ApprovalWorkflow,
    EntityKind,
    EntityRef,
    HistoryAction,
    StepStatus,
    UnassignedStepWarning,
    WorkflowStatus,
    to_decimal,
)
from approval_routing.models.base import utcnow
from approval_routing.services.approval_audit import record_history
from approval_routing.services.notification import ApprovalNotice, NoticeKind
from approval_routing.services.role_resolver import RoleResolver
from approval_routing.services.threshold_service import match_threshold

logger = logging.getLogger(__name__)


def calculate_due_date(start: datetime, target_days: int, stage: int) -> datetime:
    """Due date of one stage: start + ceil(target_days / stage) days.

    Later stages get shorter windows; each stage is computed from the same
    start, not chained from the previous stage.
    """
    return start + timedelta(days=math.ceil(target_days / stage))


def request_notice(workflow: ApprovalWorkflow, step: ApprovalStep, kind=NoticeKind.REQUESTED) -> ApprovalNotice | None:
    """Notice for whoever currently acts on ``step``, None when nobody does."""
    recipient = step.acting_user_id
    if recipient is None:
        return None
    return ApprovalNotice(
        kind=kind,
        tenant_id=workflow.tenant_id,
        recipient_user_id=recipient,
        workflow_id=workflow.id,
        entity_type=workflow.entity_type,
        entity_id=workflow.entity_id,
        stage=step.stage,
        role=step.role,
        due_date=step.due_date,
    )


class ApprovalRouter:
    """Builds and assigns approval workflows."""

    def __init__(self, resolver: RoleResolver, now_fn: Callable[[], datetime] = utcnow) -> None:
        self.resolver = resolver
        self.now_fn = now_fn

    # ── Queries ──────────────────────────────────────────────────────────

    def get_active_workflow(self, entity_type, entity_id, tenant_id: str | None = None) -> ApprovalWorkflow | None:
        ref = EntityRef.of(entity_type, entity_id)
        stmt = select(ApprovalWorkflow).where(
            ApprovalWorkflow.entity_type == ref.kind.value,
            ApprovalWorkflow.entity_id == ref.id,
            ApprovalWorkflow.status.in_(WorkflowStatus.ACTIVE),
        )
        if tenant_id is not None:
            stmt = stmt.where(ApprovalWorkflow.tenant_id == tenant_id)
        return db.session.execute(stmt.order_by(ApprovalWorkflow.id.desc()).limit(1)).scalar_one_or_none()

    # ── Routing ──────────────────────────────────────────────────────────

    def route(
        self,
        *,
        entity_type,
        entity_id,
        entity_value,
        project_id: int,
        tenant_id: str,
        initiated_by_user_id: int | None,
        notes: str | None = None,
    ) -> tuple[ApprovalWorkflow | None, list[ApprovalNotice]]:
        """Create and open a workflow, or return (None, []) when no threshold matches.

        Raises:
            ValidationError: malformed entity reference, value, tenant or project.
            InvalidStateError: the entity already has an active workflow.
        """
        ref = EntityRef.of(entity_type, entity_id)
        value = to_decimal(entity_value, "entity_value")
        if not tenant_id:
            raise ValidationError("tenant_id is required", details={"tenant_id": "required"})
        if project_id is None:
            raise ValidationError("project_id is required", details={"project_id": "required"})

        threshold = match_threshold(tenant_id, ref.kind, value)
        if threshold is None:
            logger.info(
                "No approval threshold matched; entity needs no approval",
                extra={"tenant_id": tenant_id, "entity_type": ref.kind.value, "entity_id": ref.id},
            )
            return None, []

        existing = self.get_active_workflow(ref.kind, ref.id, tenant_id)
        if existing is not None:
            raise InvalidStateError(
                f"{ref} already has an active approval workflow",
                details={"workflow_id": existing.id, "status": existing.status},
            )

        now = self.now_fn()
        workflow = ApprovalWorkflow(
            tenant_id=tenant_id,
            project_id=project_id,
            entity_type=ref.kind.value,
            entity_id=ref.id,
            entity_value=value,
            threshold_id=threshold.id,
            status=WorkflowStatus.PENDING,
            initiated_by_user_id=initiated_by_user_id,
            notes=(notes or "").strip() or None,
            is_overdue=False,
            created_at=now,
        )
        for template in threshold.step_templates:
            workflow.steps.append(ApprovalStep(
                stage=template.stage,
                role=template.role,
                is_required=template.required,
                description=template.description,
                status=StepStatus.PENDING,
                due_date=calculate_due_date(now, threshold.target_approval_days, template.stage),
            ))

        try:
            db.session.add(workflow)
            db.session.flush()
            record_history(
                workflow_id=workflow.id,
                action=HistoryAction.CREATE,
                actor_user_id=initiated_by_user_id,
                comments=f"Routed via threshold '{threshold.name}' ({len(workflow.steps)} stages)",
            )
            warnings = self.assign_steps(workflow)
            workflow.status = WorkflowStatus.IN_PROGRESS
            db.session.commit()
        except IntegrityError:
            # Lost the race on active_key to a concurrent routing request
            db.session.rollback()
            raise InvalidStateError(
                f"{ref} already has an active approval workflow",
                details={"entity_type": ref.kind.value, "entity_id": ref.id},
            ) from None
        except Exception:
            db.session.rollback()
            raise

        logger.info(
            "Approval workflow created",
            extra={
                "tenant_id": tenant_id,
                "workflow_id": workflow.id,
                "entity_type": ref.kind.value,
                "entity_id": ref.id,
                "threshold_id": threshold.id,
                "unassigned_steps": len(warnings),
            },
        )
        first = workflow.steps[0] if workflow.steps else None
        notice = request_notice(workflow, first) if first is not None else None
        return workflow, [notice] if notice else []

    # ── Assignment ───────────────────────────────────────────────────────

    def bind_step(self, workflow: ApprovalWorkflow, step: ApprovalStep) -> UnassignedStepWarning | None:
        """Resolve the step's role to a user; a warning value when nobody holds it."""
        resolution = self.resolver.resolve(
            workflow.tenant_id, workflow.project_id, step.role, EntityKind(workflow.entity_type),
        )
        if resolution is None:
            warning = UnassignedStepWarning(workflow.id, workflow.project_id, step.stage, step.role)
            logger.warning(
                "Approval step unassigned: no %s on project %s",
                step.role,
                workflow.project_id,
                extra={"tenant_id": workflow.tenant_id, "workflow_id": workflow.id, "stage": step.stage},
            )
            return warning
        step.assigned_user_id = resolution.user_id
        step.project_role_id = resolution.project_role_id
        return None

    def assign_steps(self, workflow: ApprovalWorkflow) -> list[UnassignedStepWarning]:
        """Bind every step and open stage 1, assigned or not."""
        warnings = []
        for step in sorted(workflow.steps, key=lambda s: s.stage):
            warning = self.bind_step(workflow, step)
            if warning is not None:
                warnings.append(warning)
            if step.stage == 1:
                step.status = StepStatus.IN_REVIEW
        return warnings
