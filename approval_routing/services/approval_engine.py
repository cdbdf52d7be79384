"""
ApprovalEngine — the public façade of the approval subsystem.

Wires the role resolver, router and workflow service around one injected
Notifier and clock. Every mutating call commits first and only then hands
its notices to the notifier; a failing notifier is logged and ignored.

Usage:
    engine = get_engine()                     # inside an app context
    wf = engine.route_for_approval("PACKAGE", "PKG-1", 75000, project_id=1,
                                   tenant_id="t1", initiated_by_user_id=9)
    engine.decide(wf.steps[0].id, "APPROVED", actor_id=wf.steps[0].assigned_user_id)
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

from flask import Flask, current_app

from approval_routing.models.approval import ApprovalHistory, ApprovalStep, ApprovalWorkflow
from approval_routing.models.base import utcnow
from approval_routing.services import approval_audit, threshold_service
from approval_routing.services.approval_router import ApprovalRouter
from approval_routing.services.approval_workflow import ApprovalWorkflowService
from approval_routing.services.helpers.scoped_queries import load
from approval_routing.services.notification import InAppNotifier, Notifier, NullNotifier, dispatch
from approval_routing.services.role_resolver import RoleResolver

logger = logging.getLogger(__name__)

EXTENSION_KEY = "approval_engine"


class ApprovalEngine:
    def __init__(
        self,
        notifier: Notifier | None = None,
        resolver: RoleResolver | None = None,
        now_fn: Callable[[], datetime] = utcnow,
    ) -> None:
        self.notifier = notifier or NullNotifier()
        self.resolver = resolver or RoleResolver()
        self.now_fn = now_fn
        self.router = ApprovalRouter(self.resolver, now_fn=now_fn)
        self.workflows = ApprovalWorkflowService(self.resolver, self.router, now_fn=now_fn)

    def _deliver(self, notices) -> None:
        if notices:
            dispatch(self.notifier, notices)

    # ── Routing ──────────────────────────────────────────────────────────

    def route_for_approval(
        self,
        entity_type,
        entity_id,
        entity_value,
        project_id: int,
        tenant_id: str,
        initiated_by_user_id: int | None,
        notes: str | None = None,
    ) -> ApprovalWorkflow | None:
        """Create the approval workflow for an entity, or None when no threshold applies."""
        workflow, notices = self.router.route(
            entity_type=entity_type,
            entity_id=entity_id,
            entity_value=entity_value,
            project_id=project_id,
            tenant_id=tenant_id,
            initiated_by_user_id=initiated_by_user_id,
            notes=notes,
        )
        self._deliver(notices)
        return workflow

    def requires_approval(self, entity_type, entity_value, tenant_id: str) -> bool:
        return threshold_service.requires_approval(tenant_id, entity_type, entity_value)

    def get_active_workflow(self, entity_type, entity_id, tenant_id: str | None = None) -> ApprovalWorkflow | None:
        return self.router.get_active_workflow(entity_type, entity_id, tenant_id)

    def get_workflow(self, workflow_id: int, tenant_id: str | None = None) -> ApprovalWorkflow:
        return load(ApprovalWorkflow, workflow_id, tenant_id=tenant_id)

    def get_history(self, workflow_id: int, tenant_id: str | None = None) -> list[ApprovalHistory]:
        return approval_audit.get_history(workflow_id, tenant_id=tenant_id)

    # ── Decisions ────────────────────────────────────────────────────────

    def decide(
        self,
        step_id: int,
        decision,
        actor_id: int,
        comments: str | None = None,
        conditions: str | None = None,
        *,
        tenant_id: str | None = None,
    ) -> ApprovalWorkflow:
        workflow, notices = self.workflows.decide(
            step_id, decision, actor_id, comments, conditions, tenant_id=tenant_id,
        )
        self._deliver(notices)
        return workflow

    def delegate(
        self,
        step_id: int,
        from_user_id: int,
        to_user_id: int,
        reason: str | None = None,
        *,
        tenant_id: str | None = None,
    ) -> ApprovalStep:
        step, notices = self.workflows.delegate(step_id, from_user_id, to_user_id, reason, tenant_id=tenant_id)
        self._deliver(notices)
        return step

    def assign_step(
        self,
        step_id: int,
        user_id: int,
        actor_id: int | None,
        reason: str | None = None,
        *,
        tenant_id: str | None = None,
    ) -> ApprovalStep:
        step, notices = self.workflows.assign_step(step_id, user_id, actor_id, reason, tenant_id=tenant_id)
        self._deliver(notices)
        return step

    def override(self, workflow_id: int, actor_id: int, reason: str, *, tenant_id: str | None = None) -> ApprovalWorkflow:
        return self.workflows.override(workflow_id, actor_id, reason, tenant_id=tenant_id)

    def cancel(self, workflow_id: int, actor_id: int, reason: str, *, tenant_id: str | None = None) -> ApprovalWorkflow:
        return self.workflows.cancel(workflow_id, actor_id, reason, tenant_id=tenant_id)

    # ── Sweeper & queries ────────────────────────────────────────────────

    def sweep_overdue(self) -> int:
        flagged, notices = self.workflows.sweep_overdue()
        self._deliver(notices)
        return flagged

    def pending_for_user(self, tenant_id: str, user_id: int, **filters) -> tuple[list[ApprovalStep], int]:
        return self.workflows.pending_for_user(tenant_id, user_id, **filters)

    def stats_for_user(self, tenant_id: str, user_id: int) -> dict:
        return self.workflows.stats_for_user(tenant_id, user_id)


# ── Flask integration ─────────────────────────────────────────────────────────


def init_app(app: Flask, engine: ApprovalEngine | None = None) -> ApprovalEngine:
    """Build the engine from config (unless one is given) and register it on the app."""
    if engine is None:
        notifier = InAppNotifier() if app.config.get("APPROVAL_NOTIFICATIONS_ENABLED", True) else NullNotifier()
        engine = ApprovalEngine(notifier=notifier)
    app.extensions[EXTENSION_KEY] = engine
    logger.info("ApprovalEngine registered (notifier=%s)", type(engine.notifier).__name__)
    return engine


def get_engine(app: Flask | None = None) -> ApprovalEngine:
    app = app or current_app
    return app.extensions[EXTENSION_KEY]
