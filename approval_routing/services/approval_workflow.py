"""
Approval Workflow Service — decisions and everything that moves a workflow.

Components:
    - Decision State Machine:     decide()
    - Progression Controller:     _advance() / _reject() over current_step()
    - Delegation Manager:         delegate(), assign_step()
    - Override / Cancel:          override(), cancel(), escalate()
    - Escalation Sweeper:         sweep_overdue()

Transaction rules:
    - Every public mutator is one transaction: the step change, its history
      row and the resulting workflow transition commit together, or nothing
      is written.
    - The decided step is read with SELECT ... FOR UPDATE where the database
      supports it. Everywhere, ApprovalStep.version makes a concurrent loser's
      UPDATE match no row; that StaleDataError becomes InvalidStateError.
    - Methods return (result, notices). Notices are delivered by the caller
      after commit, never inside the transaction.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import func, or_, select
from sqlalchemy.orm.attributes import flag_modified
from sqlalchemy.orm.exc import StaleDataError

from approval_routing.core.exceptions import (
    InvalidStateError,
    UnauthorizedError,
    ValidationError,
)
from approval_routing.models import db
from approval_routing.models.approval import (
    DECISION_STEP_STATUS,
    ApprovalStep,
    ApprovalWorkflow,
    Decision,
    EntityKind,
    HistoryAction,
    StepStatus,
    WorkflowStatus,
    current_step,
)
from approval_routing.models.base import utcnow
from approval_routing.services.approval_audit import record_history
from approval_routing.services.approval_router import ApprovalRouter, request_notice
from approval_routing.services.helpers.scoped_queries import load
from approval_routing.services.notification import ApprovalNotice, NoticeKind
from approval_routing.services.role_resolver import RoleResolver

logger = logging.getLogger(__name__)

# Steps a user can act on right now
_ACTIONABLE = (StepStatus.IN_REVIEW, StepStatus.CHANGES_REQUESTED)


def _required_text(value, field: str, message: str) -> str:
    text = (value or "").strip()
    if not text:
        raise ValidationError(message, details={field: "required"})
    return text


class ApprovalWorkflowService:
    """Moves workflows through their lifecycle."""

    def __init__(
        self,
        resolver: RoleResolver,
        router: ApprovalRouter,
        now_fn: Callable[[], datetime] = utcnow,
    ) -> None:
        self.resolver = resolver
        self.router = router
        self.now_fn = now_fn

    # ── Transaction helper ───────────────────────────────────────────────

    def _run(self, fn, step_id: int | None = None):
        """Run one mutation; roll back on any failure, map version conflicts."""
        try:
            result = fn()
            db.session.commit()
            return result
        except StaleDataError:
            db.session.rollback()
            logger.warning("Concurrent modification of approval step %s", step_id)
            raise InvalidStateError(
                "Step no longer decidable: it was changed by a concurrent request",
                details={"step_id": step_id},
            ) from None
        except Exception:
            db.session.rollback()
            raise

    # ── Decision State Machine ───────────────────────────────────────────

    def decide(
        self,
        step_id: int,
        decision,
        actor_id: int,
        comments: str | None = None,
        conditions: str | None = None,
        *,
        tenant_id: str | None = None,
    ) -> tuple[ApprovalWorkflow, list[ApprovalNotice]]:
        """Record one approver decision on one step.

        Raises, in check order:
            NotFoundError: step does not exist (or belongs to another tenant).
            UnauthorizedError: actor is neither assignee nor delegate.
            InvalidStateError: step already decided, workflow terminal, or the
                step is not the workflow's current stage.
            ValidationError: unknown decision, missing comments / conditions.
        """
        try:
            step = load(ApprovalStep, step_id, tenant_id=tenant_id, for_update=True)
            if not step.can_be_decided_by(actor_id):
                raise UnauthorizedError(
                    "Only the assigned approver or their delegate may decide this step",
                    actor_id=actor_id,
                    step_id=step_id,
                )
            workflow = step.workflow
            self._ensure_decidable(workflow, step)

            decision = Decision.parse(decision)
            if decision in (Decision.REJECTED, Decision.CHANGES_REQUIRED):
                comments = _required_text(
                    comments, "comments", f"Comments are required when the decision is {decision.value}",
                )
            if decision is Decision.APPROVED_WITH_CONDITIONS:
                conditions = _required_text(
                    conditions, "conditions", "Conditions are required for APPROVED_WITH_CONDITIONS",
                )
        except Exception:
            db.session.rollback()
            raise

        def apply():
            return self._apply_decision(workflow, step, decision, actor_id, comments, conditions)

        notices = self._run(apply, step_id)
        logger.info(
            "Approval decision recorded",
            extra={
                "tenant_id": workflow.tenant_id,
                "workflow_id": workflow.id,
                "step_id": step_id,
                "actor_id": actor_id,
                "decision": decision.value,
                "workflow_status": workflow.status,
            },
        )
        return workflow, notices

    def _ensure_decidable(self, workflow: ApprovalWorkflow, step: ApprovalStep) -> None:
        if not workflow.is_active:
            raise InvalidStateError(
                f"Workflow is {workflow.status}; no further decisions are accepted",
                details={"workflow_id": workflow.id, "status": workflow.status},
            )
        if not step.is_open:
            raise InvalidStateError(
                f"Step already decided ({step.status})",
                details={"step_id": step.id, "status": step.status},
            )
        active = current_step(workflow.steps)
        if active is None or active.id != step.id:
            raise InvalidStateError(
                f"Stage {step.stage} is not the active stage of this workflow",
                details={"step_id": step.id, "active_stage": active.stage if active else None},
            )

    def _apply_decision(self, workflow, step, decision, actor_id, comments, conditions) -> list[ApprovalNotice]:
        now = self.now_fn()
        new_status = DECISION_STEP_STATUS[decision]

        if new_status is not None:
            step.status = new_status
            step.decision = decision.value
            step.decided_by_user_id = actor_id
            step.decided_at = now
            step.comments = (comments or "").strip() or None
            if decision is Decision.APPROVED_WITH_CONDITIONS:
                step.conditions = conditions
        else:
            # REFER_UP / DEFER still go through the versioned UPDATE
            flag_modified(step, "status")

        history_comments = comments
        if decision is Decision.APPROVED_WITH_CONDITIONS:
            history_comments = f"{comments.strip()}\nConditions: {conditions}" if comments else f"Conditions: {conditions}"
        record_history(
            workflow_id=workflow.id,
            step_id=step.id,
            action=decision.value,
            actor_user_id=actor_id,
            comments=history_comments,
        )

        if decision in (Decision.APPROVED, Decision.APPROVED_WITH_CONDITIONS):
            return self._advance(workflow, step, now)
        if decision is Decision.REJECTED:
            if step.is_required:
                self._reject(workflow, comments, now)
                return []
            return self._advance(workflow, step, now)
        if decision is Decision.REFER_UP:
            self.escalate(workflow, now)
            deputy = self.resolver.deputy_for_step(
                workflow.tenant_id, workflow.project_id, step, EntityKind(workflow.entity_type),
            )
            if deputy is None:
                logger.warning(
                    "Referred up with no deputy on record for %s", step.role,
                    extra={"workflow_id": workflow.id, "step_id": step.id},
                )
                return []
            return [self._notice(NoticeKind.ESCALATED, workflow, step, deputy, reason=comments)]
        # CHANGES_REQUIRED re-opens the step for the same approver; DEFER is a no-op
        return []

    # ── Progression Controller ───────────────────────────────────────────

    def _advance(self, workflow: ApprovalWorkflow, decided: ApprovalStep, now: datetime) -> list[ApprovalNotice]:
        nxt = current_step(workflow.steps)
        if nxt is None:
            workflow.status = WorkflowStatus.APPROVED
            workflow.completed_at = now
            logger.info(
                "Approval workflow approved",
                extra={"tenant_id": workflow.tenant_id, "workflow_id": workflow.id},
            )
            return []

        if nxt.stage > decided.stage and nxt.status == StepStatus.PENDING:
            if nxt.assigned_user_id is None:
                self.router.bind_step(workflow, nxt)
            nxt.status = StepStatus.IN_REVIEW
            notice = request_notice(workflow, nxt)
            return [notice] if notice else []
        return []

    def _reject(self, workflow: ApprovalWorkflow, comments: str | None, now: datetime) -> None:
        workflow.status = WorkflowStatus.REJECTED
        workflow.completed_at = now
        workflow.notes = comments
        logger.info(
            "Approval workflow rejected",
            extra={"tenant_id": workflow.tenant_id, "workflow_id": workflow.id},
        )

    def escalate(self, workflow: ApprovalWorkflow, now: datetime | None = None) -> bool:
        """Flag the workflow overdue with a fresh escalated_at.

        Returns True when the workflow was not overdue before.
        """
        newly = not workflow.is_overdue
        workflow.is_overdue = True
        workflow.escalated_at = now or self.now_fn()
        return newly

    # ── Delegation Manager ───────────────────────────────────────────────

    def delegate(
        self,
        step_id: int,
        from_user_id: int,
        to_user_id: int,
        reason: str | None = None,
        *,
        tenant_id: str | None = None,
    ) -> tuple[ApprovalStep, list[ApprovalNotice]]:
        """Hand an open step to another user. Only the assignee may delegate."""
        try:
            step = load(ApprovalStep, step_id, tenant_id=tenant_id, for_update=True)
            if from_user_id is None or from_user_id != step.assigned_user_id:
                raise UnauthorizedError(
                    "Only the assigned approver may delegate this step",
                    actor_id=from_user_id,
                    step_id=step_id,
                )
            workflow = step.workflow
            if not workflow.is_active or not step.is_open:
                raise InvalidStateError(
                    "Only open steps of active workflows can be delegated",
                    details={"step_id": step_id, "status": step.status, "workflow_status": workflow.status},
                )
            if to_user_id is None or to_user_id == step.assigned_user_id:
                raise ValidationError(
                    "Delegate must be a different user than the assigned approver",
                    details={"to_user_id": "invalid"},
                )
        except Exception:
            db.session.rollback()
            raise

        def apply():
            step.delegated_to_user_id = to_user_id
            step.delegation_reason = (reason or "").strip() or None
            step.delegated_at = self.now_fn()
            record_history(
                workflow_id=workflow.id,
                step_id=step.id,
                action=HistoryAction.DELEGATE,
                actor_user_id=from_user_id,
                comments=f"Delegated to user {to_user_id}" + (f": {reason.strip()}" if reason and reason.strip() else ""),
            )
            return [self._notice(NoticeKind.DELEGATED, workflow, step, to_user_id, reason=reason)]

        notices = self._run(apply, step_id)
        logger.info(
            "Approval step delegated",
            extra={"workflow_id": workflow.id, "step_id": step_id, "actor_id": from_user_id, "to_user_id": to_user_id},
        )
        return step, notices

    def assign_step(
        self,
        step_id: int,
        user_id: int,
        actor_id: int | None,
        reason: str | None = None,
        *,
        tenant_id: str | None = None,
    ) -> tuple[ApprovalStep, list[ApprovalNotice]]:
        """Manually bind an unassigned open step. Authorization is the caller's job."""
        try:
            step = load(ApprovalStep, step_id, tenant_id=tenant_id, for_update=True)
            if user_id is None:
                raise ValidationError("user_id is required", details={"user_id": "required"})
            workflow = step.workflow
            if not workflow.is_active or not step.is_open:
                raise InvalidStateError(
                    "Only open steps of active workflows can be assigned",
                    details={"step_id": step_id, "status": step.status},
                )
            if step.assigned_user_id is not None:
                raise InvalidStateError(
                    "Step already has an assigned approver; delegate it instead",
                    details={"step_id": step_id, "assigned_user_id": step.assigned_user_id},
                )
        except Exception:
            db.session.rollback()
            raise

        def apply():
            step.assigned_user_id = user_id
            record_history(
                workflow_id=workflow.id,
                step_id=step.id,
                action=HistoryAction.ASSIGN,
                actor_user_id=actor_id,
                comments=f"Assigned to user {user_id}" + (f": {reason.strip()}" if reason and reason.strip() else ""),
            )
            if step.status == StepStatus.PENDING:
                return []
            notice = request_notice(workflow, step)
            return [notice] if notice else []

        notices = self._run(apply, step_id)
        logger.info(
            "Approval step assigned",
            extra={"workflow_id": workflow.id, "step_id": step_id, "actor_id": actor_id, "user_id": user_id},
        )
        return step, notices

    # ── Override / Cancel ────────────────────────────────────────────────

    def _close(self, workflow_id, actor_id, reason, *, tenant_id, final_status, step_status, action, verb):
        reason = _required_text(reason, "reason", f"A reason is required to {verb} a workflow")
        try:
            workflow = load(ApprovalWorkflow, workflow_id, tenant_id=tenant_id, for_update=True)
            if not workflow.is_active:
                raise InvalidStateError(
                    f"Workflow is {workflow.status}; only active workflows can be {verb}",
                    details={"workflow_id": workflow_id, "status": workflow.status},
                )
        except Exception:
            db.session.rollback()
            raise

        def apply():
            now = self.now_fn()
            for step in workflow.steps:
                if not step.is_open:
                    continue
                step.status = step_status
                if step_status == StepStatus.OVERRIDDEN:
                    step.decided_by_user_id = actor_id
                    step.decided_at = now
                    step.comments = f"Overridden: {reason}"
            workflow.status = final_status
            workflow.completed_at = now
            if final_status == WorkflowStatus.CANCELLED:
                workflow.notes = reason
            record_history(workflow_id=workflow.id, action=action, actor_user_id=actor_id, comments=reason)
            return workflow

        self._run(apply)
        logger.info(
            "Approval workflow %s", final_status.lower(),
            extra={"tenant_id": workflow.tenant_id, "workflow_id": workflow.id, "actor_id": actor_id},
        )
        return workflow

    def override(self, workflow_id: int, actor_id: int, reason: str, *, tenant_id: str | None = None) -> ApprovalWorkflow:
        """Force-approve: every open step OVERRIDDEN, workflow OVERRIDDEN."""
        return self._close(
            workflow_id, actor_id, reason, tenant_id=tenant_id,
            final_status=WorkflowStatus.OVERRIDDEN, step_status=StepStatus.OVERRIDDEN,
            action=HistoryAction.OVERRIDE, verb="override",
        )

    def cancel(self, workflow_id: int, actor_id: int, reason: str, *, tenant_id: str | None = None) -> ApprovalWorkflow:
        """Withdraw: every open step SKIPPED, workflow CANCELLED."""
        return self._close(
            workflow_id, actor_id, reason, tenant_id=tenant_id,
            final_status=WorkflowStatus.CANCELLED, step_status=StepStatus.SKIPPED,
            action=HistoryAction.CANCEL, verb="cancel",
        )

    # ── Escalation Sweeper ───────────────────────────────────────────────

    def sweep_overdue(self) -> tuple[int, list[ApprovalNotice]]:
        """Flag workflows whose IN_REVIEW step is past due; notify deputy or approver.

        Returns the number of workflows newly flagged by this run. Re-running
        only refreshes escalated_at and repeats the notices.
        """
        now = self.now_fn()
        try:
            steps = db.session.execute(
                select(ApprovalStep)
                .join(ApprovalStep.workflow)
                .where(
                    ApprovalStep.status == StepStatus.IN_REVIEW,
                    ApprovalStep.due_date < now,
                    ApprovalWorkflow.status.in_(WorkflowStatus.ACTIVE),
                )
                .order_by(ApprovalStep.workflow_id, ApprovalStep.stage)
            ).scalars().all()

            flagged = 0
            notices: list[ApprovalNotice] = []
            reminded: list[int] = []
            for step in steps:
                workflow = step.workflow
                if self.escalate(workflow, now):
                    flagged += 1
                    record_history(
                        workflow_id=workflow.id,
                        step_id=step.id,
                        action=HistoryAction.ESCALATE,
                        actor_user_id=None,
                        comments=f"Stage {step.stage} ({step.role}) overdue",
                    )
                recipient = self.resolver.deputy_for_step(
                    workflow.tenant_id, workflow.project_id, step, EntityKind(workflow.entity_type),
                ) or step.acting_user_id
                if recipient is None:
                    logger.warning(
                        "Overdue approval step has nobody to notify",
                        extra={"workflow_id": workflow.id, "step_id": step.id},
                    )
                else:
                    notices.append(self._notice(NoticeKind.OVERDUE, workflow, step, recipient))
                reminded.append(step.id)

            if reminded:
                # Core UPDATE: an advisory flag must not bump the step version
                db.session.execute(
                    ApprovalStep.__table__.update()
                    .where(ApprovalStep.__table__.c.id.in_(reminded))
                    .values(reminder_sent=True)
                )
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        logger.info(
            "Escalation sweep finished: %d overdue steps, %d workflows newly flagged",
            len(steps), flagged,
        )
        return flagged, notices

    # ── Queries ──────────────────────────────────────────────────────────

    def pending_for_user(
        self,
        tenant_id: str,
        user_id: int,
        *,
        entity_type: str | None = None,
        project_id: int | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[ApprovalStep], int]:
        """Steps the user can act on now (assignee or delegate), soonest due first."""
        stmt = (
            select(ApprovalStep)
            .join(ApprovalStep.workflow)
            .where(
                ApprovalWorkflow.tenant_id == tenant_id,
                ApprovalWorkflow.status == WorkflowStatus.IN_PROGRESS,
                ApprovalStep.status.in_(_ACTIONABLE),
                or_(ApprovalStep.assigned_user_id == user_id, ApprovalStep.delegated_to_user_id == user_id),
            )
        )
        if entity_type:
            stmt = stmt.where(ApprovalWorkflow.entity_type == EntityKind.parse(entity_type).value)
        if project_id is not None:
            stmt = stmt.where(ApprovalWorkflow.project_id == project_id)

        total = db.session.execute(select(func.count()).select_from(stmt.subquery())).scalar() or 0
        items = db.session.execute(
            stmt.order_by(ApprovalStep.due_date, ApprovalStep.created_at, ApprovalStep.id)
            .limit(limit)
            .offset(offset)
        ).scalars().all()
        return list(items), total

    def stats_for_user(self, tenant_id: str, user_id: int, days: int = 30) -> dict:
        """Pending / overdue counts and recent decisions for one user."""
        now = self.now_fn()
        since = now - timedelta(days=days)
        mine = or_(ApprovalStep.assigned_user_id == user_id, ApprovalStep.delegated_to_user_id == user_id)

        def count(*criteria) -> int:
            return db.session.execute(
                select(func.count(ApprovalStep.id))
                .join(ApprovalStep.workflow)
                .where(ApprovalWorkflow.tenant_id == tenant_id, *criteria)
            ).scalar() or 0

        active = ApprovalWorkflow.status == WorkflowStatus.IN_PROGRESS
        decided_by_me = ApprovalStep.decided_by_user_id == user_id
        return {
            "pending": count(mine, active, ApprovalStep.status.in_(_ACTIONABLE)),
            "overdue": count(mine, active, ApprovalStep.status == StepStatus.IN_REVIEW, ApprovalStep.due_date < now),
            f"approved_last_{days}_days": count(
                decided_by_me, ApprovalStep.status == StepStatus.APPROVED, ApprovalStep.decided_at >= since,
            ),
            f"rejected_last_{days}_days": count(
                decided_by_me, ApprovalStep.status == StepStatus.REJECTED, ApprovalStep.decided_at >= since,
            ),
        }

    # ── Helpers ──────────────────────────────────────────────────────────

    @staticmethod
    def _notice(kind, workflow, step, recipient, reason=None) -> ApprovalNotice:
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
            extra={"reason": reason} if reason else {},
        )
