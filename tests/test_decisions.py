"""
Decision State Machine + Progression Controller tests.

Tests cover:
  - Sequential activation of stages after each approval
  - Completion (APPROVED, completed_at) and re-routing afterwards
  - Rejection halts progression; optional-step rejection does not
  - Decision vocabulary: conditions, changes required, refer up, defer
  - Precondition order: NotFound → Unauthorized → InvalidState → Validation
"""

from datetime import timezone

import pytest

from approval_routing.core.exceptions import (
    InvalidStateError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from approval_routing.models.approval import ApprovalHistory, StepStatus, WorkflowStatus, current_step
from conftest import (
    COMMERCIAL_MANAGER,
    OTHER_TENANT,
    PACKAGE_MANAGER,
    PACKAGE_MANAGER_DEPUTY,
    PROJECT_MANAGER,
    TENANT,
)


def _utc(dt):
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def _history_actions(workflow_id):
    return [
        h.action
        for h in ApprovalHistory.query.filter_by(workflow_id=workflow_id).order_by(ApprovalHistory.id)
    ]


def _approve_all(engine, workflow):
    steps = list(workflow.steps)
    for step, user in zip(steps, (PACKAGE_MANAGER, COMMERCIAL_MANAGER, PROJECT_MANAGER)):
        workflow = engine.decide(step.id, "APPROVED", user, tenant_id=TENANT)
    return workflow


# ═════════════════════════════════════════════════════════════════════════
# PROGRESSION
# ═════════════════════════════════════════════════════════════════════════


class TestProgression:
    def test_approval_activates_next_stage_only(self, engine, workflow, recorder):
        s1, s2, s3 = workflow.steps
        wf = engine.decide(s1.id, "APPROVED", PACKAGE_MANAGER, comments="Scope OK")

        assert wf.status == WorkflowStatus.IN_PROGRESS
        assert [s.status for s in wf.steps] == [StepStatus.APPROVED, StepStatus.IN_REVIEW, StepStatus.PENDING]
        assert s1.decision == "APPROVED"
        assert s1.decided_by_user_id == PACKAGE_MANAGER
        assert s1.decided_at is not None
        assert s1.comments == "Scope OK"
        assert current_step(wf.steps).id == s2.id
        assert recorder.kinds()[-1] == ("REQUESTED", COMMERCIAL_MANAGER)

    def test_at_most_one_step_in_review(self, engine, workflow):
        engine.decide(workflow.steps[0].id, "APPROVED", PACKAGE_MANAGER)
        in_review = [s for s in workflow.steps if s.status == StepStatus.IN_REVIEW]
        assert len(in_review) == 1

    def test_full_chain_approves_workflow(self, engine, workflow, route):
        wf = _approve_all(engine, workflow)
        assert wf.status == WorkflowStatus.APPROVED
        assert wf.completed_at is not None
        assert _utc(wf.completed_at) >= _utc(wf.created_at)
        assert wf.active_key is None
        assert _history_actions(wf.id) == ["CREATE", "APPROVED", "APPROVED", "APPROVED"]
        # The entity can be routed again once the workflow is terminal
        assert route().id != wf.id

    def test_required_rejection_halts(self, engine, workflow, recorder):
        s1, s2, s3 = workflow.steps
        engine.decide(s1.id, "APPROVED", PACKAGE_MANAGER)
        notices_before = len(recorder.notices)

        wf = engine.decide(s2.id, "REJECTED", COMMERCIAL_MANAGER, comments="Over budget")
        assert wf.status == WorkflowStatus.REJECTED
        assert wf.notes == "Over budget"
        assert wf.completed_at is not None
        assert [s.status for s in wf.steps] == [StepStatus.APPROVED, StepStatus.REJECTED, StepStatus.PENDING]
        assert len(recorder.notices) == notices_before

        with pytest.raises(InvalidStateError):
            engine.decide(s3.id, "APPROVED", PROJECT_MANAGER)

    def test_optional_rejection_advances(self, engine, make_threshold, staffed_project, route):
        make_threshold(approval_steps=[
            {"stage": 1, "role": "PACKAGE_MANAGER"},
            {"stage": 2, "role": "COMMERCIAL_MANAGER", "required": False},
            {"stage": 3, "role": "PROJECT_MANAGER"},
        ])
        wf = route()
        engine.decide(wf.steps[0].id, "APPROVED", PACKAGE_MANAGER)
        wf = engine.decide(wf.steps[1].id, "REJECTED", COMMERCIAL_MANAGER, comments="Not my call")
        assert wf.status == WorkflowStatus.IN_PROGRESS
        assert [s.status for s in wf.steps] == [StepStatus.APPROVED, StepStatus.REJECTED, StepStatus.IN_REVIEW]

        wf = engine.decide(wf.steps[2].id, "APPROVED", PROJECT_MANAGER)
        assert wf.status == WorkflowStatus.APPROVED

    def test_later_stage_bound_when_activated(self, engine, make_threshold, make_role, route):
        make_threshold()
        make_role("PACKAGE_MANAGER", PACKAGE_MANAGER)
        wf = route()
        assert wf.steps[1].assigned_user_id is None
        # The commercial manager joins the project after routing
        make_role("COMMERCIAL_MANAGER", COMMERCIAL_MANAGER)
        wf = engine.decide(wf.steps[0].id, "APPROVED", PACKAGE_MANAGER)
        assert wf.steps[1].assigned_user_id == COMMERCIAL_MANAGER
        assert wf.steps[1].status == StepStatus.IN_REVIEW


# ═════════════════════════════════════════════════════════════════════════
# DECISION VOCABULARY
# ═════════════════════════════════════════════════════════════════════════


class TestDecisionVocabulary:
    def test_approved_with_conditions(self, engine, workflow):
        step = workflow.steps[0]
        wf = engine.decide(step.id, "approved_with_conditions", PACKAGE_MANAGER, conditions="Fix RFI-12 first")
        assert step.status == StepStatus.APPROVED
        assert step.decision == "APPROVED_WITH_CONDITIONS"
        assert step.conditions == "Fix RFI-12 first"
        assert wf.steps[1].status == StepStatus.IN_REVIEW
        last = engine.get_history(wf.id)[-1]
        assert last.action == "APPROVED_WITH_CONDITIONS"
        assert "Fix RFI-12 first" in last.comments

    def test_conditions_required(self, engine, workflow):
        with pytest.raises(ValidationError) as exc:
            engine.decide(workflow.steps[0].id, "APPROVED_WITH_CONDITIONS", PACKAGE_MANAGER, conditions=" ")
        assert exc.value.details == {"conditions": "required"}

    @pytest.mark.parametrize("decision", ["REJECTED", "CHANGES_REQUIRED"])
    def test_comments_required(self, engine, workflow, decision):
        with pytest.raises(ValidationError):
            engine.decide(workflow.steps[0].id, decision, PACKAGE_MANAGER)
        assert workflow.steps[0].status == StepStatus.IN_REVIEW
        assert _history_actions(workflow.id) == ["CREATE"]

    def test_unknown_decision(self, engine, workflow):
        with pytest.raises(ValidationError):
            engine.decide(workflow.steps[0].id, "MAYBE", PACKAGE_MANAGER)

    def test_changes_required_reopens_step(self, engine, workflow):
        step = workflow.steps[0]
        wf = engine.decide(step.id, "CHANGES_REQUIRED", PACKAGE_MANAGER, comments="Add the BoQ")
        assert step.status == StepStatus.CHANGES_REQUESTED
        assert wf.status == WorkflowStatus.IN_PROGRESS
        assert current_step(wf.steps).id == step.id

        wf = engine.decide(step.id, "APPROVED", PACKAGE_MANAGER)
        assert step.status == StepStatus.APPROVED
        assert wf.steps[1].status == StepStatus.IN_REVIEW
        assert _history_actions(wf.id) == ["CREATE", "CHANGES_REQUIRED", "APPROVED"]

    def test_refer_up_escalates_without_moving_step(self, engine, workflow, recorder, clock):
        step = workflow.steps[0]
        wf = engine.decide(step.id, "REFER_UP", PACKAGE_MANAGER, comments="Above my authority")
        assert step.status == StepStatus.IN_REVIEW
        assert step.decision is None
        assert step.decided_at is None
        assert wf.is_overdue is True
        assert _utc(wf.escalated_at) == clock.now
        assert recorder.kinds()[-1] == ("ESCALATED", PACKAGE_MANAGER_DEPUTY)
        assert recorder.notices[-1].extra == {"reason": "Above my authority"}
        assert _history_actions(wf.id) == ["CREATE", "REFER_UP"]

    def test_refer_up_without_deputy_notifies_nobody(self, engine, make_threshold, make_role, route, recorder):
        make_threshold()
        make_role("PACKAGE_MANAGER", PACKAGE_MANAGER)
        wf = route()
        recorder.notices.clear()
        engine.decide(wf.steps[0].id, "REFER_UP", PACKAGE_MANAGER)
        assert recorder.notices == []
        assert wf.is_overdue is True

    def test_defer_changes_nothing_but_history(self, engine, workflow, recorder):
        step = workflow.steps[0]
        version = step.version
        recorder.notices.clear()
        wf = engine.decide(step.id, "DEFER", PACKAGE_MANAGER, comments="Waiting on drawings")
        assert step.status == StepStatus.IN_REVIEW
        assert step.version == version
        assert wf.is_overdue is False
        assert recorder.notices == []
        history = engine.get_history(wf.id)
        assert (history[-1].action, history[-1].comments) == ("DEFER", "Waiting on drawings")


# ═════════════════════════════════════════════════════════════════════════
# PRECONDITIONS
# ═════════════════════════════════════════════════════════════════════════


class TestDecisionPreconditions:
    def test_missing_step(self, engine, workflow):
        with pytest.raises(NotFoundError):
            engine.decide(99999, "APPROVED", PACKAGE_MANAGER)

    def test_other_tenant_sees_not_found(self, engine, workflow):
        with pytest.raises(NotFoundError):
            engine.decide(workflow.steps[0].id, "APPROVED", PACKAGE_MANAGER, tenant_id=OTHER_TENANT)

    def test_only_assignee_or_delegate(self, engine, workflow):
        with pytest.raises(UnauthorizedError) as exc:
            engine.decide(workflow.steps[0].id, "APPROVED", COMMERCIAL_MANAGER)
        assert exc.value.actor_id == COMMERCIAL_MANAGER
        assert workflow.steps[0].status == StepStatus.IN_REVIEW

    def test_authorization_checked_before_state(self, engine, workflow):
        step = workflow.steps[0]
        engine.decide(step.id, "APPROVED", PACKAGE_MANAGER)
        with pytest.raises(UnauthorizedError):
            engine.decide(step.id, "APPROVED", PROJECT_MANAGER)
        with pytest.raises(InvalidStateError):
            engine.decide(step.id, "APPROVED", PACKAGE_MANAGER)

    def test_state_checked_before_decision_value(self, engine, workflow):
        step = workflow.steps[0]
        engine.decide(step.id, "APPROVED", PACKAGE_MANAGER)
        with pytest.raises(InvalidStateError):
            engine.decide(step.id, "NOT-A-DECISION", PACKAGE_MANAGER)

    def test_future_stage_not_decidable(self, engine, workflow):
        with pytest.raises(InvalidStateError) as exc:
            engine.decide(workflow.steps[1].id, "APPROVED", COMMERCIAL_MANAGER)
        assert exc.value.details["active_stage"] == 1

    def test_terminal_workflow_not_decidable(self, engine, workflow):
        engine.cancel(workflow.id, 1, "Withdrawn")
        with pytest.raises(InvalidStateError):
            engine.decide(workflow.steps[0].id, "APPROVED", PACKAGE_MANAGER)

    def test_failed_decision_writes_nothing(self, engine, workflow):
        with pytest.raises(UnauthorizedError):
            engine.decide(workflow.steps[0].id, "APPROVED", 777)
        assert _history_actions(workflow.id) == ["CREATE"]
