"""
Delegation Manager + Override / Cancel Controller tests.

Tests cover:
  - Delegation keeps the assignee, lets the delegate decide, notifies them
  - Only the assignee may delegate; delegate must differ from assignee
  - Manual assignment as the recovery path for unassigned steps
  - Override / cancel: reason first, open steps closed, one history row
"""

import pytest

from approval_routing.core.exceptions import (
    InvalidStateError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from approval_routing.models.approval import ApprovalHistory, HistoryAction, StepStatus, WorkflowStatus
from conftest import COMMERCIAL_MANAGER, PACKAGE_MANAGER, PROJECT_MANAGER, TENANT

DELEGATE = 31
ADMIN = 5


def _actions(workflow_id):
    return [h.action for h in ApprovalHistory.query.filter_by(workflow_id=workflow_id).order_by(ApprovalHistory.id)]


# ═════════════════════════════════════════════════════════════════════════
# DELEGATION
# ═════════════════════════════════════════════════════════════════════════


class TestDelegation:
    def test_delegate_sets_fields_and_notifies(self, engine, workflow, recorder, clock):
        step = engine.delegate(workflow.steps[0].id, PACKAGE_MANAGER, DELEGATE, "On leave", tenant_id=TENANT)
        assert step.assigned_user_id == PACKAGE_MANAGER
        assert step.delegated_to_user_id == DELEGATE
        assert step.delegation_reason == "On leave"
        assert step.delegated_at is not None
        assert step.status == StepStatus.IN_REVIEW
        assert step.acting_user_id == DELEGATE
        assert recorder.kinds()[-1] == ("DELEGATED", DELEGATE)

        last = engine.get_history(workflow.id)[-1]
        assert (last.action, last.actor_user_id, last.step_id) == (HistoryAction.DELEGATE, PACKAGE_MANAGER, step.id)
        assert last.comments == f"Delegated to user {DELEGATE}: On leave"

    def test_delegate_can_decide_and_assignee_still_can(self, engine, workflow):
        step_id = workflow.steps[0].id
        engine.delegate(step_id, PACKAGE_MANAGER, DELEGATE)
        wf = engine.decide(step_id, "APPROVED", DELEGATE)
        assert wf.steps[0].decided_by_user_id == DELEGATE

        step2 = wf.steps[1]
        engine.delegate(step2.id, COMMERCIAL_MANAGER, DELEGATE)
        wf = engine.decide(step2.id, "APPROVED", COMMERCIAL_MANAGER)
        assert wf.steps[2].status == StepStatus.IN_REVIEW

    def test_delegated_step_is_pending_for_delegate(self, engine, workflow):
        engine.delegate(workflow.steps[0].id, PACKAGE_MANAGER, DELEGATE)
        steps, total = engine.pending_for_user(TENANT, DELEGATE)
        assert total == 1
        assert steps[0].id == workflow.steps[0].id

    def test_only_assignee_may_delegate(self, engine, workflow):
        step_id = workflow.steps[0].id
        with pytest.raises(UnauthorizedError):
            engine.delegate(step_id, COMMERCIAL_MANAGER, DELEGATE)
        engine.delegate(step_id, PACKAGE_MANAGER, DELEGATE)
        # Re-delegation by the delegate is not supported
        with pytest.raises(UnauthorizedError):
            engine.delegate(step_id, DELEGATE, 32)

    def test_delegate_must_differ_from_assignee(self, engine, workflow):
        with pytest.raises(ValidationError):
            engine.delegate(workflow.steps[0].id, PACKAGE_MANAGER, PACKAGE_MANAGER)
        with pytest.raises(ValidationError):
            engine.delegate(workflow.steps[0].id, PACKAGE_MANAGER, None)

    def test_closed_step_cannot_be_delegated(self, engine, workflow):
        step_id = workflow.steps[0].id
        engine.decide(step_id, "APPROVED", PACKAGE_MANAGER)
        with pytest.raises(InvalidStateError):
            engine.delegate(step_id, PACKAGE_MANAGER, DELEGATE)

    def test_pending_later_step_can_be_delegated(self, engine, workflow, recorder):
        step = engine.delegate(workflow.steps[2].id, PROJECT_MANAGER, DELEGATE)
        assert step.status == StepStatus.PENDING
        assert step.delegated_to_user_id == DELEGATE

    def test_missing_step(self, engine, workflow):
        with pytest.raises(NotFoundError):
            engine.delegate(424242, PACKAGE_MANAGER, DELEGATE)


# ═════════════════════════════════════════════════════════════════════════
# MANUAL ASSIGNMENT
# ═════════════════════════════════════════════════════════════════════════


class TestManualAssignment:
    @pytest.fixture()
    def understaffed(self, make_threshold, make_role, route):
        make_threshold()
        make_role("PACKAGE_MANAGER", PACKAGE_MANAGER)
        return route()

    def test_assign_open_unassigned_step(self, engine, understaffed, recorder):
        wf = engine.decide(understaffed.steps[0].id, "APPROVED", PACKAGE_MANAGER)
        step = wf.steps[1]
        assert step.status == StepStatus.IN_REVIEW
        assert step.assigned_user_id is None
        recorder.notices.clear()

        step = engine.assign_step(step.id, COMMERCIAL_MANAGER, ADMIN, "Covering the role", tenant_id=TENANT)
        assert step.assigned_user_id == COMMERCIAL_MANAGER
        assert recorder.kinds() == [("REQUESTED", COMMERCIAL_MANAGER)]
        last = engine.get_history(wf.id)[-1]
        assert (last.action, last.actor_user_id) == (HistoryAction.ASSIGN, ADMIN)

        wf = engine.decide(step.id, "APPROVED", COMMERCIAL_MANAGER)
        assert wf.steps[1].status == StepStatus.APPROVED
        assert [w["role"] for w in wf.warnings] == ["PROJECT_MANAGER"]

    def test_assign_pending_step_does_not_notify(self, engine, understaffed, recorder):
        recorder.notices.clear()
        engine.assign_step(understaffed.steps[2].id, PROJECT_MANAGER, ADMIN)
        assert recorder.notices == []

    def test_assigned_step_must_be_delegated_instead(self, engine, understaffed):
        with pytest.raises(InvalidStateError):
            engine.assign_step(understaffed.steps[0].id, 99, ADMIN)

    def test_user_required(self, engine, understaffed):
        with pytest.raises(ValidationError):
            engine.assign_step(understaffed.steps[1].id, None, ADMIN)

    def test_terminal_workflow_cannot_be_assigned(self, engine, understaffed):
        engine.cancel(understaffed.id, ADMIN, "Withdrawn")
        with pytest.raises(InvalidStateError):
            engine.assign_step(understaffed.steps[1].id, COMMERCIAL_MANAGER, ADMIN)


# ═════════════════════════════════════════════════════════════════════════
# OVERRIDE / CANCEL
# ═════════════════════════════════════════════════════════════════════════


class TestOverrideCancel:
    @pytest.mark.parametrize("reason", [None, "", "   "])
    def test_override_reason_checked_before_lookup(self, engine, reason):
        with pytest.raises(ValidationError):
            engine.override(99999, ADMIN, reason)

    @pytest.mark.parametrize("reason", [None, "", "   "])
    def test_override_without_reason_changes_nothing(self, engine, workflow, reason):
        before = [(s.status, s.decided_by_user_id) for s in workflow.steps]
        with pytest.raises(ValidationError):
            engine.override(workflow.id, ADMIN, reason, tenant_id=TENANT)
        assert workflow.status == WorkflowStatus.IN_PROGRESS
        assert [(s.status, s.decided_by_user_id) for s in workflow.steps] == before
        assert _actions(workflow.id) == ["CREATE"]

    def test_cancel_reason_required(self, engine, workflow):
        with pytest.raises(ValidationError):
            engine.cancel(workflow.id, ADMIN, "")
        assert workflow.status == WorkflowStatus.IN_PROGRESS

    def test_override_missing_workflow(self, engine):
        with pytest.raises(NotFoundError):
            engine.override(99999, ADMIN, "Board decision")

    def test_override_closes_open_steps(self, engine, workflow, recorder):
        engine.decide(workflow.steps[0].id, "APPROVED", PACKAGE_MANAGER)
        notices_before = len(recorder.notices)

        wf = engine.override(workflow.id, ADMIN, "Board decision", tenant_id=TENANT)
        assert wf.status == WorkflowStatus.OVERRIDDEN
        assert wf.completed_at is not None
        assert wf.active_key is None
        s1, s2, s3 = wf.steps
        assert s1.status == StepStatus.APPROVED
        assert s1.decided_by_user_id == PACKAGE_MANAGER
        for step in (s2, s3):
            assert step.status == StepStatus.OVERRIDDEN
            assert step.decided_by_user_id == ADMIN
            assert step.decided_at is not None
            assert step.comments == "Overridden: Board decision"
        assert _actions(wf.id) == ["CREATE", "APPROVED", "OVERRIDE"]
        assert len(recorder.notices) == notices_before

    def test_cancel_skips_open_steps(self, engine, workflow):
        wf = engine.cancel(workflow.id, ADMIN, "Package descoped", tenant_id=TENANT)
        assert wf.status == WorkflowStatus.CANCELLED
        assert wf.notes == "Package descoped"
        assert wf.completed_at is not None
        assert [s.status for s in wf.steps] == [StepStatus.SKIPPED] * 3
        assert all(s.decided_by_user_id is None for s in wf.steps)
        last = engine.get_history(wf.id)[-1]
        assert (last.action, last.actor_user_id, last.comments) == (HistoryAction.CANCEL, ADMIN, "Package descoped")

    def test_terminal_workflow_cannot_be_closed_again(self, engine, workflow):
        engine.override(workflow.id, ADMIN, "Board decision")
        with pytest.raises(InvalidStateError):
            engine.cancel(workflow.id, ADMIN, "Too late")
        with pytest.raises(InvalidStateError):
            engine.override(workflow.id, ADMIN, "Again")
        assert _actions(workflow.id) == ["CREATE", "OVERRIDE"]
