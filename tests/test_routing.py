"""
Workflow Factory + Step Assignment tests.

Tests cover:
  - Routing builds one step per template stage, stage 1 opened
  - Per-stage due dates (ceil(target / stage) from creation time)
  - Role resolution: capability flags, lowest id wins, inactive rows ignored
  - Unassigned steps surface as warnings, never errors
  - At most one active workflow per entity (service check + DB guard)
"""

from datetime import timedelta, timezone

import pytest

from approval_routing.core.exceptions import InvalidStateError, ValidationError
from approval_routing.models.approval import (
    ApprovalHistory,
    ApprovalWorkflow,
    EntityKind,
    HistoryAction,
    StepStatus,
    WorkflowStatus,
)
from approval_routing.services.approval_router import calculate_due_date
from approval_routing.services import role_resolver
from approval_routing.services.role_resolver import RoleResolver
from conftest import (
    COMMERCIAL_MANAGER,
    INITIATOR,
    OTHER_TENANT,
    PACKAGE_MANAGER,
    PROJECT_ID,
    PROJECT_MANAGER,
    T0,
    TENANT,
)


def _utc(dt):
    """SQLite hands datetimes back naive; they were written as UTC."""
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


class TestDueDates:
    @pytest.mark.parametrize("target,stage,days", [(6, 1, 6), (6, 2, 3), (6, 4, 2), (5, 2, 3), (5, 3, 2), (1, 5, 1)])
    def test_ceil_of_target_over_stage(self, target, stage, days):
        assert calculate_due_date(T0, target, stage) == T0 + timedelta(days=days)


# ═════════════════════════════════════════════════════════════════════════
# ROUTING
# ═════════════════════════════════════════════════════════════════════════


class TestRouting:
    def test_route_builds_and_opens_workflow(self, workflow, recorder):
        assert workflow.status == WorkflowStatus.IN_PROGRESS
        assert workflow.tenant_id == TENANT
        assert workflow.project_id == PROJECT_ID
        assert workflow.entity_type == "PACKAGE"
        assert workflow.entity_id == "PKG-1"
        assert workflow.initiated_by_user_id == INITIATOR
        assert workflow.is_overdue is False
        assert workflow.completed_at is None
        assert workflow.entity.kind is EntityKind.PACKAGE

        steps = workflow.steps
        assert [s.stage for s in steps] == [1, 2, 3]
        assert [s.status for s in steps] == [StepStatus.IN_REVIEW, StepStatus.PENDING, StepStatus.PENDING]
        assert [s.assigned_user_id for s in steps] == [PACKAGE_MANAGER, COMMERCIAL_MANAGER, PROJECT_MANAGER]
        assert all(s.project_role_id is not None for s in steps)
        assert steps[0].description == "PACKAGE_MANAGER approval"
        assert workflow.warnings == []

        # Only the first approver hears about it
        assert recorder.kinds() == [("REQUESTED", PACKAGE_MANAGER)]
        assert recorder.notices[0].stage == 1

    def test_due_dates_from_creation_time(self, workflow):
        assert _utc(workflow.created_at) == T0
        due = [_utc(s.due_date) for s in workflow.steps]
        assert due == [T0 + timedelta(days=6), T0 + timedelta(days=3), T0 + timedelta(days=2)]

    def test_route_writes_create_history(self, engine, workflow):
        history = engine.get_history(workflow.id)
        assert [h.action for h in history] == [HistoryAction.CREATE]
        assert history[0].actor_user_id == INITIATOR
        assert "Medium Value Package" in history[0].comments

    def test_entity_value_is_snapshotted(self, workflow):
        assert str(workflow.entity_value) in ("75000", "75000.00")

    def test_no_threshold_means_no_workflow(self, make_threshold, route, recorder):
        make_threshold()
        assert route(value=10) is None
        assert ApprovalWorkflow.query.count() == 0
        assert recorder.notices == []

    def test_notes_are_kept(self, make_threshold, staffed_project, route):
        make_threshold()
        wf = route(notes="  Urgent: steel price lock  ")
        assert wf.notes == "Urgent: steel price lock"

    @pytest.mark.parametrize("kwargs", [
        {"entity_type": "INVOICE"},
        {"entity_id": ""},
        {"value": "n/a"},
        {"tenant_id": ""},
        {"project_id": None},
    ])
    def test_malformed_input(self, make_threshold, route, kwargs):
        make_threshold()
        with pytest.raises(ValidationError):
            route(**kwargs)
        assert ApprovalWorkflow.query.count() == 0

    def test_requires_approval(self, engine, make_threshold):
        make_threshold()
        assert engine.requires_approval("PACKAGE", 75000, TENANT) is True
        assert engine.requires_approval("PACKAGE", 1, TENANT) is False
        assert engine.requires_approval("PACKAGE", 75000, OTHER_TENANT) is False


# ═════════════════════════════════════════════════════════════════════════
# ONE ACTIVE WORKFLOW PER ENTITY
# ═════════════════════════════════════════════════════════════════════════


class TestSingleActiveWorkflow:
    def test_second_route_rejected(self, workflow, route):
        with pytest.raises(InvalidStateError) as exc:
            route()
        assert exc.value.details["workflow_id"] == workflow.id
        assert ApprovalWorkflow.query.count() == 1

    def test_same_entity_id_other_type_or_tenant_is_independent(self, workflow, make_threshold, route):
        make_threshold(entity_type="VARIATION", name="Variation", min_value=0, max_value=None)
        make_threshold(tenant_id=OTHER_TENANT, min_value=0, max_value=None)
        assert route(entity_type="VARIATION") is not None
        assert route(tenant_id=OTHER_TENANT) is not None

    def test_route_again_after_terminal(self, engine, workflow, route):
        engine.cancel(workflow.id, INITIATOR, "Scope changed", tenant_id=TENANT)
        assert workflow.active_key is None
        again = route()
        assert again.id != workflow.id
        assert engine.get_active_workflow("PACKAGE", "PKG-1", tenant_id=TENANT).id == again.id

    def test_database_guard_catches_racing_router(self, engine, workflow, route, monkeypatch):
        # A concurrent request that passed the existence check before ours committed
        monkeypatch.setattr(engine.router, "get_active_workflow", lambda *a, **kw: None)
        with pytest.raises(InvalidStateError):
            route()
        assert ApprovalWorkflow.query.count() == 1
        assert ApprovalHistory.query.count() == 1

    def test_get_active_workflow(self, engine, workflow):
        assert engine.get_active_workflow("package", "PKG-1").id == workflow.id
        assert engine.get_active_workflow("PACKAGE", "PKG-1", tenant_id=OTHER_TENANT) is None
        assert engine.get_active_workflow("PACKAGE", "PKG-2") is None


# ═════════════════════════════════════════════════════════════════════════
# ASSIGNMENT
# ═════════════════════════════════════════════════════════════════════════


class TestStepAssignment:
    def test_unassigned_role_is_a_warning(self, make_threshold, make_role, route, recorder, caplog):
        make_threshold()
        make_role("PACKAGE_MANAGER", PACKAGE_MANAGER)
        with caplog.at_level("WARNING"):
            wf = route()
        assert wf.status == WorkflowStatus.IN_PROGRESS
        assert [s.assigned_user_id for s in wf.steps] == [PACKAGE_MANAGER, None, None]
        assert [w["role"] for w in wf.warnings] == ["COMMERCIAL_MANAGER", "PROJECT_MANAGER"]
        assert wf.to_dict()["warnings"][0]["code"] == "UNASSIGNED_STEP"
        assert "Approval step unassigned" in caplog.text

    def test_unassigned_first_stage_still_opens(self, make_threshold, route, recorder):
        make_threshold()
        wf = route()
        assert wf.steps[0].status == StepStatus.IN_REVIEW
        assert wf.steps[0].assigned_user_id is None
        assert recorder.notices == []

    def test_other_project_roles_ignored(self, make_threshold, make_role, route):
        make_threshold()
        make_role("PACKAGE_MANAGER", 99, project_id=PROJECT_ID + 1)
        make_role("PACKAGE_MANAGER", 98, tenant_id=OTHER_TENANT)
        assert route().steps[0].assigned_user_id is None

    def test_lowest_active_capable_row_wins(self, make_role):
        make_role("PACKAGE_MANAGER", 40, is_active=False)
        make_role("PACKAGE_MANAGER", 41, can_approve_packages=False)
        make_role("PACKAGE_MANAGER", 42)
        make_role("PACKAGE_MANAGER", 43)
        resolver = RoleResolver()
        assert resolver.resolve(TENANT, PROJECT_ID, "PACKAGE_MANAGER", EntityKind.PACKAGE).user_id == 42
        # Contracts capability is still set on the second row
        assert resolver.resolve(TENANT, PROJECT_ID, "PACKAGE_MANAGER", EntityKind.CONTRACT).user_id == 41

    def test_payments_need_explicit_capability(self, make_role):
        make_role("QS_COST_MANAGER", 50)
        make_role("QS_COST_MANAGER", 51, can_approve_payments=True, deputy_user_id=52)
        resolution = RoleResolver().resolve(TENANT, PROJECT_ID, "QS_COST_MANAGER", EntityKind.PAYMENT_APPLICATION)
        assert (resolution.user_id, resolution.deputy_user_id) == (51, 52)

    def test_every_entity_kind_has_a_capability_flag(self):
        assert set(role_resolver._CAPABILITY_BY_KIND) == set(EntityKind)

    def test_unknown_role_resolves_to_nobody(self, make_role):
        make_role("PACKAGE_MANAGER", 42)
        assert RoleResolver().resolve(TENANT, PROJECT_ID, "Site Foreman", EntityKind.PACKAGE) is None
