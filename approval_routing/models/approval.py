"""
Approval Routing Engine
Approval domain models.

Models:
    - ApprovalThreshold: value range → ordered approval chain + SLA target
    - ApprovalWorkflow:  one approval process for one business entity
    - ApprovalStep:      one stage of a workflow, owned by one role/assignee
    - ApprovalHistory:   immutable, append-only audit trail

Polymorphic entity pattern:
    entity_type + entity_id together identify the business entity
    (PACKAGE, CONTRACT, ...). entity_id is stored as String(64) so any
    upstream PK style fits.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum

from sqlalchemy import event as _sa_event

from approval_routing.core.exceptions import ValidationError
from approval_routing.models import db
from approval_routing.models.base import TenantModel, utcnow
from approval_routing.models.project_role import RoleKind


# ── Status vocabularies ──────────────────────────────────────────────────────


class WorkflowStatus:
    """Workflow status constants."""

    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"
    OVERRIDDEN = "OVERRIDDEN"

    ACTIVE = frozenset({PENDING, IN_PROGRESS})
    TERMINAL = frozenset({APPROVED, REJECTED, CANCELLED, OVERRIDDEN})


class StepStatus:
    """Step status constants.

    CHANGES_REQUESTED is a re-opened state: the same assignee (or delegate)
    may decide the step again.
    """

    PENDING = "PENDING"
    IN_REVIEW = "IN_REVIEW"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CHANGES_REQUESTED = "CHANGES_REQUESTED"
    SKIPPED = "SKIPPED"
    OVERRIDDEN = "OVERRIDDEN"

    OPEN = frozenset({PENDING, IN_REVIEW, CHANGES_REQUESTED})
    CLEARED = frozenset({APPROVED, SKIPPED, OVERRIDDEN})


class HistoryAction:
    """Non-decision audit actions. Decisions are recorded under their own name."""

    CREATE = "CREATE"
    DELEGATE = "DELEGATE"
    ASSIGN = "ASSIGN"
    ESCALATE = "ESCALATE"
    OVERRIDE = "OVERRIDE"
    CANCEL = "CANCEL"


class Decision(str, Enum):
    APPROVED = "APPROVED"
    APPROVED_WITH_CONDITIONS = "APPROVED_WITH_CONDITIONS"
    REJECTED = "REJECTED"
    CHANGES_REQUIRED = "CHANGES_REQUIRED"
    REFER_UP = "REFER_UP"
    DEFER = "DEFER"

    @classmethod
    def parse(cls, value) -> "Decision":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value or "").strip().upper())
        except ValueError:
            raise ValidationError(
                f"Invalid decision {value!r}. Must be one of: {', '.join(d.value for d in cls)}",
                details={"decision": "invalid"},
            ) from None


# None → step keeps its current open status
DECISION_STEP_STATUS: dict[Decision, str | None] = {
    Decision.APPROVED: StepStatus.APPROVED,
    Decision.APPROVED_WITH_CONDITIONS: StepStatus.APPROVED,
    Decision.REJECTED: StepStatus.REJECTED,
    Decision.CHANGES_REQUIRED: StepStatus.CHANGES_REQUESTED,
    Decision.REFER_UP: None,
    Decision.DEFER: None,
}


class EntityKind(str, Enum):
    """Business entities the engine can route."""

    PACKAGE = "PACKAGE"
    CONTRACT = "CONTRACT"
    VARIATION = "VARIATION"
    PAYMENT_APPLICATION = "PAYMENT_APPLICATION"

    @classmethod
    def parse(cls, value) -> "EntityKind":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value or "").strip().upper())
        except ValueError:
            raise ValidationError(
                f"Invalid entity_type {value!r}. Must be one of: {', '.join(k.value for k in cls)}",
                details={"entity_type": "invalid"},
            ) from None


@dataclass(frozen=True)
class EntityRef:
    """Reference to the business entity under approval."""

    kind: EntityKind
    id: str

    @classmethod
    def of(cls, entity_type, entity_id) -> "EntityRef":
        entity_id = str(entity_id if entity_id is not None else "").strip()
        if not entity_id:
            raise ValidationError("entity_id is required", details={"entity_id": "required"})
        return cls(kind=EntityKind.parse(entity_type), id=entity_id)

    def __str__(self) -> str:
        return f"{self.kind.value}/{self.id}"


@dataclass(frozen=True)
class StepTemplate:
    """One stage of a threshold's approval chain."""

    stage: int
    role: str
    required: bool = True
    description: str = ""

    @property
    def role_kind(self) -> RoleKind:
        return RoleKind.parse(self.role)

    def to_dict(self) -> dict:
        return {
            "stage": self.stage,
            "role": self.role,
            "required": self.required,
            "description": self.description,
        }


@dataclass(frozen=True)
class UnassignedStepWarning:
    """No active registry entry could fill a step's role. Never an error."""

    workflow_id: int | None
    project_id: int
    stage: int
    role: str

    def to_dict(self) -> dict:
        return {
            "code": "UNASSIGNED_STEP",
            "stage": self.stage,
            "role": self.role,
            "message": f"No {self.role} assigned on project {self.project_id}",
        }


def parse_step_templates(raw) -> list[StepTemplate]:
    """Validate raw step-template config into an ordered StepTemplate list.

    Rules:
    - non-empty list of objects with a known ``role``
    - ``stage`` defaults to the 1-based position; stages must be unique and
      contiguous starting at 1
    - ``required`` defaults to True, ``description`` to "<role> approval"

    Raises:
        ValidationError: with a per-step ``details`` breakdown.
    """
    if not isinstance(raw, (list, tuple)) or not raw:
        raise ValidationError(
            "approval_steps must be a non-empty array of {stage, role, required, description}",
            details={"approval_steps": "required"},
        )

    errors: dict[str, str] = {}
    templates: list[StepTemplate] = []
    for position, item in enumerate(raw, 1):
        key = f"approval_steps[{position - 1}]"
        if not isinstance(item, dict):
            errors[key] = "must be an object"
            continue
        role = (item.get("role") or "").strip()
        if not role:
            errors[key] = "role is required"
            continue
        kind = RoleKind.parse(role)
        if kind is RoleKind.UNKNOWN:
            errors[key] = f"unknown role {role!r}; valid roles: {', '.join(RoleKind.known_values())}"
            continue
        stage = item.get("stage", position)
        if isinstance(stage, bool) or not isinstance(stage, int):
            try:
                stage = int(stage)
            except (TypeError, ValueError):
                errors[key] = "stage must be an integer"
                continue
        templates.append(StepTemplate(
            stage=stage,
            role=kind.value,
            required=item.get("required", True) is not False,
            description=(item.get("description") or "").strip() or f"{kind.value} approval",
        ))

    if errors:
        raise ValidationError("Invalid approval_steps", details=errors)

    templates.sort(key=lambda t: t.stage)
    stages = [t.stage for t in templates]
    if stages != list(range(1, len(templates) + 1)):
        raise ValidationError(
            "approval_steps stages must be unique, contiguous integers starting at 1",
            details={"approval_steps": f"got stages {stages}"},
        )
    return templates


def to_decimal(value, field: str = "value") -> Decimal:
    """Coerce an int/float/str/Decimal amount to Decimal, ValidationError on junk."""
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be numeric", details={field: "invalid"})
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"{field} must be numeric", details={field: "invalid"}) from None
    if not result.is_finite():
        raise ValidationError(f"{field} must be finite", details={field: "invalid"})
    return result


# ═════════════════════════════════════════════════════════════════════════════
# THRESHOLD
# ═════════════════════════════════════════════════════════════════════════════


class ApprovalThreshold(TenantModel):
    """
    Value band for one entity type, mapped to an approval chain.

    Business rules:
    - [min_value, max_value) is half-open; NULL max_value means unbounded.
    - Active thresholds for the same (tenant, entity_type) never overlap.
    - Range and approval_steps are frozen while any active workflow
      references the threshold (see threshold_service).
    """

    __tablename__ = "approval_thresholds"
    __table_args__ = (
        db.Index("ix_approval_thresholds_lookup", "tenant_id", "entity_type", "is_active"),
    )

    id = db.Column(db.Integer, primary_key=True)
    entity_type = db.Column(db.String(40), nullable=False,
                            comment="PACKAGE | CONTRACT | VARIATION | PAYMENT_APPLICATION")
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)

    min_value = db.Column(db.Numeric(16, 2), nullable=False, comment="Inclusive lower bound")
    max_value = db.Column(db.Numeric(16, 2), nullable=True, comment="Exclusive upper bound; NULL = unbounded")

    approval_steps = db.Column(db.JSON, nullable=False, default=list,
                               comment="Validated list of {stage, role, required, description}")
    target_approval_days = db.Column(db.Integer, nullable=False, default=5)

    # Advisory requirements surfaced to approvers
    requires_risk_assessment = db.Column(db.Boolean, nullable=False, default=False)
    requires_design_review = db.Column(db.Boolean, nullable=False, default=False)
    requires_hsqe = db.Column(db.Boolean, nullable=False, default=False)
    requires_client_approval = db.Column(db.Boolean, nullable=False, default=False)

    sequence = db.Column(db.Integer, nullable=False, default=1, comment="Tie-break ordering")
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    workflows = db.relationship("ApprovalWorkflow", back_populates="threshold", lazy="dynamic")

    @property
    def step_templates(self) -> list[StepTemplate]:
        return [
            StepTemplate(
                stage=s["stage"],
                role=s["role"],
                required=s.get("required", True),
                description=s.get("description") or f"{s['role']} approval",
            )
            for s in sorted(self.approval_steps or [], key=lambda s: s["stage"])
        ]

    def contains(self, value) -> bool:
        """Half-open range test: min <= value < max (max NULL → +∞)."""
        value = to_decimal(value)
        if value < Decimal(self.min_value):
            return False
        return self.max_value is None or value < Decimal(self.max_value)

    def overlaps(self, min_value, max_value) -> bool:
        lo = Decimal(self.min_value)
        hi = Decimal(self.max_value) if self.max_value is not None else None
        if hi is not None and min_value >= hi:
            return False
        if max_value is not None and max_value <= lo:
            return False
        return True

    def range_label(self) -> str:
        upper = f"{self.max_value}" if self.max_value is not None else "unlimited"
        return f"{self.min_value} - {upper}"

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "entity_type": self.entity_type,
            "name": self.name,
            "description": self.description,
            "min_value": str(self.min_value) if self.min_value is not None else None,
            "max_value": str(self.max_value) if self.max_value is not None else None,
            "approval_steps": [t.to_dict() for t in self.step_templates],
            "target_approval_days": self.target_approval_days,
            "requires_risk_assessment": self.requires_risk_assessment,
            "requires_design_review": self.requires_design_review,
            "requires_hsqe": self.requires_hsqe,
            "requires_client_approval": self.requires_client_approval,
            "sequence": self.sequence,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<ApprovalThreshold {self.id} {self.entity_type} [{self.range_label()})>"


# ═════════════════════════════════════════════════════════════════════════════
# WORKFLOW
# ═════════════════════════════════════════════════════════════════════════════


class ApprovalWorkflow(TenantModel):
    """
    One approval process for one business entity.

    Business rules:
    - At most one PENDING/IN_PROGRESS workflow per (tenant, entity_type,
      entity_id). active_key carries that identity while the workflow is
      active and is cleared once it is terminal; the unique constraint is
      the database-level guard against two concurrent routing requests.
    - Never deleted. Terminal: APPROVED, REJECTED, CANCELLED, OVERRIDDEN.
    """

    __tablename__ = "approval_workflows"
    __table_args__ = (
        db.UniqueConstraint("active_key", name="uq_approval_workflows_active_key"),
        db.Index("ix_approval_workflows_entity", "entity_type", "entity_id"),
        db.Index("ix_approval_workflows_tenant_status", "tenant_id", "status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, nullable=False, index=True)

    entity_type = db.Column(db.String(40), nullable=False)
    entity_id = db.Column(db.String(64), nullable=False)
    entity_value = db.Column(db.Numeric(16, 2), nullable=False,
                             comment="Value at routing time; later entity edits do not change it")

    threshold_id = db.Column(
        db.Integer,
        db.ForeignKey("approval_thresholds.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    status = db.Column(db.String(20), nullable=False, default=WorkflowStatus.PENDING)
    active_key = db.Column(db.String(200), nullable=True,
                           comment="tenant:entity_type:entity_id while active, NULL once terminal")

    initiated_by_user_id = db.Column(db.Integer, nullable=True)
    notes = db.Column(db.Text, nullable=True)

    is_overdue = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    escalated_at = db.Column(db.DateTime(timezone=True), nullable=True)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    threshold = db.relationship("ApprovalThreshold", back_populates="workflows")
    steps = db.relationship(
        "ApprovalStep",
        back_populates="workflow",
        order_by="ApprovalStep.stage",
        cascade="all, delete-orphan",
    )
    history = db.relationship(
        "ApprovalHistory",
        back_populates="workflow",
        order_by="ApprovalHistory.id",
    )

    @property
    def entity(self) -> EntityRef:
        return EntityRef(kind=EntityKind(self.entity_type), id=self.entity_id)

    @property
    def is_active(self) -> bool:
        return self.status in WorkflowStatus.ACTIVE

    @property
    def warnings(self) -> list[dict]:
        """Open steps without an approver, surfaced to operators."""
        return [
            UnassignedStepWarning(self.id, self.project_id, s.stage, s.role).to_dict()
            for s in self.steps
            if s.assigned_user_id is None and s.status in StepStatus.OPEN
        ]

    @staticmethod
    def build_active_key(tenant_id, entity_type, entity_id) -> str:
        return f"{tenant_id}:{entity_type}:{entity_id}"

    def to_dict(self, include_steps=True):
        data = {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "project_id": self.project_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "entity_value": str(self.entity_value) if self.entity_value is not None else None,
            "threshold_id": self.threshold_id,
            "status": self.status,
            "initiated_by_user_id": self.initiated_by_user_id,
            "notes": self.notes,
            "is_overdue": self.is_overdue,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "escalated_at": self.escalated_at.isoformat() if self.escalated_at else None,
            "warnings": self.warnings,
        }
        if include_steps:
            data["steps"] = [s.to_dict() for s in self.steps]
        return data

    def __repr__(self):
        return f"<ApprovalWorkflow {self.id} {self.entity_type}/{self.entity_id} [{self.status}]>"


@_sa_event.listens_for(ApprovalWorkflow, "before_insert")
@_sa_event.listens_for(ApprovalWorkflow, "before_update")
def _sync_active_key(mapper, connection, target) -> None:  # noqa: ANN001
    """Keep active_key in step with status on every flush."""
    if target.status in WorkflowStatus.ACTIVE:
        target.active_key = ApprovalWorkflow.build_active_key(
            target.tenant_id, target.entity_type, target.entity_id,
        )
    else:
        target.active_key = None


# ═════════════════════════════════════════════════════════════════════════════
# STEP
# ═════════════════════════════════════════════════════════════════════════════


class ApprovalStep(db.Model):
    """
    One stage of a workflow's approval chain.

    Business rules:
    - stage is unique within the workflow, contiguous from 1.
    - Only the assignee or the delegate may decide the step.
    - version is the optimistic-concurrency token: an UPDATE that finds a
      different version affects no row and the flush fails (StaleDataError).
    """

    __tablename__ = "approval_steps"
    __table_args__ = (
        db.UniqueConstraint("workflow_id", "stage", name="uq_approval_steps_workflow_stage"),
        db.Index("ix_approval_steps_status_due", "status", "due_date"),
    )

    id = db.Column(db.Integer, primary_key=True)
    workflow_id = db.Column(
        db.Integer,
        db.ForeignKey("approval_workflows.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    stage = db.Column(db.Integer, nullable=False)
    role = db.Column(db.String(50), nullable=False)
    is_required = db.Column(db.Boolean, nullable=False, default=True)
    description = db.Column(db.String(500), nullable=True)

    status = db.Column(db.String(20), nullable=False, default=StepStatus.PENDING)
    due_date = db.Column(db.DateTime(timezone=True), nullable=True)

    # Assignment
    assigned_user_id = db.Column(db.Integer, nullable=True, index=True)
    project_role_id = db.Column(db.Integer, nullable=True,
                                comment="Registry row the assignee was resolved from")

    # Delegation
    delegated_to_user_id = db.Column(db.Integer, nullable=True, index=True)
    delegation_reason = db.Column(db.Text, nullable=True)
    delegated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Decision
    decision = db.Column(db.String(30), nullable=True)
    decided_by_user_id = db.Column(db.Integer, nullable=True)
    decided_at = db.Column(db.DateTime(timezone=True), nullable=True)
    comments = db.Column(db.Text, nullable=True)
    conditions = db.Column(db.Text, nullable=True)

    reminder_sent = db.Column(db.Boolean, nullable=False, default=False)

    version = db.Column(db.Integer, nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    workflow = db.relationship("ApprovalWorkflow", back_populates="steps")

    __mapper_args__ = {"version_id_col": version}

    @property
    def is_open(self) -> bool:
        return self.status in StepStatus.OPEN

    @property
    def is_cleared(self) -> bool:
        """Cleared steps no longer hold up the chain.

        An optional step that was rejected counts as cleared.
        """
        if self.status in StepStatus.CLEARED:
            return True
        return not self.is_required and self.status == StepStatus.REJECTED

    @property
    def acting_user_id(self) -> int | None:
        """Whoever should currently act on the step: the delegate, else the assignee."""
        return self.delegated_to_user_id or self.assigned_user_id

    def can_be_decided_by(self, user_id) -> bool:
        if user_id is None:
            return False
        return user_id in (self.assigned_user_id, self.delegated_to_user_id)

    def to_dict(self):
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "stage": self.stage,
            "role": self.role,
            "is_required": self.is_required,
            "description": self.description,
            "status": self.status,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "assigned_user_id": self.assigned_user_id,
            "project_role_id": self.project_role_id,
            "delegated_to_user_id": self.delegated_to_user_id,
            "delegation_reason": self.delegation_reason,
            "delegated_at": self.delegated_at.isoformat() if self.delegated_at else None,
            "decision": self.decision,
            "decided_by_user_id": self.decided_by_user_id,
            "decided_at": self.decided_at.isoformat() if self.decided_at else None,
            "comments": self.comments,
            "conditions": self.conditions,
            "reminder_sent": self.reminder_sent,
        }

    def __repr__(self):
        return f"<ApprovalStep {self.id} wf={self.workflow_id} stage={self.stage} [{self.status}]>"


def current_step(steps) -> ApprovalStep | None:
    """Return the first step (by stage) that is not cleared, or None.

    Pure function over the ordered step collection; it does not touch the
    session.
    """
    for step in sorted(steps, key=lambda s: s.stage):
        if not step.is_cleared:
            return step
    return None


# ═════════════════════════════════════════════════════════════════════════════
# HISTORY
# ═════════════════════════════════════════════════════════════════════════════


class ApprovalHistory(db.Model):
    """
    Immutable audit trail entry.

    One row per state-changing engine call. Rows are NEVER updated or
    deleted; the ORM listeners below turn any attempt into an error.
    """

    __tablename__ = "approval_history"
    __table_args__ = (
        db.Index("ix_approval_history_workflow", "workflow_id", "id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    workflow_id = db.Column(
        db.Integer,
        db.ForeignKey("approval_workflows.id", ondelete="CASCADE"),
        nullable=False,
    )
    step_id = db.Column(
        db.Integer,
        db.ForeignKey("approval_steps.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    action = db.Column(db.String(40), nullable=False,
                       comment="Decision name | CREATE | DELEGATE | ASSIGN | ESCALATE | OVERRIDE | CANCEL")
    actor_user_id = db.Column(db.Integer, nullable=True,
                              comment="NULL for system actions (escalation sweep)")
    comments = db.Column(db.Text, nullable=True)

    ip_address = db.Column(db.String(45), nullable=True)
    user_agent = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    workflow = db.relationship("ApprovalWorkflow", back_populates="history")

    def to_dict(self):
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "step_id": self.step_id,
            "action": self.action,
            "actor_user_id": self.actor_user_id,
            "comments": self.comments,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<ApprovalHistory {self.id} wf={self.workflow_id} {self.action}>"


@_sa_event.listens_for(ApprovalHistory, "before_update")
def _block_history_update(mapper, connection, target) -> None:  # noqa: ANN001
    raise RuntimeError(f"ApprovalHistory id={target.id} is append-only and cannot be updated.")


@_sa_event.listens_for(ApprovalHistory, "before_delete")
def _block_history_delete(mapper, connection, target) -> None:  # noqa: ANN001
    raise RuntimeError(f"ApprovalHistory id={target.id} is append-only and cannot be deleted.")
