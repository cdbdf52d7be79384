"""
Approval Routing Engine
Scheduled Jobs.

Jobs:
    - approval_escalation_sweep: flags overdue approval steps and notifies
      the role deputy (or the acting approver when no deputy is on record)
"""

from __future__ import annotations

from typing import Any

from approval_routing.services.scheduler_service import register_job


@register_job("approval_escalation_sweep")
def sweep_overdue_approvals(app) -> dict[str, Any]:
    """Escalate approval steps that are past their due date."""
    from approval_routing.services.approval_engine import get_engine

    flagged = get_engine(app).sweep_overdue()
    return {"workflows_flagged": flagged}
