"""
Change Governance Core
Scheduled Jobs.

Jobs:
    - approval_reminders: reminder for pending approvals nearing their SLA
    - approval_escalations: escalate pending approvals past their SLA
"""

from __future__ import annotations

import logging
from typing import Any

from change_governance.services.approval_orchestration import (
    escalate_overdue_approvals,
    send_due_soon_reminders,
)
from change_governance.services.governance_config import GovernanceConfig
from change_governance.services.scheduler_service import register_job

logger = logging.getLogger(__name__)


@register_job("approval_reminders")
def run_approval_reminders(app) -> dict[str, Any]:
    """Send due-soon reminders for pending approvals."""
    config = GovernanceConfig.from_settings()
    sent = send_due_soon_reminders(config.reminder_threshold_hours)
    return {"reminders_sent": sent}


@register_job("approval_escalations")
def run_approval_escalations(app) -> dict[str, Any]:
    """Escalate overdue pending approvals."""
    config = GovernanceConfig.from_settings()
    escalated = escalate_overdue_approvals(config.escalation_repeat_hours)
    return {"escalated": escalated}
