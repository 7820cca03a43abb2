"""
Approval orchestration: the SLA sweep.

Runs on a timer (scheduler jobs / ``flask approvals-orchestrate``), not per
request:
    - initialize_approval_sla:     seed due_at when an approval is created
    - send_due_soon_reminders:     one reminder per approval inside the threshold
    - escalate_overdue_approvals:  escalate past-due approvals, repeating daily

Safe to run concurrently with user approval actions: every row is claimed
with a conditional UPDATE that re-checks the sweep predicate at write time,
and only rows whose UPDATE hit exactly one row are counted. A failure on one
approval is logged and skipped; the batch continues.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from sqlalchemy import or_, select, update

from change_governance.models import db
from change_governance.models.approval import (
    APPROVAL_PENDING,
    NOTIFICATION_ESCALATED,
    NOTIFICATION_REMINDER_SENT,
    NOTIFICATION_SENT,
    Approval,
)
from change_governance.models.audit import write_audit
from change_governance.models.change import STATUS_PENDING_APPROVAL, STATUS_SUBMITTED, ChangeRequest
from change_governance.models.workflow import WorkflowEvent
from change_governance.services.governance_config import GovernanceConfig
from change_governance.services.notification import NotificationService, send_safely
from change_governance.utils.helpers import as_utc, utcnow

logger = logging.getLogger(__name__)

DEFAULT_SLA_HOURS = 24
REMINDER_THRESHOLD_HOURS = 4
ESCALATION_REPEAT_HOURS = 24

# Approvals on changes that left the approval stages are not chased
AWAITING_APPROVAL_STATUSES = (STATUS_SUBMITTED, STATUS_PENDING_APPROVAL)


def initialize_approval_sla(approval: Approval, hours: int = DEFAULT_SLA_HOURS) -> Approval:
    """Set due_at = now + hours. Caller owns the transaction."""
    approval.due_at = utcnow() + timedelta(hours=hours)
    approval.notification_status = NOTIFICATION_SENT
    return approval


def _record_sweep_action(approval: Approval, action: str, diff: dict) -> None:
    db.session.add(WorkflowEvent(
        change_request_id=approval.change_request_id,
        event_type=action,
        payload={"approval_id": approval.id, "type": approval.type, **diff},
        published_at=utcnow(),
    ))
    write_audit(entity_type="approval", entity_id=approval.id, action=action, diff=diff)


def _candidate_ids(*criteria) -> list[int]:
    stmt = (
        select(Approval.id)
        .join(ChangeRequest, ChangeRequest.id == Approval.change_request_id)
        .where(
            Approval.status == APPROVAL_PENDING,
            Approval.due_at.is_not(None),
            ChangeRequest.status.in_(AWAITING_APPROVAL_STATUSES),
            *criteria,
        )
        .order_by(Approval.due_at, Approval.id)
    )
    return list(db.session.execute(stmt).scalars())


# ═════════════════════════════════════════════════════════════════════════════
# Reminders
# ═════════════════════════════════════════════════════════════════════════════

def send_due_soon_reminders(threshold_hours: int | None = None, config: GovernanceConfig | None = None) -> int:
    """Remind on pending approvals due within ``threshold_hours``.

    At most one reminder per approval: the claim sets reminder_sent_at and
    re-running immediately finds nothing. Returns the number processed.
    """
    if threshold_hours is None:
        threshold_hours = (config or GovernanceConfig.from_settings()).reminder_threshold_hours
    now = utcnow()
    horizon = now + timedelta(hours=threshold_hours)
    window = (
        Approval.reminder_sent_at.is_(None),
        Approval.due_at > now,
        Approval.due_at <= horizon,
    )

    processed = 0
    for approval_id in _candidate_ids(*window):
        try:
            claimed = db.session.execute(
                update(Approval)
                .where(Approval.id == approval_id, Approval.status == APPROVAL_PENDING, *window)
                .values(reminder_sent_at=now, notification_status=NOTIFICATION_REMINDER_SENT)
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount != 1:
                db.session.rollback()
                continue
            approval = db.session.get(Approval, approval_id, populate_existing=True)
            _record_sweep_action(approval, "approval.reminder_sent", {"due_at": as_utc(approval.due_at).isoformat()})
            db.session.commit()
        except Exception:
            db.session.rollback()
            logger.exception("Reminder failed for approval %s", approval_id, extra={"approval_id": approval_id})
            continue

        processed += 1
        send_safely(NotificationService.notify_approval_reminder, approval)

    if processed:
        logger.info("Sent %d approval reminders", processed, extra={"count": processed})
    return processed


# ═════════════════════════════════════════════════════════════════════════════
# Escalation
# ═════════════════════════════════════════════════════════════════════════════

def _overdue_criteria(now, repeat_hours: int):
    return (
        Approval.due_at < now,
        or_(
            Approval.escalated_at.is_(None),
            Approval.escalated_at < now - timedelta(hours=repeat_hours),
        ),
    )


def escalate_single_approval(approval, repeat_hours: int = ESCALATION_REPEAT_HOURS) -> bool:
    """Escalate one approval if it is still pending and overdue.

    Commits on success and sends the escalation notification afterwards.
    Returns False when another actor resolved or escalated it first.
    """
    approval_id = approval.id if isinstance(approval, Approval) else approval
    now = utcnow()
    claimed = db.session.execute(
        update(Approval)
        .where(
            Approval.id == approval_id,
            Approval.status == APPROVAL_PENDING,
            *_overdue_criteria(now, repeat_hours),
        )
        .values(
            escalated_at=now,
            escalation_level=Approval.escalation_level + 1,
            notification_status=NOTIFICATION_ESCALATED,
        )
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount != 1:
        db.session.rollback()
        return False

    escalated = db.session.get(Approval, approval_id, populate_existing=True)
    _record_sweep_action(escalated, "approval.escalated", {"escalation_level": escalated.escalation_level})
    db.session.commit()
    logger.warning(
        "Approval escalated to level %d", escalated.escalation_level,
        extra={"approval_id": approval_id},
    )
    send_safely(NotificationService.notify_approval_escalated, escalated)
    return True


def escalate_overdue_approvals(repeat_hours: int | None = None, config: GovernanceConfig | None = None) -> int:
    """Escalate every pending approval past due, re-escalating every ``repeat_hours``."""
    if repeat_hours is None:
        repeat_hours = (config or GovernanceConfig.from_settings()).escalation_repeat_hours

    processed = 0
    for approval_id in _candidate_ids(*_overdue_criteria(utcnow(), repeat_hours)):
        try:
            if escalate_single_approval(approval_id, repeat_hours):
                processed += 1
        except Exception:
            db.session.rollback()
            logger.exception("Escalation failed for approval %s", approval_id, extra={"approval_id": approval_id})

    if processed:
        logger.info("Escalated %d overdue approvals", processed, extra={"count": processed})
    return processed


def escalate_approval(approval_id: int, config: GovernanceConfig | None = None) -> bool:
    """Precise per-approval escalation, e.g. fired when one SLA expires."""
    approval = db.session.get(Approval, approval_id)
    if approval is None or not approval.is_pending:
        return False
    due_at = as_utc(approval.due_at)
    if due_at is None or due_at >= utcnow():
        return False
    repeat_hours = (config or GovernanceConfig.from_settings()).escalation_repeat_hours
    return escalate_single_approval(approval, repeat_hours)


def orchestrate(config: GovernanceConfig | None = None) -> dict:
    """Run reminders then escalations; returns both counts."""
    config = config or GovernanceConfig.from_settings()
    reminders = send_due_soon_reminders(config.reminder_threshold_hours)
    escalations = escalate_overdue_approvals(config.escalation_repeat_hours)
    return {"reminders_sent": reminders, "escalated": escalations}
