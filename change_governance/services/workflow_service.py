"""
Workflow engine: the authoritative change-request state machine.

Business logic for:
    - Legal transitions:   VALID_TRANSITIONS table + per-target side effects
    - Submission routing:  policy evaluation → auto-approve / CAB / client approval
    - Scheduling:          blackout + change/asset conflict gates, CAB conditions gate
    - Engineer assignment: role check + double-booking check
    - Workflow events:     append-only history of every action

Every public operation locks the change row, performs all writes in the
session and commits once; any failure rolls back with no partial state.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select

from change_governance.core.exceptions import (
    ConflictDetectedError,
    IllegalTransitionError,
    PreconditionFailedError,
    ValidationError,
)
from change_governance.models import db
from change_governance.models.approval import APPROVAL_APPROVED, APPROVAL_PENDING, CabApproval
from change_governance.models.audit import write_audit
from change_governance.models.change import (
    STATUS_APPROVED,
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_DRAFT,
    STATUS_IN_PROGRESS,
    STATUS_PENDING_APPROVAL,
    STATUS_REJECTED,
    STATUS_SCHEDULED,
    STATUS_SUBMITTED,
    ChangeRequest,
)
from change_governance.models.directory import ROLE_ENGINEER, ClientContact
from change_governance.models.workflow import WorkflowEvent
from change_governance.services import blackout_service, policy_engine, scheduling_conflicts
from change_governance.services.governance_config import GovernanceConfig
from change_governance.services.notification import NotificationService, send_safely
from change_governance.utils.helpers import as_utc, display_name, lock_change, transactional, utcnow

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# State machine
# ═════════════════════════════════════════════════════════════════════════════

VALID_TRANSITIONS: dict[str, frozenset[str]] = {
    STATUS_DRAFT: frozenset({STATUS_SUBMITTED, STATUS_CANCELLED}),
    STATUS_SUBMITTED: frozenset({STATUS_APPROVED, STATUS_REJECTED, STATUS_CANCELLED}),
    STATUS_PENDING_APPROVAL: frozenset({STATUS_APPROVED, STATUS_REJECTED, STATUS_CANCELLED}),
    STATUS_APPROVED: frozenset({STATUS_SCHEDULED, STATUS_CANCELLED}),
    STATUS_SCHEDULED: frozenset({STATUS_IN_PROGRESS, STATUS_CANCELLED}),
    STATUS_IN_PROGRESS: frozenset({STATUS_COMPLETED, STATUS_CANCELLED}),
    STATUS_COMPLETED: frozenset(),
    STATUS_CANCELLED: frozenset(),
    STATUS_REJECTED: frozenset({STATUS_DRAFT}),
}

SCHEDULABLE_STATUSES = (STATUS_APPROVED, STATUS_SCHEDULED)


def can_transition(change: ChangeRequest, new_status: str) -> bool:
    return new_status in VALID_TRANSITIONS.get(change.status, frozenset())


def publish_workflow_event(
    change: ChangeRequest,
    event_type: str,
    payload: dict | None = None,
    actor=None,
) -> WorkflowEvent:
    """Append one event row. Caller owns the transaction."""
    event = WorkflowEvent(
        change_request_id=change.id,
        event_type=event_type,
        payload=payload or {},
        triggered_by_id=getattr(actor, "id", None),
        published_at=utcnow(),
    )
    db.session.add(event)
    logger.info(
        "Workflow event %s", event_type,
        extra={"change_id": change.change_id, "event_type": event_type},
    )
    return event


def _resolve_pending_cab_approvals(change: ChangeRequest, actor) -> int:
    comment = "Resolved by approval transition"
    if actor is not None:
        comment += f" ({display_name(actor)})"
    trackers = db.session.execute(
        select(CabApproval).where(
            CabApproval.change_request_id == change.id,
            CabApproval.status == APPROVAL_PENDING,
        )
    ).scalars().all()
    for tracker in trackers:
        tracker.resolve(APPROVAL_APPROVED, comment)
    return len(trackers)


def apply_transition(change: ChangeRequest, new_status: str, actor=None, reason: str | None = None) -> str:
    """Validate and apply a legal transition inside the caller's transaction.

    Returns the previous status. The change must already be locked.
    """
    if not can_transition(change, new_status):
        raise IllegalTransitionError(change.status, new_status)

    old_status = change.status
    now = utcnow()

    if new_status == STATUS_DRAFT:
        change.rejection_reason = None
        # Resubmission re-evaluates the (possibly edited) change
        change.policy_decision = None
    elif new_status == STATUS_APPROVED:
        change.approved_at = now
        change.approved_by_id = getattr(actor, "id", None)
        _resolve_pending_cab_approvals(change, actor)
    elif new_status == STATUS_SCHEDULED:
        if change.scheduled_start_date is None:
            raise PreconditionFailedError("Scheduled dates must be set before scheduling")
    elif new_status == STATUS_IN_PROGRESS:
        change.actual_start_date = now
    elif new_status == STATUS_COMPLETED:
        change.actual_end_date = now
    elif new_status == STATUS_REJECTED:
        change.rejection_reason = reason or f"Rejected by {display_name(actor)}"
    elif new_status == STATUS_CANCELLED:
        change.rejection_reason = reason or f"Cancelled by {display_name(actor)}"

    change.status = new_status

    publish_workflow_event(
        change, "change.transitioned",
        {"from": old_status, "to": new_status, "reason": reason},
        actor,
    )
    write_audit(
        entity_type="change_request",
        entity_id=change.id,
        action="change.transitioned",
        actor=actor,
        diff={"status": {"old": old_status, "new": new_status}, "reason": reason},
    )
    logger.info(
        "Change transitioned %s → %s", old_status, new_status,
        extra={"change_id": change.change_id, "from_status": old_status, "to_status": new_status},
    )
    return old_status


def route_status(change: ChangeRequest, new_status: str, actor=None, reason: str | None = None) -> str:
    """System routing used by submission and the approval subsystem.

    Covers the routes that are not user transitions (draft → approved,
    draft → pending_approval, submitted → pending_approval). Emits the same
    ``change.transitioned`` event, flagged ``system_route``.
    """
    old_status = change.status
    change.status = new_status
    if new_status == STATUS_APPROVED:
        change.approved_at = utcnow()
        change.approved_by_id = getattr(actor, "id", None)

    publish_workflow_event(
        change, "change.transitioned",
        {"from": old_status, "to": new_status, "reason": reason, "system_route": True},
        actor,
    )
    write_audit(
        entity_type="change_request",
        entity_id=change.id,
        action="change.transitioned",
        actor=actor,
        diff={"status": {"old": old_status, "new": new_status}, "reason": reason},
    )
    logger.info(
        "Change routed %s → %s", old_status, new_status,
        extra={"change_id": change.change_id, "from_status": old_status, "to_status": new_status},
    )
    return old_status


def transition(change, new_status: str, actor=None, reason: str | None = None) -> ChangeRequest:
    """Move a change to ``new_status`` with its side effects, atomically.

    Raises:
        IllegalTransitionError: ``new_status`` is not legal from the current status.
        PreconditionFailedError: → scheduled without scheduled dates.
    """
    with transactional():
        change = lock_change(change)
        apply_transition(change, new_status, actor, reason)
    return change


# ═════════════════════════════════════════════════════════════════════════════
# Submission
# ═════════════════════════════════════════════════════════════════════════════

def _has_active_approvers(client_id: int) -> bool:
    return db.session.execute(
        select(ClientContact.id).where(
            ClientContact.client_id == client_id,
            ClientContact.is_approver.is_(True),
            ClientContact.is_active.is_(True),
        ).limit(1)
    ).first() is not None


def submit(change, actor=None, config: GovernanceConfig | None = None) -> ChangeRequest:
    """Evaluate policy and route a draft change.

    Routes:
        auto_approve                          → approved
        no client approval (policy/no contacts) and CAB required → pending_approval + CAB tracker
        no client approval and no CAB         → approved
        otherwise                             → submitted + one client approval per approver

    Raises:
        IllegalTransitionError: change is not a draft.
        PreconditionFailedError: risk at or above the backout threshold without a backout plan.
    """
    from change_governance.services import approval_service

    config = config or GovernanceConfig.from_settings()
    new_client_approvals = []

    with transactional():
        change = lock_change(change)
        if change.status != STATUS_DRAFT:
            raise IllegalTransitionError(change.status, STATUS_SUBMITTED, "Only draft changes can be submitted")

        if change.policy_decision:
            decision = policy_engine.PolicyDecision.from_dict(change.policy_decision)
        else:
            decision = policy_engine.evaluate(policy_engine.payload_from_change(change))

        if decision.risk_score >= config.backout_plan_required_score and not (change.backout_plan or "").strip():
            raise PreconditionFailedError(
                f"A backout plan is required for high-risk changes "
                f"(risk score ≥ {config.backout_plan_required_score}). "
                "Please add a backout plan before submitting."
            )

        change.risk_score = decision.risk_score
        change.policy_decision = decision.to_dict()
        change.requires_cab_approval = bool(decision.requires_cab_approval)

        requires_client = decision.requires_client_approval and _has_active_approvers(change.client_id)

        if decision.auto_approve:
            route = "auto_approved"
            route_status(change, STATUS_APPROVED, actor, "Change request auto-approved by policy.")
        elif not requires_client and decision.requires_cab_approval:
            route = "cab"
            route_status(change, STATUS_PENDING_APPROVAL, actor, "Routed to CAB approval.")
            approval_service.ensure_cab_approval(change, config, commit=False)
        elif not requires_client:
            route = "approved"
            change.requires_cab_approval = False
            route_status(change, STATUS_APPROVED, actor, "No client or CAB approval required.")
        else:
            route = "client"
            apply_transition(change, STATUS_SUBMITTED, actor, "Submitted for client approval.")
            new_client_approvals = approval_service.create_client_approvals(change, config, commit=False)

        publish_workflow_event(change, "change.submitted", {"route": route, "decision": decision.to_dict()}, actor)
        write_audit(
            entity_type="change_request",
            entity_id=change.id,
            action="change.submitted",
            actor=actor,
            diff={"route": route, "risk_score": decision.risk_score, "policy_id": decision.policy_id},
        )

    for approval in new_client_approvals:
        send_safely(NotificationService.notify_approval_request, approval)

    logger.info("Change submitted via %s route", route, extra={"change_id": change.change_id})
    return change


# ═════════════════════════════════════════════════════════════════════════════
# Scheduling
# ═════════════════════════════════════════════════════════════════════════════

def _fmt(dt: datetime) -> str:
    return as_utc(dt).strftime("%Y-%m-%d %H:%M")


def schedule(change, start: datetime, end: datetime, actor=None) -> ChangeRequest:
    """Set the implementation window and move the change to scheduled.

    Re-scheduling an already scheduled change is allowed; the change's own
    current window never conflicts with itself.

    Raises:
        IllegalTransitionError: status not approved/scheduled.
        ValidationError: end <= start.
        ConflictDetectedError: blackout, same-client change, shared-asset or
            assigned-engineer overlap.
        PreconditionFailedError: CAB conditions awaiting confirmation.
    """
    if start is None or end is None:
        raise ValidationError("Both start and end are required")
    start, end = as_utc(start), as_utc(end)

    with transactional():
        change = lock_change(change)
        if change.status not in SCHEDULABLE_STATUSES:
            raise IllegalTransitionError(
                change.status, STATUS_SCHEDULED,
                f"Only approved or scheduled changes can be scheduled (current: {change.status})",
            )
        if end <= start:
            raise ValidationError("End date must be after start date")

        blackouts = blackout_service.find_conflicts(change.client_id, start, end)
        if blackouts:
            names = ", ".join(w.name for w in blackouts)
            raise ConflictDetectedError(
                f"Requested schedule overlaps blackout windows: {names}",
                conflicts=[w.to_dict() for w in blackouts],
                kind="blackout",
            )

        clashes = scheduling_conflicts.find_scheduling_conflicts(change.client_id, start, end, change.id)
        if clashes:
            ids = ", ".join(c.label for c in clashes)
            raise ConflictDetectedError(
                f"Scheduling conflicts detected with: {ids}",
                conflicts=[{"id": c.id, "change_id": c.change_id} for c in clashes],
                kind="schedule",
            )

        asset_clashes = scheduling_conflicts.find_asset_conflicts(change, start, end)
        if asset_clashes:
            summary = ", ".join(f"{a.asset_name} (used by {a.change_id})" for a in asset_clashes)
            raise ConflictDetectedError(
                f"Asset scheduling conflicts detected: {summary}",
                conflicts=[a.to_dict() for a in asset_clashes],
                kind="asset",
            )

        if change.assigned_engineer_id is not None:
            engineer_clashes = scheduling_conflicts.find_engineer_conflicts(
                change.assigned_engineer_id, start, end, change.id,
            )
            if engineer_clashes:
                raise ConflictDetectedError(
                    "Assigned engineer has scheduling conflicts in the requested window: "
                    + ", ".join(c.label for c in engineer_clashes),
                    conflicts=[{"id": c.id, "change_id": c.change_id} for c in engineer_clashes],
                    kind="engineer",
                )

        if change.has_pending_cab_conditions():
            raise PreconditionFailedError("Requester must confirm CAB conditions before scheduling.")

        change.scheduled_start_date = start
        change.scheduled_end_date = end
        if change.status != STATUS_SCHEDULED:
            apply_transition(change, STATUS_SCHEDULED, actor, f"Scheduled from {_fmt(start)} to {_fmt(end)}")

        publish_workflow_event(
            change, "change.scheduled",
            {"scheduled_start_date": start.isoformat(), "scheduled_end_date": end.isoformat()},
            actor,
        )
        write_audit(
            entity_type="change_request",
            entity_id=change.id,
            action="change.scheduled",
            actor=actor,
            diff={"scheduled_start_date": start.isoformat(), "scheduled_end_date": end.isoformat()},
        )
    return change


def assign_engineer(change, engineer, actor=None) -> ChangeRequest:
    """Assign an engineer, refusing double-booking against the change's window.

    Raises:
        PreconditionFailedError: engineer lacks the Engineer role.
        ConflictDetectedError: engineer has overlapping scheduled/in-progress work.
    """
    with transactional():
        change = lock_change(change)
        if not engineer.has_role(ROLE_ENGINEER):
            raise PreconditionFailedError("User must have Engineer role")

        if change.scheduled_start_date and change.scheduled_end_date:
            clashes = scheduling_conflicts.find_engineer_conflicts(
                engineer.id, change.scheduled_start_date, change.scheduled_end_date, change.id,
            )
            if clashes:
                raise ConflictDetectedError(
                    "Engineer has scheduling conflicts in the selected implementation window: "
                    + ", ".join(c.label for c in clashes),
                    conflicts=[{"id": c.id, "change_id": c.change_id} for c in clashes],
                    kind="engineer",
                )

        previous = change.assigned_engineer_id
        change.assigned_engineer_id = engineer.id
        engineer_name = display_name(engineer)
        publish_workflow_event(
            change, "change.engineer_assigned",
            {"engineer_id": engineer.id, "engineer_name": engineer_name},
            actor,
        )
        write_audit(
            entity_type="change_request",
            entity_id=change.id,
            action="change.engineer_assigned",
            actor=actor,
            diff={"assigned_engineer_id": {"old": previous, "new": engineer.id}},
        )
    return change
