"""
Approval subsystem: client approvals and CAB quorum voting.

Business logic for:
    - Client approvals:   one pending ClientApproval per active approver contact
    - Client responses:   approve / reject, then route the change once all responded
    - CAB tracker:        the single CabApproval per change
    - CAB voting:         upsert-then-tally in one transaction, quorum + majority
    - Conditional votes:  approving votes with terms → approved with conditions pending
    - Bypass actions:     explicit, separately audited client/CAB bypass

Helpers taking ``commit`` run inside the caller's transaction when
``commit=False``; the workflow engine uses that to keep submission atomic.
"""

from __future__ import annotations

import logging

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from change_governance.core.exceptions import (
    ConflictError,
    NotFoundError,
    PreconditionFailedError,
    ValidationError,
)
from change_governance.models import db
from change_governance.models.approval import (
    APPROVAL_APPROVED,
    APPROVAL_PENDING,
    APPROVAL_REJECTED,
    CAB_VOTE_VALUES,
    VOTE_ABSTAIN,
    VOTE_APPROVE,
    VOTE_REJECT,
    Approval,
    CabApproval,
    CabVote,
    ClientApproval,
)
from change_governance.models.audit import write_audit
from change_governance.models.change import (
    CAB_CONDITIONS_CONFIRMED,
    CAB_CONDITIONS_PENDING,
    STATUS_APPROVED,
    STATUS_PENDING_APPROVAL,
    STATUS_REJECTED,
    STATUS_SUBMITTED,
    ChangeRequest,
)
from change_governance.models.directory import ROLE_CAB_MEMBER, ROLE_CHANGE_MANAGER, ClientContact
from change_governance.services import workflow_service
from change_governance.services.approval_orchestration import initialize_approval_sla
from change_governance.services.governance_config import GovernanceConfig
from change_governance.services.notification import NotificationService, send_safely
from change_governance.utils.helpers import display_name, lock_change, transactional, utcnow

logger = logging.getLogger(__name__)

OUTCOME_APPROVED = "approved"
OUTCOME_APPROVED_WITH_CONDITIONS = "approved_with_conditions"
OUTCOME_REJECTED = "rejected"

BYPASS_REASON_MIN_LENGTH = 10


def _run(commit: bool, fn, *args, **kwargs):
    """Execute ``fn`` with commit-or-rollback when this call owns the transaction."""
    if not commit:
        return fn(*args, **kwargs)
    with transactional():
        return fn(*args, **kwargs)


# ═════════════════════════════════════════════════════════════════════════════
# Client approvals
# ═════════════════════════════════════════════════════════════════════════════

def _active_approvers(client_id: int) -> list[ClientContact]:
    return list(db.session.execute(
        select(ClientContact)
        .where(
            ClientContact.client_id == client_id,
            ClientContact.is_approver.is_(True),
            ClientContact.is_active.is_(True),
        )
        .order_by(ClientContact.id)
    ).scalars())


def _reopen(approval: Approval) -> None:
    approval.status = APPROVAL_PENDING
    approval.responded_at = None
    approval.comments = None
    approval.due_at = None
    approval.reminder_sent_at = None
    approval.escalated_at = None
    approval.escalation_level = 0
    approval.notification_status = None


def create_client_approvals(change, config: GovernanceConfig | None = None, *, commit: bool = True) -> list[ClientApproval]:
    """Create one pending approval per active approver contact.

    Idempotent per (change, contact): existing pending rows are kept (and get
    an SLA if they lack one), rows resolved in an earlier round are reopened.
    Returns the approvals that were created or reopened; with ``commit=True``
    their approval requests are sent after the commit.
    """
    config = config or GovernanceConfig.from_settings()

    def _work():
        locked = lock_change(change) if commit else change
        existing = {
            a.client_contact_id: a
            for a in db.session.execute(
                select(ClientApproval).where(ClientApproval.change_request_id == locked.id)
            ).scalars()
        }
        requested = []
        for contact in _active_approvers(locked.client_id):
            approval = existing.get(contact.id)
            if approval is None:
                approval = ClientApproval(
                    change_request_id=locked.id,
                    client_contact_id=contact.id,
                    status=APPROVAL_PENDING,
                )
                db.session.add(approval)
                requested.append(approval)
            elif approval.status != APPROVAL_PENDING:
                _reopen(approval)
                requested.append(approval)
            if approval.due_at is None:
                initialize_approval_sla(approval, hours=config.client_sla_hours)
        db.session.flush()
        return requested

    requested = _run(commit, _work)
    if commit:
        for approval in requested:
            send_safely(NotificationService.notify_approval_request, approval)
    return requested


def _pending_client_approval(change: ChangeRequest, contact: ClientContact) -> ClientApproval:
    approval = db.session.execute(
        select(ClientApproval).where(
            ClientApproval.change_request_id == change.id,
            ClientApproval.client_contact_id == contact.id,
        )
    ).scalar_one_or_none()
    if approval is None:
        raise NotFoundError(resource="ClientApproval", resource_id=f"{change.id}/{contact.id}")
    if not approval.is_pending:
        raise PreconditionFailedError(f"Approval already {approval.status}")
    if change.status != STATUS_SUBMITTED:
        raise PreconditionFailedError(
            f"Change {change.label} is not awaiting client approval (status: {change.status})"
        )
    return approval


def client_approve(change, contact: ClientContact, comments: str | None = None,
                   config: GovernanceConfig | None = None) -> ClientApproval:
    """Record a contact's approval, then route the change if all have responded."""
    config = config or GovernanceConfig.from_settings()
    with transactional():
        change = lock_change(change)
        approval = _pending_client_approval(change, contact)
        approval.resolve(APPROVAL_APPROVED, comments)
        workflow_service.publish_workflow_event(
            change, "change.client_approved",
            {"approval_id": approval.id, "contact_id": contact.id, "contact_name": contact.name, "comments": comments},
        )
        write_audit(
            entity_type="approval",
            entity_id=approval.id,
            action="approval.client_approved",
            actor=contact.name,
            diff={"change_id": change.change_id, "comments": comments},
        )
        check_client_approvals_complete(change, config, commit=False)
    logger.info("Client approval recorded", extra={"change_id": change.change_id, "approval_id": approval.id})
    return approval


def client_reject(change, contact: ClientContact, comments: str | None = None) -> ClientApproval:
    """Record a contact's rejection; the change is rejected immediately."""
    with transactional():
        change = lock_change(change)
        approval = _pending_client_approval(change, contact)
        approval.resolve(APPROVAL_REJECTED, comments)
        workflow_service.publish_workflow_event(
            change, "change.client_rejected",
            {"approval_id": approval.id, "contact_id": contact.id, "contact_name": contact.name, "comments": comments},
        )
        write_audit(
            entity_type="approval",
            entity_id=approval.id,
            action="approval.client_rejected",
            actor=contact.name,
            diff={"change_id": change.change_id, "comments": comments},
        )
        workflow_service.apply_transition(
            change, STATUS_REJECTED, None, comments or "Rejected by client approver",
        )
    logger.info("Client rejection recorded", extra={"change_id": change.change_id, "approval_id": approval.id})
    return approval


def check_client_approvals_complete(change, config: GovernanceConfig | None = None, *,
                                    commit: bool = True) -> str | None:
    """Route the change once no client approval is pending.

    At least one approval → pending_approval (CAB required) or approved.
    All rejected → no transition. Returns the new status or None.
    """
    config = config or GovernanceConfig.from_settings()

    def _work():
        locked = lock_change(change) if commit else change
        if locked.status != STATUS_SUBMITTED:
            return None
        counts = dict(db.session.execute(
            select(ClientApproval.status, func.count(ClientApproval.id))
            .where(ClientApproval.change_request_id == locked.id)
            .group_by(ClientApproval.status)
        ).all())
        if counts.get(APPROVAL_PENDING, 0) > 0 or counts.get(APPROVAL_APPROVED, 0) == 0:
            return None

        if locked.requires_cab_approval:
            workflow_service.route_status(
                locked, STATUS_PENDING_APPROVAL, None, "Client approvals complete. Routed to CAB approval.",
            )
            ensure_cab_approval(locked, config, commit=False)
            return STATUS_PENDING_APPROVAL

        workflow_service.apply_transition(locked, STATUS_APPROVED, None, "Client approvals complete.")
        return STATUS_APPROVED

    return _run(commit, _work)


def get_pending_for_contact(contact: ClientContact) -> list[ClientApproval]:
    return list(db.session.execute(
        select(ClientApproval)
        .where(
            ClientApproval.client_contact_id == contact.id,
            ClientApproval.status == APPROVAL_PENDING,
        )
        .order_by(ClientApproval.due_at, ClientApproval.id)
    ).scalars())


# ═════════════════════════════════════════════════════════════════════════════
# CAB tracker
# ═════════════════════════════════════════════════════════════════════════════

def get_cab_approval(change: ChangeRequest) -> CabApproval | None:
    return db.session.execute(
        select(CabApproval).where(CabApproval.change_request_id == change.id)
    ).scalar_one_or_none()


def ensure_cab_approval(change, config: GovernanceConfig | None = None, *, commit: bool = True) -> CabApproval:
    """Create (or reopen for a new review round) the change's CAB tracker.

    Reopening starts a new review round: earlier ballots stay on record but
    only the current round is tallied.
    """
    config = config or GovernanceConfig.from_settings()

    def _work():
        locked = lock_change(change) if commit else change
        tracker = get_cab_approval(locked)
        if tracker is None:
            tracker = CabApproval(change_request_id=locked.id, status=APPROVAL_PENDING)
            db.session.add(tracker)
            try:
                db.session.flush()  # partial unique index: one tracker per change
            except IntegrityError as exc:
                raise ConflictError("CabApproval", "change_request_id", locked.change_id) from exc
        elif tracker.status != APPROVAL_PENDING:
            previous_round = tracker.review_round
            archived = len(_round_votes(locked.id, previous_round))
            _reopen(tracker)
            tracker.review_round = previous_round + 1
            write_audit(
                entity_type="approval",
                entity_id=tracker.id,
                action="approval.cab_round_reset",
                diff={
                    "change_id": locked.change_id,
                    "review_round": tracker.review_round,
                    "archived_votes": archived,
                },
            )
        if tracker.due_at is None:
            initialize_approval_sla(tracker, hours=config.cab_sla_for(locked.change_type))
        db.session.flush()
        return tracker

    return _run(commit, _work)


# ═════════════════════════════════════════════════════════════════════════════
# CAB voting
# ═════════════════════════════════════════════════════════════════════════════

def cast_cab_vote(change, user, vote: str, comments: str | None = None,
                  conditional_terms: str | None = None,
                  config: GovernanceConfig | None = None) -> tuple[CabVote, str | None]:
    """Upsert a member's ballot and re-tally, in one transaction.

    Returns ``(vote_row, outcome)`` where outcome is the quorum result or None.

    Raises:
        ValidationError: unknown vote value.
        PreconditionFailedError: not a CAB member, the requester, voting is
            closed (change not pending_approval), or re-voting is disabled.
    """
    config = config or GovernanceConfig.from_settings()
    if vote not in CAB_VOTE_VALUES:
        raise ValidationError(f"Invalid vote {vote!r}; expected one of {sorted(CAB_VOTE_VALUES)}")
    terms = (conditional_terms or "").strip() or None

    with transactional():
        change = lock_change(change)
        if not user.has_role(ROLE_CAB_MEMBER):
            raise PreconditionFailedError("User is not a CAB member")
        if change.requester_id is not None and change.requester_id == user.id:
            raise PreconditionFailedError("Requester cannot cast CAB vote on their own change request.")
        if change.status != STATUS_PENDING_APPROVAL:
            raise PreconditionFailedError(
                f"CAB voting is closed for {change.label} (status: {change.status})"
            )

        review_round = _current_round(change)
        ballot = db.session.execute(
            select(CabVote).where(
                CabVote.change_request_id == change.id,
                CabVote.user_id == user.id,
                CabVote.review_round == review_round,
            )
        ).scalar_one_or_none()
        if ballot is None:
            ballot = CabVote(change_request_id=change.id, user_id=user.id, review_round=review_round)
            db.session.add(ballot)
        elif not config.allow_vote_changes:
            raise PreconditionFailedError("Vote changes are disabled; your vote is already recorded.")
        ballot.vote = vote
        ballot.comments = comments
        ballot.conditional_terms = terms
        db.session.flush()

        workflow_service.publish_workflow_event(
            change, "change.cab_vote_cast",
            {"user_id": user.id, "vote": vote, "conditional_terms": terms},
            user,
        )
        write_audit(
            entity_type="change_request",
            entity_id=change.id,
            action="approval.cab_vote_cast",
            actor=user,
            diff={"vote": vote, "conditional_terms": terms},
        )
        outcome = check_cab_quorum(change, config, commit=False)

    if outcome:
        send_safely(NotificationService.notify_cab_decision, change, outcome)
    return ballot, outcome


def _current_round(change: ChangeRequest) -> int:
    tracker = get_cab_approval(change)
    return tracker.review_round if tracker is not None else 1


def _round_votes(change_id: int, review_round: int) -> list[CabVote]:
    return list(db.session.execute(
        select(CabVote)
        .where(CabVote.change_request_id == change_id, CabVote.review_round == review_round)
        .order_by(CabVote.id)
    ).scalars())


def _ordered_votes(change: ChangeRequest) -> list[CabVote]:
    """Ballots of the current review round, in casting order."""
    return _round_votes(change.id, _current_round(change))


def check_cab_quorum(change, config: GovernanceConfig | None = None, *, commit: bool = True) -> str | None:
    """Tally the ballots and resolve the change when quorum and a majority exist.

    Abstentions count toward quorum but not toward the majority. An exact
    tie resolves nothing. Returns "approved", "approved_with_conditions",
    "rejected" or None.
    """
    config = config or GovernanceConfig.from_settings()

    def _work():
        locked = lock_change(change) if commit else change
        if locked.status != STATUS_PENDING_APPROVAL:
            return None
        votes = _ordered_votes(locked)
        if len(votes) < config.quorum_for(locked.change_type):
            return None

        approves = sum(1 for v in votes if v.vote == VOTE_APPROVE)
        rejects = sum(1 for v in votes if v.vote == VOTE_REJECT)

        if approves > rejects:
            lines: list[str] = []
            for v in votes:
                if not v.has_conditions:
                    continue
                line = f"{display_name(v.user, 'CAB Member')}: {v.conditional_terms.strip()}"
                if line not in lines:
                    lines.append(line)
            if lines:
                approve_with_conditions(locked, "\n".join(lines))
                return OUTCOME_APPROVED_WITH_CONDITIONS
            approve_change(locked)
            return OUTCOME_APPROVED
        if rejects > approves:
            reject_change(locked)
            return OUTCOME_REJECTED
        return None

    outcome = _run(commit, _work)
    if outcome:
        logger.info("CAB quorum resolved: %s", outcome, extra={"change_id": change.change_id})
        if commit:
            send_safely(NotificationService.notify_cab_decision, change, outcome)
    return outcome


def _resolve_cab_tracker(change: ChangeRequest, status: str, comments: str) -> None:
    tracker = get_cab_approval(change)
    if tracker is not None and tracker.status == APPROVAL_PENDING:
        tracker.resolve(status, comments)


def approve_change(change: ChangeRequest, actor=None) -> None:
    """CAB approval without conditions. Runs inside the caller's transaction."""
    _resolve_cab_tracker(change, APPROVAL_APPROVED, "Approved by CAB vote")
    change.clear_cab_conditions()
    workflow_service.apply_transition(change, STATUS_APPROVED, actor, "Change approved by CAB vote")
    workflow_service.publish_workflow_event(change, "change.cab_approved", {}, actor)


def approve_with_conditions(change: ChangeRequest, conditions: str, actor=None) -> None:
    """CAB approval pending the requester's confirmation of ``conditions``."""
    _resolve_cab_tracker(change, APPROVAL_APPROVED, "Approved by CAB vote with conditions")
    change.cab_conditions = conditions
    change.cab_conditions_status = CAB_CONDITIONS_PENDING
    change.cab_conditions_confirmed_at = None
    change.cab_conditions_confirmed_by_id = None
    workflow_service.apply_transition(
        change, STATUS_APPROVED, actor,
        "Change approved by CAB with conditions pending requester confirmation.",
    )
    workflow_service.publish_workflow_event(
        change, "change.cab_approved_with_conditions", {"conditions": conditions}, actor,
    )


def reject_change(change: ChangeRequest, actor=None) -> None:
    """CAB rejection. Runs inside the caller's transaction."""
    _resolve_cab_tracker(change, APPROVAL_REJECTED, "Rejected by CAB vote")
    change.clear_cab_conditions()
    workflow_service.apply_transition(change, STATUS_REJECTED, actor, "Rejected by CAB vote")
    workflow_service.publish_workflow_event(change, "change.cab_rejected", {}, actor)


def confirm_cab_conditions(change, user) -> ChangeRequest:
    """Requester (or a Change Manager) acknowledges the CAB conditions.

    Raises:
        PreconditionFailedError: nothing pending, or the user may not confirm.
    """
    with transactional():
        change = lock_change(change)
        if not change.has_pending_cab_conditions():
            raise PreconditionFailedError("No pending CAB conditions to confirm.")
        if change.requester_id != user.id and not user.has_role(ROLE_CHANGE_MANAGER):
            raise PreconditionFailedError("Only the requester or a Change Manager can confirm CAB conditions.")

        change.cab_conditions_status = CAB_CONDITIONS_CONFIRMED
        change.cab_conditions_confirmed_at = utcnow()
        change.cab_conditions_confirmed_by_id = user.id
        workflow_service.publish_workflow_event(change, "change.cab_conditions_confirmed", {}, user)
        write_audit(
            entity_type="change_request",
            entity_id=change.id,
            action="change.cab_conditions_confirmed",
            actor=user,
            diff={"cab_conditions_status": {"old": CAB_CONDITIONS_PENDING, "new": CAB_CONDITIONS_CONFIRMED}},
        )
    return change


def get_cab_vote_summary(change: ChangeRequest, config: GovernanceConfig | None = None) -> dict:
    config = config or GovernanceConfig.from_settings()
    votes = _ordered_votes(change)
    quorum = config.quorum_for(change.change_type)
    return {
        "review_round": _current_round(change),
        "total_votes": len(votes),
        "approves": sum(1 for v in votes if v.vote == VOTE_APPROVE),
        "rejects": sum(1 for v in votes if v.vote == VOTE_REJECT),
        "abstains": sum(1 for v in votes if v.vote == VOTE_ABSTAIN),
        "quorum": quorum,
        "quorum_met": len(votes) >= quorum,
        "votes": [
            {
                "user": display_name(v.user, "Unknown"),
                "vote": v.vote,
                "comments": v.comments,
                "conditional_terms": v.conditional_terms,
            }
            for v in votes
        ],
    }


# ═════════════════════════════════════════════════════════════════════════════
# Bypass actions
# ═════════════════════════════════════════════════════════════════════════════

def _validate_bypass(user, reason: str | None) -> str:
    reason = (reason or "").strip()
    if len(reason) < BYPASS_REASON_MIN_LENGTH:
        raise ValidationError(f"A bypass reason of at least {BYPASS_REASON_MIN_LENGTH} characters is required")
    if not user.has_role(ROLE_CHANGE_MANAGER):
        raise PreconditionFailedError("Only a Change Manager can bypass approvals")
    return reason


def bypass_client_approval(change, user, reason: str,
                           config: GovernanceConfig | None = None) -> list[ClientApproval]:
    """Approve every pending client approval on the contacts' behalf.

    Each bypassed contact is notified; the change then routes as if the
    contacts had approved.
    """
    config = config or GovernanceConfig.from_settings()
    reason = _validate_bypass(user, reason)
    bypassed_by = display_name(user)

    with transactional():
        change = lock_change(change)
        if change.status != STATUS_SUBMITTED:
            raise PreconditionFailedError(f"Change {change.label} is not awaiting client approval")
        pending = list(db.session.execute(
            select(ClientApproval).where(
                ClientApproval.change_request_id == change.id,
                ClientApproval.status == APPROVAL_PENDING,
            ).order_by(ClientApproval.id)
        ).scalars())
        if not pending:
            raise PreconditionFailedError("No pending client approvals to bypass.")

        comment = f"Bypassed by {bypassed_by}. Reason: {reason}"
        for approval in pending:
            approval.resolve(APPROVAL_APPROVED, comment)
        workflow_service.publish_workflow_event(
            change, "change.client_approval_bypassed",
            {"approval_ids": [a.id for a in pending], "reason": reason},
            user,
        )
        write_audit(
            entity_type="change_request",
            entity_id=change.id,
            action="approval.client_bypassed",
            actor=user,
            diff={"approval_ids": [a.id for a in pending], "reason": reason},
        )
        check_client_approvals_complete(change, config, commit=False)

    for approval in pending:
        if approval.client_contact is not None:
            send_safely(
                NotificationService.notify_approval_bypassed,
                change, approval.client_contact, bypassed_by, reason,
            )
    logger.warning("Client approval bypassed", extra={"change_id": change.change_id})
    return pending


def bypass_cab_voting(change, user, reason: str) -> ChangeRequest:
    """Approve a change awaiting CAB without waiting for quorum."""
    reason = _validate_bypass(user, reason)

    with transactional():
        change = lock_change(change)
        if change.status != STATUS_PENDING_APPROVAL:
            raise PreconditionFailedError("This change is not pending CAB approval.")
        comment = f"Bypassed by {display_name(user)}. Reason: {reason}"
        _resolve_cab_tracker(change, APPROVAL_APPROVED, comment)
        change.clear_cab_conditions()
        workflow_service.apply_transition(change, STATUS_APPROVED, user, comment)
        workflow_service.publish_workflow_event(change, "change.cab_voting_bypassed", {"reason": reason}, user)
        write_audit(
            entity_type="change_request",
            entity_id=change.id,
            action="approval.cab_bypassed",
            actor=user,
            diff={"reason": reason},
        )
    logger.warning("CAB voting bypassed", extra={"change_id": change.change_id})
    return change
