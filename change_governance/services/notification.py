"""
Change Governance Core
Notification Service.

In-app notification sink for approval requests, reminders, escalations,
bypass notices and CAB decisions. Delivery beyond the Notification row
(email, chat) is out of scope.

Callers dispatch through ``send_safely`` after their own commit: a failed
notification is logged and rolled back, never propagated, so it cannot
undo the workflow mutation that triggered it.
"""

import logging

from change_governance.models import db
from change_governance.models.notification import Notification

logger = logging.getLogger(__name__)


def send_safely(fn, *args, **kwargs):
    """Invoke a NotificationService helper; swallow and log any failure."""
    try:
        return fn(*args, **kwargs)
    except Exception:
        db.session.rollback()
        logger.exception("Notification dispatch failed: %s", getattr(fn, "__name__", fn))
        return None


def _format_due(approval) -> str:
    return approval.due_at.strftime("%a, %d %b %Y %H:%M") if approval.due_at else "Not set"


class NotificationService:
    """Stateless service class for notification operations."""

    # ── Create ────────────────────────────────────────────────────────────

    @staticmethod
    def create(*, title, message="", category="approval", severity="info",
               user=None, contact=None, entity_type="", entity_id=None):
        """
        Create a single notification record for a user or a client contact.

        Returns:
            The created Notification instance (already committed).
        """
        recipient = ""
        if contact is not None:
            recipient = contact.email or contact.name
        elif user is not None:
            recipient = user.email
        notif = Notification(
            user_id=user.id if user is not None else None,
            client_contact_id=contact.id if contact is not None else None,
            recipient=recipient,
            title=title,
            message=message,
            category=category,
            severity=severity,
            entity_type=entity_type,
            entity_id=entity_id,
        )
        db.session.add(notif)
        db.session.commit()
        return notif

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_for_contact(contact_id, unread_only=False, limit=50):
        q = Notification.query.filter_by(client_contact_id=contact_id)
        if unread_only:
            q = q.filter_by(is_read=False)
        return q.order_by(Notification.id.desc()).limit(limit).all()

    @staticmethod
    def list_for_user(user_id, unread_only=False, limit=50):
        q = Notification.query.filter_by(user_id=user_id)
        if unread_only:
            q = q.filter_by(is_read=False)
        return q.order_by(Notification.id.desc()).limit(limit).all()

    @staticmethod
    def mark_read(notification_id):
        """Mark a single notification as read."""
        notif = db.session.get(Notification, notification_id)
        if notif:
            notif.mark_read()
            db.session.commit()
        return notif

    # ── Approval helpers ──────────────────────────────────────────────────

    @staticmethod
    def notify_approval_request(approval):
        """Ask a client contact to approve a change."""
        contact = approval.client_contact
        if contact is None:
            return None
        change = approval.change_request
        return NotificationService.create(
            title=f"Action Required: Change Request Approval — {change.change_id}",
            message=(
                f"Approval requested for {change.change_id}: {change.title}. "
                f"Priority: {(change.priority or 'medium').capitalize()} | "
                f"Risk: {(change.risk_level or 'unspecified').capitalize()}. "
                f"Response required by: {_format_due(approval)}"
            ),
            category="approval",
            contact=contact,
            entity_type="approval",
            entity_id=approval.id,
        )

    @staticmethod
    def notify_approval_reminder(approval):
        """Due-soon reminder; only client approvals have a contact to remind."""
        contact = getattr(approval, "client_contact", None)
        if contact is None:
            return None
        change = approval.change_request
        return NotificationService.create(
            title=f"Reminder: Approval Required — {change.change_id}",
            message=(
                f"Your approval for {change.change_id}: {change.title} is required "
                f"and the deadline is approaching. Response required by: {_format_due(approval)}"
            ),
            category="approval",
            severity="warning",
            contact=contact,
            entity_type="approval",
            entity_id=approval.id,
        )

    @staticmethod
    def notify_approval_escalated(approval):
        """Tell the requester an approval on their change is overdue."""
        change = approval.change_request
        if change is None or change.requester is None:
            return None
        return NotificationService.create(
            title=f"ESCALATION (Level {approval.escalation_level}): Overdue Approval — {change.change_id}",
            message=(
                f"Approval overdue for {change.change_id} "
                f"(escalation level {approval.escalation_level}). "
                f"Original deadline: {_format_due(approval)}"
            ),
            category="approval",
            severity="error",
            user=change.requester,
            entity_type="approval",
            entity_id=approval.id,
        )

    @staticmethod
    def notify_approval_bypassed(change, contact, bypassed_by_name, reason):
        return NotificationService.create(
            title=f"Change Request Approval Bypassed — {change.change_id}",
            message=(
                f"Approval bypassed for {change.change_id} by {bypassed_by_name}. "
                f"Reason for bypass: {reason}. No action is required from you."
            ),
            category="approval",
            contact=contact,
            entity_type="change_request",
            entity_id=change.id,
        )

    @staticmethod
    def notify_cab_decision(change, outcome):
        """Inform the requester of the CAB outcome."""
        if change.requester is None:
            return None
        labels = {
            "approved": ("CAB approved", "success"),
            "approved_with_conditions": ("CAB approved with conditions", "warning"),
            "rejected": ("CAB rejected", "error"),
        }
        label, severity = labels.get(outcome, (outcome, "info"))
        message = f"{label}: {change.change_id} {change.title}"
        if outcome == "approved_with_conditions":
            message += ". Confirm the conditions before scheduling:\n" + (change.cab_conditions or "")
        return NotificationService.create(
            title=f"{label} — {change.change_id}",
            message=message,
            category="cab",
            severity=severity,
            user=change.requester,
            entity_type="change_request",
            entity_id=change.id,
        )
