"""
Change Governance Core
Audit domain model.

Models:
    - AuditLog: immutable, append-only audit trail for governance actions.
"""

import json
from datetime import UTC, datetime

from change_governance.models import db

# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_ENTITY_TYPES = {"change_request", "approval", "cab_meeting"}

AUDIT_ACTIONS = {
    # Change lifecycle
    "change.submitted",
    "change.transitioned",
    "change.scheduled",
    "change.engineer_assigned",
    "change.cab_conditions_confirmed",
    # Approvals
    "approval.client_approved",
    "approval.client_rejected",
    "approval.client_bypassed",
    "approval.cab_vote_cast",
    "approval.cab_bypassed",
    "approval.cab_round_reset",
    "approval.reminder_sent",
    "approval.escalated",
    # CAB meetings
    "cab_meeting.agenda_refreshed",
    "cab_meeting.updated",
}


class AuditLog(db.Model):
    """
    Immutable audit trail for governance actions.

    One row per action. ``diff_json`` carries the old→new snapshot or the
    action-specific context (reason, vote, escalation level).
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_actor", "actor"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)

    # Polymorphic entity reference
    entity_type = db.Column(
        db.String(30), nullable=False,
        comment="change_request | approval | cab_meeting",
    )
    entity_id = db.Column(
        db.String(36), nullable=False,
        comment="PK of the referenced entity (int-as-string)",
    )

    # What happened
    action = db.Column(
        db.String(60), nullable=False,
        comment="change.transitioned | approval.escalated | …",
    )
    actor = db.Column(
        db.String(150), nullable=False, default="system",
        comment="Display name or 'system'",
    )
    actor_user_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
        comment="FK to users table (nullable for system entries)",
    )

    diff_json = db.Column(
        db.Text, default="{}",
        comment="JSON: {field: {old, new}} or action context",
    )

    # Timestamp (immutable)
    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def diff(self) -> dict:
        """Deserialise *diff_json* to a Python dict."""
        try:
            return json.loads(self.diff_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor": self.actor,
            "actor_user_id": self.actor_user_id,
            "diff": self.diff,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_audit(
    *,
    entity_type: str,
    entity_id,
    action: str,
    actor=None,
    diff: dict | None = None,
) -> AuditLog:
    """
    Append a single audit row. Uses ``flush`` so callers keep
    transaction control.

    ``actor`` may be a User, a display string, or None ("system").
    Returns the (flushed) AuditLog instance.
    """
    actor_user_id = getattr(actor, "id", None)
    if actor is None:
        actor_name = "system"
    elif isinstance(actor, str):
        actor_name = actor
    else:
        actor_name = getattr(actor, "full_name", None) or getattr(actor, "email", None) or "system"

    log = AuditLog(
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor=actor_name,
        actor_user_id=actor_user_id,
        diff_json=json.dumps(diff or {}, default=str),
    )
    db.session.add(log)
    db.session.flush()
    return log
