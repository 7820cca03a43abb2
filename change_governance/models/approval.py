"""
Change Governance Core
Approval domain models.

Models:
    - Approval: base row for a single pending/resolved decision point on a change
    - ClientApproval: one per (change, approver contact)
    - CabApproval: the single CAB tracker per change; aggregates the vote outcome
    - CabVote: one committee member's ballot on a change

Approval is a tagged variant mapped with single-table inheritance on ``type``.
The one-tracker-per-change rule for CabApproval is a partial unique index, so
the database refuses a second tracker even under concurrent submits.
"""

from datetime import datetime, timezone

from sqlalchemy import text

from change_governance.models import db

# ── Constants ────────────────────────────────────────────────────────────────

APPROVAL_TYPE_CLIENT = "client"
APPROVAL_TYPE_CAB = "cab"

APPROVAL_PENDING = "pending"
APPROVAL_APPROVED = "approved"
APPROVAL_REJECTED = "rejected"
APPROVAL_STATUSES = {APPROVAL_PENDING, APPROVAL_APPROVED, APPROVAL_REJECTED}

NOTIFICATION_SENT = "sent"
NOTIFICATION_REMINDER_SENT = "reminder_sent"
NOTIFICATION_ESCALATED = "escalated"

VOTE_APPROVE = "approve"
VOTE_REJECT = "reject"
VOTE_ABSTAIN = "abstain"
CAB_VOTE_VALUES = {VOTE_APPROVE, VOTE_REJECT, VOTE_ABSTAIN}


class Approval(db.Model):
    """
    Decision point on a change request.

    Terminal once ``status`` leaves "pending". SLA bookkeeping
    (due_at / reminder_sent_at / escalated_at) is advisory and only
    maintained by the orchestration sweep.
    """

    __tablename__ = "approvals"
    __table_args__ = (
        db.UniqueConstraint("change_request_id", "client_contact_id", name="uq_approval_change_contact"),
        db.Index(
            "uq_approval_one_cab_per_change",
            "change_request_id",
            unique=True,
            sqlite_where=text("type = 'cab'"),
            postgresql_where=text("type = 'cab'"),
        ),
        db.Index("ix_approval_status_due", "status", "due_at"),
        db.CheckConstraint("escalation_level >= 0", name="ck_approval_escalation_level"),
    )

    id = db.Column(db.Integer, primary_key=True)
    change_request_id = db.Column(
        db.Integer, db.ForeignKey("change_requests.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    type = db.Column(db.String(20), nullable=False, comment="client | cab")
    # Set on client approvals only; CAB trackers leave it NULL
    client_contact_id = db.Column(
        db.Integer, db.ForeignKey("client_contacts.id", ondelete="CASCADE"), nullable=True, index=True,
    )
    status = db.Column(db.String(20), nullable=False, default=APPROVAL_PENDING)

    due_at = db.Column(db.DateTime(timezone=True), nullable=True)
    reminder_sent_at = db.Column(db.DateTime(timezone=True), nullable=True)
    escalated_at = db.Column(db.DateTime(timezone=True), nullable=True)
    escalation_level = db.Column(db.Integer, nullable=False, default=0)
    review_round = db.Column(db.Integer, nullable=False, default=1, comment="CAB review round; bumped on resubmission")
    notification_status = db.Column(db.String(20), nullable=True, comment="sent | reminder_sent | escalated")

    responded_at = db.Column(db.DateTime(timezone=True), nullable=True)
    comments = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    change_request = db.relationship("ChangeRequest")

    __mapper_args__ = {
        "polymorphic_on": type,
        "polymorphic_identity": "approval",
    }

    @property
    def is_pending(self) -> bool:
        return self.status == APPROVAL_PENDING

    def resolve(self, status: str, comments: str | None = None) -> None:
        """Move a pending approval to a terminal status."""
        if status not in (APPROVAL_APPROVED, APPROVAL_REJECTED):
            raise ValueError(f"Invalid approval resolution: {status!r}")
        self.status = status
        self.responded_at = datetime.now(timezone.utc)
        if comments is not None:
            self.comments = comments

    def to_dict(self):
        return {
            "id": self.id,
            "change_request_id": self.change_request_id,
            "type": self.type,
            "status": self.status,
            "due_at": self.due_at.isoformat() if self.due_at else None,
            "reminder_sent_at": self.reminder_sent_at.isoformat() if self.reminder_sent_at else None,
            "escalated_at": self.escalated_at.isoformat() if self.escalated_at else None,
            "escalation_level": self.escalation_level,
            "review_round": self.review_round,
            "notification_status": self.notification_status,
            "responded_at": self.responded_at.isoformat() if self.responded_at else None,
            "comments": self.comments,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<{type(self).__name__} {self.id} change={self.change_request_id} [{self.status}]>"


class ClientApproval(Approval):
    """Approval requested from one approver-flagged client contact."""

    client_contact = db.relationship("ClientContact")

    __mapper_args__ = {"polymorphic_identity": APPROVAL_TYPE_CLIENT}

    def to_dict(self):
        d = super().to_dict()
        d["client_contact_id"] = self.client_contact_id
        return d


class CabApproval(Approval):
    """Per-change CAB tracker; resolved by the quorum tally, never by a single voter."""

    __mapper_args__ = {"polymorphic_identity": APPROVAL_TYPE_CAB}


class CabVote(db.Model):
    """
    A CAB member's ballot.

    Unique per (change, voter, review round): re-voting updates the existing
    row. Ballots from earlier rounds are kept as history and never tallied.
    An approving vote with ``conditional_terms`` makes the outcome conditional.
    """

    __tablename__ = "cab_votes"
    __table_args__ = (
        db.UniqueConstraint("change_request_id", "user_id", "review_round", name="uq_cab_vote_change_user_round"),
    )

    id = db.Column(db.Integer, primary_key=True)
    change_request_id = db.Column(
        db.Integer, db.ForeignKey("change_requests.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    review_round = db.Column(db.Integer, nullable=False, default=1)
    vote = db.Column(db.String(20), nullable=False, comment="approve | reject | abstain")
    comments = db.Column(db.Text, nullable=True)
    conditional_terms = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    user = db.relationship("User")

    @property
    def has_conditions(self) -> bool:
        return self.vote == VOTE_APPROVE and bool((self.conditional_terms or "").strip())

    def to_dict(self):
        return {
            "id": self.id,
            "change_request_id": self.change_request_id,
            "user_id": self.user_id,
            "review_round": self.review_round,
            "user_name": (self.user.full_name or self.user.email) if self.user else None,
            "vote": self.vote,
            "comments": self.comments,
            "conditional_terms": self.conditional_terms,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<CabVote change={self.change_request_id} user={self.user_id} {self.vote}>"
