"""
Change Governance Core
Workflow history and CAB meeting models.

Models:
    - WorkflowEvent: append-only record of a transition or workflow action
    - CabMeeting: scheduled committee session
    - CabMeetingItem: agenda entry (meeting ↔ change) with a per-item decision
    - cab_meeting_members: association table CabMeeting ↔ User (invitees)
"""

from datetime import datetime, timezone

from change_governance.models import db

# ── Constants ────────────────────────────────────────────────────────────────

MEETING_PLANNED = "planned"
MEETING_COMPLETED = "completed"
MEETING_CANCELLED = "cancelled"
MEETING_STATUSES = {MEETING_PLANNED, MEETING_COMPLETED, MEETING_CANCELLED}

AGENDA_DECISIONS = {"pending", "approved", "rejected", "deferred"}


class WorkflowEvent(db.Model):
    """
    Authoritative history of what happened to a change.

    Write-once: the mapper listeners below refuse UPDATE and DELETE.
    """

    __tablename__ = "workflow_events"
    __table_args__ = (
        db.Index("ix_workflow_event_change_type", "change_request_id", "event_type"),
    )

    id = db.Column(db.Integer, primary_key=True)
    change_request_id = db.Column(
        db.Integer, db.ForeignKey("change_requests.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    event_type = db.Column(db.String(60), nullable=False, comment="change.transitioned | change.scheduled | …")
    payload = db.Column(db.JSON, default=dict)
    triggered_by_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    published_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "change_request_id": self.change_request_id,
            "event_type": self.event_type,
            "payload": self.payload or {},
            "triggered_by_id": self.triggered_by_id,
            "published_at": self.published_at.isoformat() if self.published_at else None,
        }

    def __repr__(self):
        return f"<WorkflowEvent {self.id}: {self.event_type} change={self.change_request_id}>"


@db.event.listens_for(WorkflowEvent, "before_update")
def _refuse_event_update(mapper, connection, target):
    raise RuntimeError(f"WorkflowEvent {target.id} is append-only and cannot be updated")


@db.event.listens_for(WorkflowEvent, "before_delete")
def _refuse_event_delete(mapper, connection, target):
    raise RuntimeError(f"WorkflowEvent {target.id} is append-only and cannot be deleted")


cab_meeting_members = db.Table(
    "cab_meeting_members",
    db.Column(
        "cab_meeting_id", db.Integer,
        db.ForeignKey("cab_meetings.id", ondelete="CASCADE"), primary_key=True,
    ),
    db.Column(
        "user_id", db.Integer,
        db.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True,
    ),
)


class CabMeeting(db.Model):
    """
    CAB review session.

    Agenda membership is mutable only while status is "planned"; afterwards
    the items are the historical record of what the board reviewed.
    """

    __tablename__ = "cab_meetings"

    id = db.Column(db.Integer, primary_key=True)
    meeting_date = db.Column(db.DateTime(timezone=True), nullable=False, index=True)
    status = db.Column(db.String(20), nullable=False, default=MEETING_PLANNED)
    agenda_notes = db.Column(db.Text, nullable=True)
    minutes = db.Column(db.Text, nullable=True)
    talking_points = db.Column(db.JSON, nullable=True)

    created_by_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    completed_by_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    items = db.relationship(
        "CabMeetingItem", back_populates="meeting", cascade="all, delete-orphan",
        order_by="CabMeetingItem.id",
    )
    members = db.relationship("User", secondary=cab_meeting_members, lazy="selectin")

    @property
    def is_planned(self) -> bool:
        return self.status == MEETING_PLANNED

    @property
    def change_ids(self) -> set[int]:
        return {item.change_request_id for item in self.items}

    def to_dict(self, include_items=False):
        d = {
            "id": self.id,
            "meeting_date": self.meeting_date.isoformat() if self.meeting_date else None,
            "status": self.status,
            "agenda_notes": self.agenda_notes,
            "minutes": self.minutes,
            "talking_points": self.talking_points,
            "created_by_id": self.created_by_id,
            "completed_by_id": self.completed_by_id,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "member_ids": [u.id for u in self.members],
            "item_count": len(self.items),
        }
        if include_items:
            d["items"] = [item.to_dict() for item in self.items]
        return d

    def __repr__(self):
        return f"<CabMeeting {self.id}: {self.meeting_date} [{self.status}]>"


class CabMeetingItem(db.Model):
    __tablename__ = "cab_meeting_items"
    __table_args__ = (
        db.UniqueConstraint("cab_meeting_id", "change_request_id", name="uq_cab_meeting_item"),
    )

    id = db.Column(db.Integer, primary_key=True)
    cab_meeting_id = db.Column(
        db.Integer, db.ForeignKey("cab_meetings.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    change_request_id = db.Column(
        db.Integer, db.ForeignKey("change_requests.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    decision = db.Column(db.String(20), nullable=False, default="pending",
                         comment="pending | approved | rejected | deferred")
    notes = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    meeting = db.relationship("CabMeeting", back_populates="items")
    change_request = db.relationship("ChangeRequest")

    def to_dict(self):
        return {
            "id": self.id,
            "cab_meeting_id": self.cab_meeting_id,
            "change_request_id": self.change_request_id,
            "change_id": self.change_request.change_id if self.change_request else None,
            "decision": self.decision,
            "notes": self.notes,
        }

    def __repr__(self):
        return f"<CabMeetingItem meeting={self.cab_meeting_id} change={self.change_request_id} {self.decision}>"
