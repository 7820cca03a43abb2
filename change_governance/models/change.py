"""
Change Governance Core
Change request domain model.

Models:
    - ChangeRequest: a unit of proposed work moving through the governed lifecycle
    - change_request_assets: association table ChangeRequest ↔ ExternalAsset

Status is only ever written by the workflow and approval services; the
legal transition table lives in ``change_governance.services.workflow_service``.
"""

from datetime import datetime, timezone

from sqlalchemy.orm import validates

from change_governance.models import db

# ── Constants ────────────────────────────────────────────────────────────────

STATUS_DRAFT = "draft"
STATUS_SUBMITTED = "submitted"
STATUS_PENDING_APPROVAL = "pending_approval"
STATUS_APPROVED = "approved"
STATUS_SCHEDULED = "scheduled"
STATUS_IN_PROGRESS = "in_progress"
STATUS_COMPLETED = "completed"
STATUS_CANCELLED = "cancelled"
STATUS_REJECTED = "rejected"

CHANGE_STATUSES = (
    STATUS_DRAFT,
    STATUS_SUBMITTED,
    STATUS_PENDING_APPROVAL,
    STATUS_APPROVED,
    STATUS_SCHEDULED,
    STATUS_IN_PROGRESS,
    STATUS_COMPLETED,
    STATUS_CANCELLED,
    STATUS_REJECTED,
)

# Statuses that occupy an implementation window (conflict checks)
ACTIVE_WINDOW_STATUSES = (STATUS_SCHEDULED, STATUS_IN_PROGRESS)

CHANGE_PRIORITIES = {"low", "medium", "high", "critical"}
CHANGE_TYPES = {"standard", "normal", "emergency"}
RISK_LEVELS = {"low", "medium", "high"}

CAB_CONDITIONS_PENDING = "pending"
CAB_CONDITIONS_CONFIRMED = "confirmed"


change_request_assets = db.Table(
    "change_request_assets",
    db.Column(
        "change_request_id", db.Integer,
        db.ForeignKey("change_requests.id", ondelete="CASCADE"), primary_key=True,
    ),
    db.Column(
        "external_asset_id", db.Integer,
        db.ForeignKey("external_assets.id", ondelete="CASCADE"), primary_key=True,
    ),
)


class ChangeRequest(db.Model):
    """
    Change request entity.

    Business rules:
    - status is always one of CHANGE_STATUSES (validator + CHECK constraint).
    - cab_conditions_status is non-null only while cab_conditions is non-null.
    - Rows are never deleted; cancelled / completed are terminal states.
    """

    __tablename__ = "change_requests"
    __table_args__ = (
        db.CheckConstraint(
            "status IN ('draft','submitted','pending_approval','approved','scheduled',"
            "'in_progress','completed','cancelled','rejected')",
            name="ck_change_status",
        ),
        db.CheckConstraint(
            "cab_conditions_status IS NULL OR cab_conditions IS NOT NULL",
            name="ck_change_cab_conditions",
        ),
        db.Index("ix_change_client_status", "client_id", "status"),
        db.Index("ix_change_engineer_status", "assigned_engineer_id", "status"),
        db.Index("ix_change_schedule", "scheduled_start_date", "scheduled_end_date"),
    )

    id = db.Column(db.Integer, primary_key=True)
    change_id = db.Column(db.String(20), unique=True, nullable=True, comment="CHG-000001")
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, default="")

    client_id = db.Column(
        db.Integer, db.ForeignKey("clients.id", ondelete="RESTRICT"), nullable=False, index=True,
    )
    requester_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    assigned_engineer_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )

    status = db.Column(db.String(30), nullable=False, default=STATUS_DRAFT)
    priority = db.Column(db.String(20), default="medium")
    change_type = db.Column(db.String(20), default="normal")
    risk_level = db.Column(db.String(20), default="medium")
    risk_score = db.Column(db.Integer, nullable=True)
    requires_cab_approval = db.Column(db.Boolean, default=False, nullable=False)
    policy_decision = db.Column(db.JSON, nullable=True, comment="Snapshot of the policy evaluation at submit")

    implementation_plan = db.Column(db.Text, nullable=True)
    backout_plan = db.Column(db.Text, nullable=True)
    test_plan = db.Column(db.Text, nullable=True)

    scheduled_start_date = db.Column(db.DateTime(timezone=True), nullable=True)
    scheduled_end_date = db.Column(db.DateTime(timezone=True), nullable=True)
    actual_start_date = db.Column(db.DateTime(timezone=True), nullable=True)
    actual_end_date = db.Column(db.DateTime(timezone=True), nullable=True)

    approved_by_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejection_reason = db.Column(db.Text, nullable=True, comment="Rejection or cancellation reason")

    cab_conditions = db.Column(db.Text, nullable=True)
    cab_conditions_status = db.Column(db.String(20), nullable=True, comment="pending | confirmed")
    cab_conditions_confirmed_by_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    cab_conditions_confirmed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    # Relationships (one-directional ownership; approvals/votes/events are queried)
    client = db.relationship("Client")
    requester = db.relationship("User", foreign_keys=[requester_id])
    assigned_engineer = db.relationship("User", foreign_keys=[assigned_engineer_id])
    approver = db.relationship("User", foreign_keys=[approved_by_id])
    external_assets = db.relationship(
        "ExternalAsset", secondary=change_request_assets, lazy="selectin",
    )

    @validates("status")
    def _validate_status(self, key, value):
        if value not in CHANGE_STATUSES:
            raise ValueError(f"Invalid change status: {value!r}")
        return value

    def has_pending_cab_conditions(self) -> bool:
        return bool(self.cab_conditions) and self.cab_conditions_status == CAB_CONDITIONS_PENDING

    def clear_cab_conditions(self) -> None:
        self.cab_conditions = None
        self.cab_conditions_status = None
        self.cab_conditions_confirmed_at = None
        self.cab_conditions_confirmed_by_id = None

    @property
    def label(self) -> str:
        return self.change_id or f"#{self.id}"

    def to_dict(self):
        return {
            "id": self.id,
            "change_id": self.change_id,
            "title": self.title,
            "client_id": self.client_id,
            "requester_id": self.requester_id,
            "assigned_engineer_id": self.assigned_engineer_id,
            "status": self.status,
            "priority": self.priority,
            "change_type": self.change_type,
            "risk_level": self.risk_level,
            "risk_score": self.risk_score,
            "requires_cab_approval": self.requires_cab_approval,
            "policy_decision": self.policy_decision,
            "scheduled_start_date": self.scheduled_start_date.isoformat() if self.scheduled_start_date else None,
            "scheduled_end_date": self.scheduled_end_date.isoformat() if self.scheduled_end_date else None,
            "actual_start_date": self.actual_start_date.isoformat() if self.actual_start_date else None,
            "actual_end_date": self.actual_end_date.isoformat() if self.actual_end_date else None,
            "approved_by_id": self.approved_by_id,
            "approved_at": self.approved_at.isoformat() if self.approved_at else None,
            "rejection_reason": self.rejection_reason,
            "cab_conditions": self.cab_conditions,
            "cab_conditions_status": self.cab_conditions_status,
            "cab_conditions_confirmed_at": (
                self.cab_conditions_confirmed_at.isoformat() if self.cab_conditions_confirmed_at else None
            ),
            "asset_ids": [a.id for a in self.external_assets],
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<ChangeRequest {self.label} [{self.status}]>"


@db.event.listens_for(ChangeRequest, "after_insert")
def _assign_change_id(mapper, connection, target):
    """Derive the human code from the primary key: CHG-000001, CHG-000002, ..."""
    if target.change_id:
        return
    code = f"CHG-{target.id:06d}"
    connection.execute(
        ChangeRequest.__table__.update()
        .where(ChangeRequest.__table__.c.id == target.id)
        .values(change_id=code)
    )
    target.change_id = code
