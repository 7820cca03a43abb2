"""
Change Governance Core
Governance rule models.

Models:
    - ChangePolicy: admin-defined gate rule matched against a change at submit
    - BlackoutWindow: frozen period during which scheduling is refused
    - AppSetting: key/value store backing GovernanceConfig overrides
"""

import json
from datetime import UTC, datetime

from change_governance.models import db


class ChangePolicy(db.Model):
    """
    Governance rule.

    Scope filters (client_id, change_type, priority) are NULL for "any".
    Risk bounds are inclusive; NULL is unbounded. A NULL gate flag means the
    default rule decides that gate.
    """

    __tablename__ = "change_policies"
    __table_args__ = (
        db.CheckConstraint(
            "min_risk_score IS NULL OR max_risk_score IS NULL OR min_risk_score <= max_risk_score",
            name="ck_policy_risk_bounds",
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")

    client_id = db.Column(
        db.Integer, db.ForeignKey("clients.id", ondelete="CASCADE"), nullable=True, index=True,
    )
    change_type = db.Column(db.String(20), nullable=True)
    priority = db.Column(db.String(20), nullable=True)
    min_risk_score = db.Column(db.Integer, nullable=True)
    max_risk_score = db.Column(db.Integer, nullable=True)

    requires_client_approval = db.Column(db.Boolean, nullable=True)
    requires_cab_approval = db.Column(db.Boolean, nullable=True)
    requires_security_review = db.Column(db.Boolean, nullable=True)
    auto_approve = db.Column(db.Boolean, nullable=True)
    max_implementation_hours = db.Column(db.Integer, nullable=True)

    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(UTC))

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "client_id": self.client_id,
            "change_type": self.change_type,
            "priority": self.priority,
            "min_risk_score": self.min_risk_score,
            "max_risk_score": self.max_risk_score,
            "requires_client_approval": self.requires_client_approval,
            "requires_cab_approval": self.requires_cab_approval,
            "requires_security_review": self.requires_security_review,
            "auto_approve": self.auto_approve,
            "max_implementation_hours": self.max_implementation_hours,
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<ChangePolicy {self.id}: {self.name}>"


class BlackoutWindow(db.Model):
    """Client-scoped (or global when client_id is NULL) change freeze."""

    __tablename__ = "blackout_windows"
    __table_args__ = (
        db.CheckConstraint("ends_at > starts_at", name="ck_blackout_range"),
        db.Index("ix_blackout_range", "starts_at", "ends_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    client_id = db.Column(
        db.Integer, db.ForeignKey("clients.id", ondelete="CASCADE"), nullable=True, index=True,
    )
    starts_at = db.Column(db.DateTime(timezone=True), nullable=False)
    ends_at = db.Column(db.DateTime(timezone=True), nullable=False)
    timezone = db.Column(db.String(64), default="UTC")
    reason = db.Column(db.Text, nullable=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(UTC))

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "client_id": self.client_id,
            "starts_at": self.starts_at.isoformat() if self.starts_at else None,
            "ends_at": self.ends_at.isoformat() if self.ends_at else None,
            "timezone": self.timezone,
            "reason": self.reason,
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<BlackoutWindow {self.id}: {self.name}>"


class AppSetting(db.Model):
    """Runtime setting, value stored as JSON text (``cab.quorum`` → ``3``)."""

    __tablename__ = "app_settings"

    id = db.Column(db.Integer, primary_key=True)
    key = db.Column(db.String(100), unique=True, nullable=False)
    value = db.Column(db.Text, nullable=True)
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(UTC),
                           onupdate=lambda: datetime.now(UTC))

    @classmethod
    def get(cls, key: str, default=None):
        row = cls.query.filter_by(key=key).first()
        if row is None or row.value is None:
            return default
        try:
            return json.loads(row.value)
        except (json.JSONDecodeError, TypeError):
            return row.value

    @classmethod
    def set(cls, key: str, value) -> "AppSetting":
        """Upsert a setting. Flushes only; the caller commits."""
        row = cls.query.filter_by(key=key).first()
        if row is None:
            row = cls(key=key)
            db.session.add(row)
        row.value = json.dumps(value)
        db.session.flush()
        return row

    def to_dict(self):
        return {"key": self.key, "value": AppSetting.get(self.key)}

    def __repr__(self):
        return f"<AppSetting {self.key}>"
