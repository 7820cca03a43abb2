"""
Governance settings value object.

Quorum sizes, SLA hours and the backout-plan threshold are passed into the
approval, orchestration and workflow services at call time instead of being
read from global state inside them.

Resolution order (first hit wins):
    1. AppSetting row (``cab.quorum``, ``cab.sla_hours_standard``, …)
    2. Flask app config (``CAB_QUORUM``, ``CAB_APPROVAL_SLA_HOURS``, …)
    3. Dataclass defaults below

Usage:
    from change_governance.services.governance_config import GovernanceConfig
    cfg = GovernanceConfig.from_settings()
    check_cab_quorum(change, config=cfg)

    # In tests, inject directly:
    check_cab_quorum(change, config=GovernanceConfig(cab_quorum=2))
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, fields
from datetime import time

from flask import current_app, has_app_context

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# Setting keys: dataclass field → (AppSetting key, Flask config key)
# ═════════════════════════════════════════════════════════════════════════════

SETTING_KEYS: dict[str, tuple[str, str]] = {
    "cab_quorum": ("cab.quorum", "CAB_QUORUM"),
    "cab_emergency_quorum": ("cab.emergency_quorum", "CAB_EMERGENCY_QUORUM"),
    "allow_vote_changes": ("cab.allow_vote_changes", "CAB_ALLOW_VOTE_CHANGES"),
    "client_sla_hours": ("approval.client_sla_hours", "CLIENT_APPROVAL_SLA_HOURS"),
    "cab_sla_hours": ("cab.sla_hours_standard", "CAB_APPROVAL_SLA_HOURS"),
    "cab_emergency_sla_hours": ("cab.sla_hours_emergency", "CAB_EMERGENCY_SLA_HOURS"),
    "reminder_threshold_hours": ("approval.reminder_threshold_hours", "REMINDER_THRESHOLD_HOURS"),
    "escalation_repeat_hours": ("approval.escalation_repeat_hours", "ESCALATION_REPEAT_HOURS"),
    "backout_plan_required_score": ("policy.backout_plan_required_score", "BACKOUT_PLAN_REQUIRED_SCORE"),
    "default_meeting_time": ("cab.default_meeting_time", "CAB_DEFAULT_MEETING_TIME"),
}


@dataclass(frozen=True)
class GovernanceConfig:
    """Immutable snapshot of the governance knobs for one invocation."""

    cab_quorum: int = 3
    cab_emergency_quorum: int = 3
    allow_vote_changes: bool = True
    client_sla_hours: int = 24
    cab_sla_hours: int = 48
    cab_emergency_sla_hours: int = 4
    reminder_threshold_hours: int = 4
    escalation_repeat_hours: int = 24
    backout_plan_required_score: int = 60
    default_meeting_time: str = "09:00"

    def __post_init__(self):
        if self.cab_quorum < 1 or self.cab_emergency_quorum < 1:
            raise ValueError("CAB quorum must be at least 1")
        if self.client_sla_hours < 1 or self.cab_sla_hours < 1 or self.cab_emergency_sla_hours < 1:
            raise ValueError("SLA hours must be positive")
        self.meeting_time()  # validates the HH:MM format

    def quorum_for(self, change_type: str | None) -> int:
        """Emergency changes use the emergency quorum (same as the standard one unless lowered)."""
        if change_type == "emergency":
            return self.cab_emergency_quorum
        return self.cab_quorum

    def cab_sla_for(self, change_type: str | None) -> int:
        if change_type == "emergency":
            return self.cab_emergency_sla_hours
        return self.cab_sla_hours

    def meeting_time(self) -> time:
        try:
            hour, minute = (int(part) for part in self.default_meeting_time.split(":", 1))
            return time(hour, minute)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Invalid default_meeting_time: {self.default_meeting_time!r}") from exc

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_settings(cls, overrides: dict | None = None) -> GovernanceConfig:
        """Build a config from AppSetting rows layered over Flask config defaults.

        Must run inside an app context to see either layer; outside one the
        dataclass defaults (plus ``overrides``) are used.
        """
        from change_governance.models.governance import AppSetting

        values: dict = {}
        for f in fields(cls):
            setting_key, config_key = SETTING_KEYS[f.name]
            value = None
            if has_app_context():
                value = AppSetting.get(setting_key)
                if value is None:
                    value = current_app.config.get(config_key)
            if value is not None:
                values[f.name] = _coerce(value, f.type)
        values.update(overrides or {})
        return cls(**values)


def _coerce(value, type_name):
    # ``from __future__ import annotations`` leaves field types as strings
    if type_name == "int":
        return int(value)
    if type_name == "bool":
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes", "on")
        return bool(value)
    return str(value)


def seed_governance_defaults() -> int:
    """Write an AppSetting row for every governance key that has none yet.

    Values come from the current Flask config (or the dataclass defaults).
    Existing rows are left alone. Returns the number of rows created; the
    caller commits.
    """
    from change_governance.models.governance import AppSetting

    defaults = GovernanceConfig.from_settings().to_dict()
    created = 0
    for field_name, (setting_key, _config_key) in SETTING_KEYS.items():
        if AppSetting.get(setting_key) is None:
            AppSetting.set(setting_key, defaults[field_name])
            created += 1
    return created
