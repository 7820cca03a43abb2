"""
Governance settings tests.

Tests cover:
  - Dataclass defaults and validation
  - Resolution order: AppSetting row > Flask config > defaults
  - Emergency quorum / SLA selection
  - seed_governance_defaults and the CLI commands
"""
from datetime import time

import pytest

from change_governance.models import db
from change_governance.models.governance import AppSetting
from change_governance.services.governance_config import (
    SETTING_KEYS,
    GovernanceConfig,
    seed_governance_defaults,
)


def test_defaults():
    cfg = GovernanceConfig()
    assert cfg.cab_quorum == 3
    assert cfg.cab_emergency_quorum == 3
    assert cfg.allow_vote_changes is True
    assert cfg.client_sla_hours == 24
    assert cfg.cab_sla_hours == 48
    assert cfg.cab_emergency_sla_hours == 4
    assert cfg.backout_plan_required_score == 60
    assert cfg.meeting_time() == time(9, 0)


@pytest.mark.parametrize("fields", [
    {"cab_quorum": 0},
    {"cab_emergency_quorum": 0},
    {"client_sla_hours": 0},
    {"default_meeting_time": "nine"},
])
def test_invalid_values_rejected(fields):
    with pytest.raises(ValueError):
        GovernanceConfig(**fields)


def test_emergency_selection():
    cfg = GovernanceConfig(cab_quorum=5, cab_emergency_quorum=2, cab_sla_hours=72, cab_emergency_sla_hours=6)
    assert cfg.quorum_for("emergency") == 2
    assert cfg.quorum_for("normal") == 5
    assert cfg.quorum_for(None) == 5
    assert cfg.cab_sla_for("emergency") == 6
    assert cfg.cab_sla_for("standard") == 72


class TestFromSettings:
    def test_reads_app_config(self, app):
        cfg = GovernanceConfig.from_settings()
        assert cfg.cab_quorum == app.config["CAB_QUORUM"]
        assert cfg.default_meeting_time == app.config["CAB_DEFAULT_MEETING_TIME"]

    def test_app_setting_overrides_config(self):
        AppSetting.set("cab.quorum", 2)
        AppSetting.set("cab.allow_vote_changes", False)
        AppSetting.set("cab.default_meeting_time", "13:15")
        db.session.commit()

        cfg = GovernanceConfig.from_settings()

        assert cfg.cab_quorum == 2
        assert cfg.allow_vote_changes is False
        assert cfg.meeting_time() == time(13, 15)

    def test_string_flags_coerced(self):
        AppSetting.set("cab.allow_vote_changes", "no")
        AppSetting.set("approval.client_sla_hours", "12")
        db.session.commit()
        cfg = GovernanceConfig.from_settings()
        assert cfg.allow_vote_changes is False
        assert cfg.client_sla_hours == 12

    def test_explicit_overrides_win(self):
        AppSetting.set("cab.quorum", 2)
        db.session.commit()
        assert GovernanceConfig.from_settings({"cab_quorum": 7}).cab_quorum == 7


class TestSeed:
    def test_seed_creates_missing_rows_once(self):
        AppSetting.set("cab.quorum", 5)
        db.session.commit()

        assert seed_governance_defaults() == len(SETTING_KEYS) - 1
        db.session.commit()
        assert seed_governance_defaults() == 0

        assert AppSetting.query.count() == len(SETTING_KEYS)
        assert AppSetting.get("cab.quorum") == 5
        assert AppSetting.get("cab.sla_hours_standard") == 48

    def test_cli_seed(self, app):
        result = app.test_cli_runner().invoke(args=["seed-governance-defaults"])
        assert result.exit_code == 0
        assert f"seeded={len(SETTING_KEYS)}" in result.output
        assert AppSetting.query.count() == len(SETTING_KEYS)

    def test_cli_sweep_with_nothing_to_do(self, app):
        result = app.test_cli_runner().invoke(args=["approvals-orchestrate"])
        assert result.exit_code == 0
        assert "reminders_sent=0 escalated=0" in result.output
