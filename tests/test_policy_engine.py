"""
Policy engine unit tests.

Tests cover:
  - Additive risk score + clamping
  - Blank plans count as missing
  - Default gates when no policy matches
  - Specificity ordering and deterministic tie-break
  - Inclusive risk bounds
  - NULL gate flags falling back to the default rule
  - DB-backed policy loading
"""
import itertools

import pytest

from change_governance.models.governance import ChangePolicy
from change_governance.services import policy_engine
from change_governance.services.policy_engine import (
    PolicyDecision,
    calculate_risk_score,
    evaluate,
    find_matching_policy,
)

ALL_PLANS = {
    "backout_plan": "Restore snapshot",
    "test_plan": "Smoke test",
    "implementation_plan": "Apply patch",
}


def _payload(**overrides):
    payload = {
        "client_id": 1,
        "risk_level": "medium",
        "priority": "medium",
        "change_type": "normal",
        **ALL_PLANS,
    }
    payload.update(overrides)
    return payload


def _policy(pid, **fields):
    """Detached ChangePolicy usable by the pure code path."""
    fields.setdefault("name", f"Policy {pid}")
    fields.setdefault("is_active", True)
    return ChangePolicy(id=pid, **fields)


# ═════════════════════════════════════════════════════════════════════════
# RISK SCORE
# ═════════════════════════════════════════════════════════════════════════

class TestRiskScore:
    def test_medium_normal_with_all_plans(self):
        assert calculate_risk_score(_payload()) == 45 + 5 + 5

    def test_low_standard_low_priority(self):
        payload = _payload(risk_level="low", change_type="standard", priority="low")
        assert calculate_risk_score(payload) == 20 + 0 - 10

    def test_missing_plans_add_penalties(self):
        payload = _payload(backout_plan=None, test_plan=None, implementation_plan=None)
        assert calculate_risk_score(payload) == 55 + 15 + 10 + 10

    def test_blank_plan_counts_as_missing(self):
        assert calculate_risk_score(_payload(backout_plan="   ")) == 55 + 15

    def test_unknown_values_use_defaults(self):
        payload = _payload(risk_level="weird", priority=None, change_type="")
        assert calculate_risk_score(payload) == 45 + 5 + 5

    def test_emergency_high_critical_without_backout_clamps_to_100(self):
        payload = _payload(change_type="emergency", risk_level="high", priority="critical", backout_plan=None)
        assert calculate_risk_score(payload) == 100

    @pytest.mark.parametrize(
        "risk_level,priority,change_type,has_plans",
        list(itertools.product(
            ["low", "medium", "high", None],
            ["low", "medium", "high", "critical", None],
            ["standard", "normal", "emergency", None],
            [True, False],
        )),
    )
    def test_score_always_within_bounds(self, risk_level, priority, change_type, has_plans):
        payload = {"risk_level": risk_level, "priority": priority, "change_type": change_type}
        if has_plans:
            payload.update(ALL_PLANS)
        assert 0 <= calculate_risk_score(payload) <= 100


# ═════════════════════════════════════════════════════════════════════════
# DEFAULT GATES
# ═════════════════════════════════════════════════════════════════════════

class TestDefaultGates:
    def test_no_policies_uses_default_rules(self):
        decision = evaluate(_payload(), policies=[])
        assert decision.risk_score == 55
        assert decision.matched is False
        assert decision.policy_id is None
        assert decision.requires_client_approval is True
        assert decision.requires_cab_approval is False
        assert decision.auto_approve is False
        assert decision.requires_security_review is False

    def test_high_score_requires_cab(self):
        decision = evaluate(_payload(risk_level="high"), policies=[])
        assert decision.risk_score == 80
        assert decision.requires_cab_approval is True
        assert decision.requires_security_review is True

    def test_cab_threshold_is_inclusive(self):
        # 45 + 5 + 5 + 15 (no backout) = 70
        decision = evaluate(_payload(backout_plan=None), policies=[])
        assert decision.risk_score == 70
        assert decision.requires_cab_approval is True

    def test_emergency_always_requires_cab(self):
        decision = evaluate(_payload(change_type="emergency", risk_level="low", priority="low"), policies=[])
        assert decision.risk_score == 45
        assert decision.requires_cab_approval is True

    def test_standard_low_score_auto_approves(self):
        decision = evaluate(_payload(risk_level="low", priority="low", change_type="standard"), policies=[])
        assert decision.risk_score == 10
        assert decision.auto_approve is True

    def test_normal_low_score_is_not_auto_approved(self):
        decision = evaluate(_payload(risk_level="low", priority="low"), policies=[])
        assert decision.risk_score == 25
        assert decision.auto_approve is False


# ═════════════════════════════════════════════════════════════════════════
# POLICY MATCHING
# ═════════════════════════════════════════════════════════════════════════

class TestPolicyMatching:
    def test_most_specific_policy_wins(self):
        generic = _policy(1, requires_cab_approval=False)
        typed = _policy(2, change_type="normal", requires_cab_approval=True)
        client_scoped = _policy(3, client_id=1, auto_approve=True)
        winner = find_matching_policy(_payload(), 55, [generic, typed, client_scoped])
        assert winner is client_scoped

    def test_change_type_beats_priority(self):
        by_priority = _policy(1, priority="medium")
        by_type = _policy(2, change_type="normal")
        assert find_matching_policy(_payload(), 55, [by_priority, by_type]) is by_type

    def test_tie_broken_by_lowest_id(self):
        later = _policy(9, change_type="normal")
        earlier = _policy(4, change_type="normal")
        assert find_matching_policy(_payload(), 55, [later, earlier]) is earlier
        assert find_matching_policy(_payload(), 55, [earlier, later]) is earlier

    def test_filters_must_equal_when_set(self):
        other_client = _policy(1, client_id=2)
        other_type = _policy(2, change_type="emergency")
        assert find_matching_policy(_payload(), 55, [other_client, other_type]) is None

    def test_inactive_policy_ignored(self):
        assert find_matching_policy(_payload(), 55, [_policy(1, is_active=False)]) is None

    def test_bounds_are_inclusive(self):
        exact = _policy(1, min_risk_score=55, max_risk_score=55)
        assert find_matching_policy(_payload(), 55, [exact]) is exact
        assert find_matching_policy(_payload(), 56, [exact]) is None

    def test_open_bounds(self):
        upper_only = _policy(1, max_risk_score=30)
        lower_only = _policy(2, min_risk_score=60)
        assert find_matching_policy(_payload(), 20, [upper_only, lower_only]) is upper_only
        assert find_matching_policy(_payload(), 90, [upper_only, lower_only]) is lower_only
        assert find_matching_policy(_payload(), 45, [upper_only, lower_only]) is None

    def test_policy_flags_override_defaults(self):
        policy = _policy(1, requires_client_approval=False, requires_cab_approval=True, auto_approve=False)
        decision = evaluate(_payload(), [policy])
        assert decision.matched is True
        assert decision.policy_id == 1
        assert decision.policy_name == "Policy 1"
        assert decision.requires_client_approval is False
        assert decision.requires_cab_approval is True

    def test_null_gate_falls_back_to_default_rule(self):
        policy = _policy(1, auto_approve=False)
        decision = evaluate(_payload(risk_level="high"), [policy])
        assert decision.matched is True
        assert decision.requires_cab_approval is True  # default: score 80 >= 70
        assert decision.requires_client_approval is True
        assert decision.auto_approve is False


class TestDatabasePolicies:
    def test_evaluate_loads_active_policies(self, acme, globex, make_policy):
        make_policy("Generic", requires_cab_approval=False)
        scoped = make_policy("Acme normal", client_id=acme.id, change_type="normal", requires_cab_approval=True)
        make_policy("Globex", client_id=globex.id, auto_approve=True)
        make_policy("Retired", client_id=acme.id, change_type="normal", priority="medium", is_active=False)

        decision = evaluate(_payload(client_id=acme.id))
        assert decision.policy_id == scoped.id
        assert decision.requires_cab_approval is True

    def test_client_scoped_policy_not_applied_to_other_client(self, acme, globex, make_policy):
        make_policy("Acme only", client_id=acme.id, auto_approve=True)
        decision = evaluate(_payload(client_id=globex.id))
        assert decision.matched is False
        assert decision.auto_approve is False

    def test_payload_from_change(self, acme, make_change):
        change = make_change(acme, risk_level="high", backout_plan="")
        payload = policy_engine.payload_from_change(change)
        assert payload["client_id"] == acme.id
        assert payload["risk_level"] == "high"
        assert calculate_risk_score(payload) == 70 + 5 + 5 + 15


def test_decision_survives_json_storage():
    decision = evaluate(_payload(), policies=[_policy(7, requires_cab_approval=True)])
    restored = PolicyDecision.from_dict(decision.to_dict())
    assert restored == decision
