"""
Change policy engine.

Maps a change's attributes to a 0–100 risk score and the set of gates that
apply to it (client approval, CAB approval, security review, auto-approve).

Usage:
    from change_governance.services.policy_engine import evaluate, payload_from_change
    decision = evaluate(payload_from_change(change))
    decision.requires_cab_approval   # -> True

When ``policies`` is passed explicitly the evaluation is pure (no DB access),
which is how the unit tests drive it.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone

from sqlalchemy import or_, select

from change_governance.models import db
from change_governance.models.governance import ChangePolicy

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# Scoring tables
# ═════════════════════════════════════════════════════════════════════════════

RISK_LEVEL_BASE = {"low": 20, "high": 70}
RISK_LEVEL_DEFAULT = 45

PRIORITY_ADJUSTMENT = {"low": 0, "high": 15, "critical": 25}
PRIORITY_DEFAULT = 5

CHANGE_TYPE_ADJUSTMENT = {"standard": -10, "emergency": 25}
CHANGE_TYPE_DEFAULT = 5

MISSING_PLAN_PENALTY = {
    "backout_plan": 15,
    "test_plan": 10,
    "implementation_plan": 10,
}

CAB_REQUIRED_SCORE = 70
AUTO_APPROVE_MAX_SCORE = 30
SECURITY_REVIEW_SCORE = 80

PAYLOAD_FIELDS = (
    "client_id", "risk_level", "priority", "change_type",
    "backout_plan", "test_plan", "implementation_plan",
)


@dataclass
class PolicyDecision:
    """Outcome of one policy evaluation; stored on the change as JSON."""
    risk_score: int
    requires_client_approval: bool
    requires_cab_approval: bool
    requires_security_review: bool
    auto_approve: bool
    policy_id: int | None = None
    policy_name: str | None = None
    matched: bool = False
    evaluated_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping) -> PolicyDecision:
        return cls(
            risk_score=int(data["risk_score"]),
            requires_client_approval=bool(data.get("requires_client_approval", True)),
            requires_cab_approval=bool(data.get("requires_cab_approval", False)),
            requires_security_review=bool(data.get("requires_security_review", False)),
            auto_approve=bool(data.get("auto_approve", False)),
            policy_id=data.get("policy_id"),
            policy_name=data.get("policy_name"),
            matched=bool(data.get("matched", False)),
            evaluated_at=data.get("evaluated_at") or datetime.now(timezone.utc).isoformat(),
        )


def payload_from_change(change) -> dict:
    """Extract the attributes the engine reads from a ChangeRequest."""
    return {name: getattr(change, name, None) for name in PAYLOAD_FIELDS}


def _is_blank(value) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


# ═════════════════════════════════════════════════════════════════════════════
# Risk score
# ═════════════════════════════════════════════════════════════════════════════

def calculate_risk_score(payload: Mapping) -> int:
    """Additive score, clamped to [0, 100]. Blank plans count as missing."""
    risk_level = payload.get("risk_level") or "medium"
    priority = payload.get("priority") or "medium"
    change_type = payload.get("change_type") or "normal"

    score = RISK_LEVEL_BASE.get(risk_level, RISK_LEVEL_DEFAULT)
    score += PRIORITY_ADJUSTMENT.get(priority, PRIORITY_DEFAULT)
    score += CHANGE_TYPE_ADJUSTMENT.get(change_type, CHANGE_TYPE_DEFAULT)

    for plan, penalty in MISSING_PLAN_PENALTY.items():
        if _is_blank(payload.get(plan)):
            score += penalty

    return max(0, min(100, score))


# ═════════════════════════════════════════════════════════════════════════════
# Policy matching
# ═════════════════════════════════════════════════════════════════════════════

def _load_candidate_policies(payload: Mapping) -> list[ChangePolicy]:
    client_id = payload.get("client_id")
    change_type = payload.get("change_type")
    priority = payload.get("priority")

    stmt = select(ChangePolicy).where(ChangePolicy.is_active.is_(True))
    stmt = stmt.where(
        or_(ChangePolicy.client_id.is_(None), ChangePolicy.client_id == client_id)
        if client_id is not None else ChangePolicy.client_id.is_(None)
    )
    stmt = stmt.where(
        or_(ChangePolicy.change_type.is_(None), ChangePolicy.change_type == change_type)
        if change_type else ChangePolicy.change_type.is_(None)
    )
    stmt = stmt.where(
        or_(ChangePolicy.priority.is_(None), ChangePolicy.priority == priority)
        if priority else ChangePolicy.priority.is_(None)
    )
    return list(db.session.execute(stmt.order_by(ChangePolicy.id)).scalars())


def _scope_matches(policy, payload: Mapping) -> bool:
    if not getattr(policy, "is_active", True):
        return False
    if policy.client_id is not None and policy.client_id != payload.get("client_id"):
        return False
    if policy.change_type and policy.change_type != payload.get("change_type"):
        return False
    if policy.priority and policy.priority != payload.get("priority"):
        return False
    return True


def _score_in_bounds(policy, risk_score: int) -> bool:
    if policy.min_risk_score is not None and risk_score < policy.min_risk_score:
        return False
    if policy.max_risk_score is not None and risk_score > policy.max_risk_score:
        return False
    return True


def _specificity(policy) -> int:
    score = 0
    if policy.client_id is not None:
        score += 100
    if policy.change_type:
        score += 10
    if policy.priority:
        score += 5
    return score


def find_matching_policy(payload: Mapping, risk_score: int, policies: Iterable | None = None):
    """Return the governing policy or None.

    Winner is the highest specificity; ties go to the lowest id (creation
    order), so the result never depends on row retrieval order.
    """
    if policies is None:
        policies = _load_candidate_policies(payload)

    candidates = [
        p for p in policies
        if _scope_matches(p, payload) and _score_in_bounds(p, risk_score)
    ]
    if not candidates:
        return None
    candidates.sort(key=lambda p: (-_specificity(p), p.id if p.id is not None else 0))
    return candidates[0]


def evaluate(payload: Mapping, policies: Iterable | None = None) -> PolicyDecision:
    """Score the change and resolve its gates.

    A matched policy's NULL gate flag falls back to the default rule for
    that gate, the same as when nothing matches.
    """
    risk_score = calculate_risk_score(payload)
    policy = find_matching_policy(payload, risk_score, policies)
    change_type = payload.get("change_type")

    default_requires_cab = risk_score >= CAB_REQUIRED_SCORE or change_type == "emergency"
    default_auto_approve = change_type == "standard" and risk_score <= AUTO_APPROVE_MAX_SCORE
    default_security_review = risk_score >= SECURITY_REVIEW_SCORE

    def _gate(name, default):
        value = getattr(policy, name, None) if policy is not None else None
        return default if value is None else bool(value)

    decision = PolicyDecision(
        risk_score=risk_score,
        policy_id=policy.id if policy is not None else None,
        policy_name=policy.name if policy is not None else None,
        requires_client_approval=_gate("requires_client_approval", True),
        requires_cab_approval=_gate("requires_cab_approval", default_requires_cab),
        requires_security_review=_gate("requires_security_review", default_security_review),
        auto_approve=_gate("auto_approve", default_auto_approve),
        matched=policy is not None,
    )
    logger.debug(
        "Policy evaluated: score=%d policy=%s cab=%s auto=%s",
        risk_score, decision.policy_name, decision.requires_cab_approval, decision.auto_approve,
    )
    return decision
