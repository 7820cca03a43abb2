"""
Scheduling conflict detector.

Given a change and a proposed window, reports overlaps against other
scheduled/in-progress work:
    - change-to-change for the same client
    - shared external assets (one entry per asset × conflicting change)
    - the assigned engineer's other work

All checks share the half-open overlap rule
``existing.start < proposed.end AND existing.end > proposed.start``,
the same rule the blackout checker uses, so back-to-back windows are
always accepted. Unlike an inclusive BETWEEN comparison, a window ending
exactly when another starts does not overlap it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import select

from change_governance.core.exceptions import ValidationError
from change_governance.models import db
from change_governance.models.change import ACTIVE_WINDOW_STATUSES, ChangeRequest, change_request_assets
from change_governance.models.governance import BlackoutWindow
from change_governance.services import blackout_service

logger = logging.getLogger(__name__)


@dataclass
class AssetConflict:
    """One asset shared with one overlapping change."""
    asset_id: int
    asset_name: str
    change_request_id: int
    change_id: str | None
    scheduled_start: datetime | None
    scheduled_end: datetime | None

    def to_dict(self) -> dict:
        return {
            "asset_id": self.asset_id,
            "asset_name": self.asset_name,
            "change_request_id": self.change_request_id,
            "change_id": self.change_id,
            "scheduled_start": self.scheduled_start.isoformat() if self.scheduled_start else None,
            "scheduled_end": self.scheduled_end.isoformat() if self.scheduled_end else None,
        }


@dataclass
class ConflictReport:
    """Everything standing in the way of a proposed window."""
    start: datetime
    end: datetime
    blackout_windows: list[BlackoutWindow] = field(default_factory=list)
    change_conflicts: list[ChangeRequest] = field(default_factory=list)
    asset_conflicts: list[AssetConflict] = field(default_factory=list)
    engineer_conflicts: list[ChangeRequest] = field(default_factory=list)

    @property
    def has_conflicts(self) -> bool:
        return bool(
            self.blackout_windows or self.change_conflicts
            or self.asset_conflicts or self.engineer_conflicts
        )

    def to_dict(self) -> dict:
        return {
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "has_conflicts": self.has_conflicts,
            "blackout_windows": [w.to_dict() for w in self.blackout_windows],
            "change_conflicts": [_change_summary(c) for c in self.change_conflicts],
            "asset_conflicts": [a.to_dict() for a in self.asset_conflicts],
            "engineer_conflicts": [_change_summary(c) for c in self.engineer_conflicts],
        }


def _change_summary(change: ChangeRequest) -> dict:
    return {
        "id": change.id,
        "change_id": change.change_id,
        "title": change.title,
        "status": change.status,
        "scheduled_start_date": change.scheduled_start_date.isoformat() if change.scheduled_start_date else None,
        "scheduled_end_date": change.scheduled_end_date.isoformat() if change.scheduled_end_date else None,
    }


def _validate_window(start: datetime, end: datetime) -> None:
    if start is None or end is None:
        raise ValidationError("Both start and end are required")
    if end <= start:
        raise ValidationError("End date must be after start date")


def _overlapping_active_changes(start: datetime, end: datetime):
    return select(ChangeRequest).where(
        ChangeRequest.status.in_(ACTIVE_WINDOW_STATUSES),
        ChangeRequest.scheduled_start_date < end,
        ChangeRequest.scheduled_end_date > start,
    )


# ═════════════════════════════════════════════════════════════════════════════
# Individual checks
# ═════════════════════════════════════════════════════════════════════════════

def find_scheduling_conflicts(
    client_id: int,
    start: datetime,
    end: datetime,
    exclude_change_id: int | None = None,
) -> list[ChangeRequest]:
    """Same-client changes whose active window overlaps [start, end)."""
    _validate_window(start, end)
    stmt = _overlapping_active_changes(start, end).where(ChangeRequest.client_id == client_id)
    if exclude_change_id is not None:
        stmt = stmt.where(ChangeRequest.id != exclude_change_id)
    return list(db.session.execute(stmt.order_by(ChangeRequest.scheduled_start_date)).scalars())


def find_asset_conflicts(change: ChangeRequest, start: datetime, end: datetime) -> list[AssetConflict]:
    """Other active changes sharing any of this change's assets in the window."""
    _validate_window(start, end)
    asset_ids = {asset.id for asset in change.external_assets}
    if not asset_ids:
        return []

    stmt = (
        _overlapping_active_changes(start, end)
        .join(change_request_assets, change_request_assets.c.change_request_id == ChangeRequest.id)
        .where(change_request_assets.c.external_asset_id.in_(asset_ids))
        .distinct()
    )
    if change.id is not None:
        stmt = stmt.where(ChangeRequest.id != change.id)

    conflicts: list[AssetConflict] = []
    for other in db.session.execute(stmt.order_by(ChangeRequest.id)).scalars():
        for asset in sorted(other.external_assets, key=lambda a: a.id):
            if asset.id not in asset_ids:
                continue
            conflicts.append(AssetConflict(
                asset_id=asset.id,
                asset_name=asset.display_name,
                change_request_id=other.id,
                change_id=other.change_id,
                scheduled_start=other.scheduled_start_date,
                scheduled_end=other.scheduled_end_date,
            ))
    return conflicts


def find_engineer_conflicts(
    engineer_id: int,
    start: datetime,
    end: datetime,
    exclude_change_id: int | None = None,
) -> list[ChangeRequest]:
    """The engineer's other active changes overlapping [start, end)."""
    _validate_window(start, end)
    stmt = _overlapping_active_changes(start, end).where(ChangeRequest.assigned_engineer_id == engineer_id)
    if exclude_change_id is not None:
        stmt = stmt.where(ChangeRequest.id != exclude_change_id)
    return list(db.session.execute(stmt.order_by(ChangeRequest.scheduled_start_date)).scalars())


# ═════════════════════════════════════════════════════════════════════════════
# Aggregate view
# ═════════════════════════════════════════════════════════════════════════════

def detect_conflicts(change: ChangeRequest, start: datetime, end: datetime) -> ConflictReport:
    """Run every check for a proposed window without mutating anything."""
    _validate_window(start, end)
    report = ConflictReport(start=start, end=end)
    report.blackout_windows = blackout_service.find_conflicts(change.client_id, start, end)
    report.change_conflicts = find_scheduling_conflicts(change.client_id, start, end, change.id)
    report.asset_conflicts = find_asset_conflicts(change, start, end)
    if change.assigned_engineer_id is not None:
        report.engineer_conflicts = find_engineer_conflicts(
            change.assigned_engineer_id, start, end, change.id,
        )
    if report.has_conflicts:
        logger.info(
            "Conflicts detected for proposed window",
            extra={"change_id": change.change_id},
        )
    return report
