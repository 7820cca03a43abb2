"""
CAB meeting / agenda manager.

Business logic for:
    - Pending review set:  changes awaiting a CAB decision
    - Meetings:            one meeting per day, normalised to the default meeting time
    - Agenda sync:         refresh a planned meeting's agenda to the pending set
    - Agenda edits:        add / remove items and record per-item decisions
    - Calendar views:      meetings and scheduled changes in a date range

A meeting's agenda is frozen once it leaves "planned"; its items become the
historical record of what the board reviewed.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta

from sqlalchemy import func, or_, select

from change_governance.core.exceptions import NotFoundError, PreconditionFailedError, ValidationError
from change_governance.models import db
from change_governance.models.approval import APPROVAL_PENDING, CabApproval
from change_governance.models.audit import write_audit
from change_governance.models.change import (
    ACTIVE_WINDOW_STATUSES,
    STATUS_PENDING_APPROVAL,
    ChangeRequest,
)
from change_governance.models.directory import ROLE_CAB_MEMBER
from change_governance.models.workflow import (
    AGENDA_DECISIONS,
    MEETING_COMPLETED,
    MEETING_PLANNED,
    MEETING_STATUSES,
    CabMeeting,
    CabMeetingItem,
)
from change_governance.services.governance_config import GovernanceConfig
from change_governance.utils.helpers import as_utc, get_or_raise, transactional, utcnow

logger = logging.getLogger(__name__)


# ── Queries ──────────────────────────────────────────────────────────────────


def get_pending_cab_review() -> list[ChangeRequest]:
    """pending_approval changes that need CAB (flag or a pending tracker), oldest first."""
    pending_tracker = (
        select(CabApproval.id)
        .where(
            CabApproval.change_request_id == ChangeRequest.id,
            CabApproval.status == APPROVAL_PENDING,
        )
        .exists()
    )
    stmt = (
        select(ChangeRequest)
        .where(
            ChangeRequest.status == STATUS_PENDING_APPROVAL,
            or_(ChangeRequest.requires_cab_approval.is_(True), pending_tracker),
        )
        .order_by(ChangeRequest.created_at, ChangeRequest.id)
    )
    return list(db.session.execute(stmt).scalars())


def get_upcoming_changes(start: datetime, end: datetime) -> list[ChangeRequest]:
    """Scheduled / in-progress changes starting within [start, end]."""
    stmt = (
        select(ChangeRequest)
        .where(
            ChangeRequest.status.in_(ACTIVE_WINDOW_STATUSES),
            ChangeRequest.scheduled_start_date >= start,
            ChangeRequest.scheduled_start_date <= end,
        )
        .order_by(ChangeRequest.scheduled_start_date)
    )
    return list(db.session.execute(stmt).scalars())


def get_cab_calendar_meetings(start: datetime, end: datetime) -> list[dict]:
    item_count = (
        select(func.count(CabMeetingItem.id))
        .where(CabMeetingItem.cab_meeting_id == CabMeeting.id)
        .scalar_subquery()
    )
    rows = db.session.execute(
        select(CabMeeting, item_count)
        .where(CabMeeting.meeting_date >= start, CabMeeting.meeting_date <= end)
        .order_by(CabMeeting.meeting_date)
    ).all()
    return [
        {
            "id": meeting.id,
            "meeting_date": as_utc(meeting.meeting_date).isoformat(),
            "status": meeting.status,
            "agenda_items": int(count or 0),
        }
        for meeting, count in rows
    ]


# ── Meetings ─────────────────────────────────────────────────────────────────


def _normalise_meeting_date(meeting_date: date | datetime, config: GovernanceConfig) -> datetime:
    day = meeting_date.date() if isinstance(meeting_date, datetime) else meeting_date
    return as_utc(datetime.combine(day, config.meeting_time()))


def get_or_create_cab_meeting(meeting_date: date | datetime, created_by=None,
                              config: GovernanceConfig | None = None) -> CabMeeting:
    """Fetch the meeting for that day, creating a planned one if absent."""
    config = config or GovernanceConfig.from_settings()
    normalised = _normalise_meeting_date(meeting_date, config)

    meeting = db.session.execute(
        select(CabMeeting).where(CabMeeting.meeting_date == normalised)
    ).scalar_one_or_none()
    if meeting is not None:
        return meeting

    with transactional():
        meeting = CabMeeting(
            meeting_date=normalised,
            status=MEETING_PLANNED,
            created_by_id=getattr(created_by, "id", None),
        )
        db.session.add(meeting)
    logger.info("CAB meeting created for %s", normalised.isoformat(), extra={"meeting_id": meeting.id})
    return meeting


def _get_meeting(meeting) -> CabMeeting:
    if isinstance(meeting, CabMeeting):
        return meeting
    return get_or_raise(CabMeeting, meeting, "CabMeeting")


def _require_planned(meeting: CabMeeting) -> None:
    if not meeting.is_planned:
        raise PreconditionFailedError(f"CAB meeting {meeting.id} is {meeting.status}; its agenda is frozen")


def refresh_cab_meeting_agenda(meeting) -> dict:
    """Sync a planned meeting's agenda to exactly the current pending set.

    Returns ``{added, removed, total, pending_available, updated}``; a
    meeting past "planned" is left untouched with ``updated=False``.
    """
    meeting = _get_meeting(meeting)
    pending_ids = [c.id for c in get_pending_cab_review()]
    existing_ids = meeting.change_ids

    if not meeting.is_planned:
        return {
            "added": 0,
            "removed": 0,
            "total": len(existing_ids),
            "pending_available": len(pending_ids),
            "updated": False,
        }

    pending_set = set(pending_ids)
    with transactional():
        for item in list(meeting.items):
            if item.change_request_id not in pending_set:
                meeting.items.remove(item)
        for change_id in pending_ids:
            if change_id not in existing_ids:
                meeting.items.append(CabMeetingItem(change_request_id=change_id, decision="pending"))
        added = len(pending_set - existing_ids)
        removed = len(existing_ids - pending_set)
        write_audit(
            entity_type="cab_meeting",
            entity_id=meeting.id,
            action="cab_meeting.agenda_refreshed",
            diff={"added": added, "removed": removed},
        )

    result = {
        "added": added,
        "removed": removed,
        "total": len(meeting.change_ids),
        "pending_available": len(pending_ids),
        "updated": True,
    }
    logger.info("CAB agenda refreshed: +%d -%d", added, removed, extra={"meeting_id": meeting.id})
    return result


def add_agenda_item(meeting, change, notes: str | None = None) -> CabMeetingItem:
    meeting = _get_meeting(meeting)
    _require_planned(meeting)
    change = change if isinstance(change, ChangeRequest) else get_or_raise(ChangeRequest, change, "ChangeRequest")
    for item in meeting.items:
        if item.change_request_id == change.id:
            return item
    with transactional():
        item = CabMeetingItem(change_request_id=change.id, decision="pending", notes=notes)
        meeting.items.append(item)
    return item


def remove_agenda_item(meeting, change_id: int) -> None:
    meeting = _get_meeting(meeting)
    _require_planned(meeting)
    for item in meeting.items:
        if item.change_request_id == change_id:
            with transactional():
                meeting.items.remove(item)
            return
    raise NotFoundError(resource="CabMeetingItem", resource_id=f"{meeting.id}/{change_id}")


def record_agenda_decision(meeting, change_id: int, decision: str, notes: str | None = None) -> CabMeetingItem:
    """Minute the board's decision for one agenda item.

    The decision is the meeting record only; the change itself moves through
    CAB voting.
    """
    if decision not in AGENDA_DECISIONS:
        raise ValidationError(f"Invalid decision {decision!r}; expected one of {sorted(AGENDA_DECISIONS)}")
    meeting = _get_meeting(meeting)
    if meeting.status != MEETING_PLANNED:
        raise PreconditionFailedError(f"CAB meeting {meeting.id} is {meeting.status}; decisions are final")
    for item in meeting.items:
        if item.change_request_id == change_id:
            with transactional():
                item.decision = decision
                if notes is not None:
                    item.notes = notes
            return item
    raise NotFoundError(resource="CabMeetingItem", resource_id=f"{meeting.id}/{change_id}")


def invite_members(meeting, users) -> CabMeeting:
    """Add CAB members to the invite list; other users are refused."""
    meeting = _get_meeting(meeting)
    _require_planned(meeting)
    users = list(users)
    outsiders = [u for u in users if not u.has_role(ROLE_CAB_MEMBER)]
    if outsiders:
        raise PreconditionFailedError(
            "Only CAB members can be invited: " + ", ".join(u.email for u in outsiders)
        )
    with transactional():
        current = {u.id for u in meeting.members}
        for user in users:
            if user.id not in current:
                meeting.members.append(user)
                current.add(user.id)
    return meeting


def update_cab_meeting(meeting, payload: dict, user=None) -> CabMeeting:
    """Update status / agenda_notes / minutes / talking_points.

    Completing a meeting stamps completed_at / completed_by.
    """
    meeting = _get_meeting(meeting)
    status = payload.get("status", meeting.status)
    if status not in MEETING_STATUSES:
        raise ValidationError(f"Invalid meeting status {status!r}")

    with transactional():
        old_status = meeting.status
        meeting.status = status
        for field in ("agenda_notes", "minutes", "talking_points"):
            if payload.get(field) is not None:
                setattr(meeting, field, payload[field])
        if status == MEETING_COMPLETED and old_status != MEETING_COMPLETED:
            meeting.completed_at = utcnow()
            meeting.completed_by_id = getattr(user, "id", None)
        write_audit(
            entity_type="cab_meeting",
            entity_id=meeting.id,
            action="cab_meeting.updated",
            actor=user,
            diff={"status": {"old": old_status, "new": status}},
        )
    return meeting


def generate_cab_agenda(meeting_date: date | datetime, config: GovernanceConfig | None = None) -> dict:
    """Agenda pack for a meeting day: its items plus the week of upcoming work."""
    config = config or GovernanceConfig.from_settings()
    meeting = get_or_create_cab_meeting(meeting_date, config=config)
    start = as_utc(meeting.meeting_date)
    upcoming = get_upcoming_changes(start, start + timedelta(weeks=1))
    agenda = [item.change_request for item in meeting.items]
    return {
        "meeting_date": start.date().isoformat(),
        "meeting": {"id": meeting.id, "status": meeting.status, "agenda_items": len(agenda)},
        "pending_reviews": [c.to_dict() for c in agenda],
        "upcoming_changes": [c.to_dict() for c in upcoming],
        "total_pending": len(agenda),
        "total_upcoming": len(upcoming),
    }
