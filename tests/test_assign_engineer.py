"""
Engineer assignment tests.

Tests cover:
  - Engineer role requirement (and inactive users)
  - Double-booking refusal with no mutation
  - Assignment without a window
  - Back-to-back work is not a conflict
  - engineer_assigned workflow event
"""
from datetime import datetime, timedelta, timezone

import pytest

from change_governance.core.exceptions import ConflictDetectedError, PreconditionFailedError
from change_governance.models import db
from change_governance.models.directory import ROLE_ENGINEER
from change_governance.models.workflow import WorkflowEvent
from change_governance.services import workflow_service

BASE = datetime(2030, 1, 7, 10, 0, tzinfo=timezone.utc)


def at(hours):
    return BASE + timedelta(hours=hours)


def test_requires_engineer_role(acme, make_change, requester):
    change = make_change(acme, status="approved")
    with pytest.raises(PreconditionFailedError) as exc:
        workflow_service.assign_engineer(change, requester)
    assert exc.value.message == "User must have Engineer role"


def test_inactive_engineer_refused(acme, make_change, make_user):
    change = make_change(acme, status="approved")
    suspended = make_user("gone@msp.test", "Gone Engineer", roles=[ROLE_ENGINEER], status="inactive")
    with pytest.raises(PreconditionFailedError):
        workflow_service.assign_engineer(change, suspended)


def test_assign_without_window(acme, make_change, engineer, manager):
    change = workflow_service.assign_engineer(make_change(acme), engineer, actor=manager)
    assert change.assigned_engineer_id == engineer.id

    event = WorkflowEvent.query.filter_by(
        change_request_id=change.id, event_type="change.engineer_assigned",
    ).one()
    assert event.payload == {"engineer_id": engineer.id, "engineer_name": "Erin Engineer"}


def test_overlapping_work_blocks_assignment_without_mutation(acme, globex, make_scheduled_change, engineer):
    busy = make_scheduled_change(globex, at(0), at(4), assigned_engineer_id=engineer.id)
    change = make_scheduled_change(acme, at(2), at(6))

    with pytest.raises(ConflictDetectedError) as exc:
        workflow_service.assign_engineer(change, engineer)

    assert exc.value.kind == "engineer"
    assert busy.change_id in exc.value.message
    db.session.refresh(change)
    assert change.assigned_engineer_id is None
    assert WorkflowEvent.query.filter_by(change_request_id=change.id).count() == 0


def test_back_to_back_work_is_fine(acme, make_scheduled_change, engineer):
    make_scheduled_change(acme, at(0), at(4), assigned_engineer_id=engineer.id)
    change = make_scheduled_change(acme, at(4), at(8))
    assert workflow_service.assign_engineer(change, engineer).assigned_engineer_id == engineer.id


def test_reassigning_same_engineer_to_own_window(acme, make_scheduled_change, engineer):
    change = make_scheduled_change(acme, at(0), at(4), assigned_engineer_id=engineer.id)
    assert workflow_service.assign_engineer(change, engineer).assigned_engineer_id == engineer.id
