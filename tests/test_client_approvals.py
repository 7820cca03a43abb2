"""
Client approval tests.

Tests cover:
  - Approval creation on submit (active approvers only, SLA, notifications)
  - Idempotent creation
  - Approve / reject and routing once every contact responded
  - All-rejected edge case performs no transition
  - Resubmission reopens resolved approvals
  - Explicit, audited client approval bypass
  - Shared approvals table: contact column and per-contact uniqueness
"""
from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from change_governance.core.exceptions import NotFoundError, PreconditionFailedError, ValidationError
from change_governance.models import db
from change_governance.models.approval import (
    APPROVAL_APPROVED,
    APPROVAL_PENDING,
    APPROVAL_REJECTED,
    Approval,
    CabApproval,
    ClientApproval,
)
from change_governance.models.audit import AuditLog
from change_governance.models.notification import Notification
from change_governance.services import approval_service, workflow_service
from change_governance.services.governance_config import GovernanceConfig
from change_governance.utils.helpers import as_utc, utcnow


@pytest.fixture()
def approvers(acme, make_contact):
    return [
        make_contact(acme, "Pat Approver"),
        make_contact(acme, "Sam Signer"),
    ]


def _approvals(change):
    return ClientApproval.query.filter_by(change_request_id=change.id).order_by(ClientApproval.id).all()


# ═════════════════════════════════════════════════════════════════════════
# CREATION
# ═════════════════════════════════════════════════════════════════════════

class TestCreation:
    def test_submit_creates_one_approval_per_active_approver(self, acme, approvers, make_contact, make_change):
        make_contact(acme, "Nora Observer", is_approver=False)
        make_contact(acme, "Olga Former", is_active=False)

        change = workflow_service.submit(make_change(acme))

        assert change.status == "submitted"
        approvals = _approvals(change)
        assert [a.client_contact_id for a in approvals] == [c.id for c in approvers]
        assert all(a.status == APPROVAL_PENDING for a in approvals)
        assert all(a.notification_status == "sent" for a in approvals)

    def test_sla_uses_client_hours(self, acme, approvers, make_change):
        before = utcnow()
        change = workflow_service.submit(make_change(acme), config=GovernanceConfig(client_sla_hours=12))
        for approval in _approvals(change):
            due = as_utc(approval.due_at)
            assert before + timedelta(hours=12) <= due <= utcnow() + timedelta(hours=12)

    def test_request_notification_per_contact(self, acme, approvers, make_change):
        change = workflow_service.submit(make_change(acme))
        for contact in approvers:
            notes = Notification.query.filter_by(client_contact_id=contact.id).all()
            assert len(notes) == 1
            assert change.change_id in notes[0].title
            assert notes[0].recipient == contact.email

    def test_creation_is_idempotent(self, acme, approvers, make_change):
        change = workflow_service.submit(make_change(acme))
        assert approval_service.create_client_approvals(change) == []
        assert len(_approvals(change)) == 2

    def test_new_approver_added_later_gets_an_approval(self, acme, approvers, make_contact, make_change):
        change = workflow_service.submit(make_change(acme))
        latecomer = make_contact(acme, "Lee Late")
        created = approval_service.create_client_approvals(change)
        assert [a.client_contact_id for a in created] == [latecomer.id]

    def test_get_pending_for_contact(self, acme, approvers, make_change):
        change = workflow_service.submit(make_change(acme))
        pending = approval_service.get_pending_for_contact(approvers[0])
        assert [a.change_request_id for a in pending] == [change.id]


# ═════════════════════════════════════════════════════════════════════════
# RESPONSES
# ═════════════════════════════════════════════════════════════════════════

class TestResponses:
    def test_single_approver_approval_approves_change(self, acme, make_contact, make_change):
        contact = make_contact(acme)
        change = workflow_service.submit(make_change(acme))
        assert change.requires_cab_approval is False

        approval = approval_service.client_approve(change, contact, comments="Go ahead")

        db.session.refresh(change)
        assert approval.status == APPROVAL_APPROVED
        assert approval.comments == "Go ahead"
        assert approval.responded_at is not None
        assert change.status == "approved"
        assert change.approved_at is not None

    def test_waits_for_every_contact(self, acme, approvers, make_change):
        change = workflow_service.submit(make_change(acme))
        approval_service.client_approve(change, approvers[0])
        db.session.refresh(change)
        assert change.status == "submitted"

        approval_service.client_approve(change, approvers[1])
        db.session.refresh(change)
        assert change.status == "approved"

    def test_cab_required_routes_to_pending_approval(self, acme, approvers, make_change):
        change = workflow_service.submit(make_change(acme, risk_level="high"))
        assert change.status == "submitted"
        assert change.requires_cab_approval is True

        for contact in approvers:
            approval_service.client_approve(change, contact)

        db.session.refresh(change)
        assert change.status == "pending_approval"
        tracker = CabApproval.query.filter_by(change_request_id=change.id).one()
        assert tracker.status == APPROVAL_PENDING
        assert as_utc(tracker.due_at) > utcnow() + timedelta(hours=47)

    def test_reject_rejects_change_with_comments(self, acme, approvers, make_change):
        change = workflow_service.submit(make_change(acme))
        approval_service.client_reject(change, approvers[0], comments="Not during month end")
        db.session.refresh(change)
        assert change.status == "rejected"
        assert change.rejection_reason == "Not during month end"

    def test_reject_default_reason(self, acme, approvers, make_change):
        change = workflow_service.submit(make_change(acme))
        approval_service.client_reject(change, approvers[0])
        db.session.refresh(change)
        assert change.rejection_reason == "Rejected by client approver"

    def test_cannot_respond_twice(self, acme, approvers, make_change):
        change = workflow_service.submit(make_change(acme))
        approval_service.client_approve(change, approvers[0])
        with pytest.raises(PreconditionFailedError):
            approval_service.client_approve(change, approvers[0])

    def test_unknown_contact(self, acme, approvers, make_contact, make_change):
        change = workflow_service.submit(make_change(acme))
        stranger = make_contact(acme, "Stan Stranger", is_approver=False)
        with pytest.raises(NotFoundError):
            approval_service.client_approve(change, stranger)

    def test_respond_after_change_rejected(self, acme, approvers, make_change):
        change = workflow_service.submit(make_change(acme))
        approval_service.client_reject(change, approvers[0])
        with pytest.raises(PreconditionFailedError):
            approval_service.client_approve(change, approvers[1])

    def test_all_rejected_performs_no_transition(self, acme, approvers, make_change):
        change = workflow_service.submit(make_change(acme))
        for approval in _approvals(change):
            approval.resolve(APPROVAL_REJECTED)
        db.session.commit()

        assert approval_service.check_client_approvals_complete(change) is None
        db.session.refresh(change)
        assert change.status == "submitted"

    def test_resubmission_reopens_approvals(self, acme, approvers, make_change):
        change = workflow_service.submit(make_change(acme))
        approval_service.client_reject(change, approvers[0], comments="Add a test plan")
        workflow_service.transition(change, "draft")

        change = workflow_service.submit(change)

        assert change.status == "submitted"
        approvals = _approvals(change)
        assert len(approvals) == 2
        assert all(a.status == APPROVAL_PENDING for a in approvals)
        assert all(a.comments is None and a.responded_at is None for a in approvals)


# ═════════════════════════════════════════════════════════════════════════
# BYPASS
# ═════════════════════════════════════════════════════════════════════════

class TestBypass:
    def test_manager_bypass_approves_and_notifies(self, acme, approvers, make_change, manager):
        change = workflow_service.submit(make_change(acme))
        reason = "Client approver on leave, verbal OK"

        bypassed = approval_service.bypass_client_approval(change, manager, reason)

        db.session.refresh(change)
        assert change.status == "approved"
        assert len(bypassed) == 2
        for approval in _approvals(change):
            assert approval.status == APPROVAL_APPROVED
            assert approval.comments == f"Bypassed by Morgan Manager. Reason: {reason}"
        for contact in approvers:
            titles = [n.title for n in Notification.query.filter_by(client_contact_id=contact.id)]
            assert any("Bypassed" in t for t in titles)
        audit = AuditLog.query.filter_by(action="approval.client_bypassed").one()
        assert audit.diff["reason"] == reason

    def test_bypass_requires_reason(self, acme, approvers, make_change, manager):
        change = workflow_service.submit(make_change(acme))
        with pytest.raises(ValidationError):
            approval_service.bypass_client_approval(change, manager, "too short")

    def test_bypass_requires_change_manager(self, acme, approvers, make_change, engineer):
        change = workflow_service.submit(make_change(acme))
        with pytest.raises(PreconditionFailedError):
            approval_service.bypass_client_approval(change, engineer, "Client approver on leave")
        db.session.refresh(change)
        assert change.status == "submitted"

    def test_bypass_only_while_awaiting_client(self, acme, make_change, manager):
        change = make_change(acme, status="approved")
        with pytest.raises(PreconditionFailedError):
            approval_service.bypass_client_approval(change, manager, "Client approver on leave")


# ═════════════════════════════════════════════════════════════════════════
# TABLE DEFINITION
# ═════════════════════════════════════════════════════════════════════════

class TestApprovalTable:
    def test_contact_column_lives_on_shared_table(self):
        table = Approval.__table__
        assert ClientApproval.__table__ is table
        assert CabApproval.__table__ is table
        assert table.c.client_contact_id.nullable is True

        unique = next(c for c in table.constraints if c.name == "uq_approval_change_contact")
        assert [col.name for col in unique.columns] == ["change_request_id", "client_contact_id"]

    def test_cab_tracker_has_no_contact(self, acme, make_change):
        change = make_change(acme, status="pending_approval")
        tracker = CabApproval(change_request_id=change.id)
        db.session.add(tracker)
        db.session.commit()

        assert tracker.client_contact_id is None
        assert tracker.type == "cab"
        assert tracker.status == APPROVAL_PENDING

    def test_duplicate_contact_approval_rejected(self, acme, make_contact, make_change):
        contact = make_contact(acme)
        change = make_change(acme, status="submitted")
        db.session.add(ClientApproval(change_request_id=change.id, client_contact_id=contact.id))
        db.session.commit()

        db.session.add(ClientApproval(change_request_id=change.id, client_contact_id=contact.id))
        with pytest.raises(IntegrityError):
            db.session.commit()
        db.session.rollback()
