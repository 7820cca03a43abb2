"""
Shared pytest fixtures for the change governance test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - acme / globex: Pre-created Client entities
    - requester, engineer, manager, cab_members: Users with roles
    - make_* factories: ORM helpers for changes, contacts, assets, policies,
      blackout windows
"""

import pytest

from change_governance import create_app
from change_governance.models import db as _db
from change_governance.models.change import ChangeRequest
from change_governance.models.directory import (
    ROLE_CAB_MEMBER,
    ROLE_CHANGE_MANAGER,
    ROLE_ENGINEER,
    Client,
    ClientContact,
    ExternalAsset,
    User,
    UserRole,
)
from change_governance.models.governance import BlackoutWindow, ChangePolicy

# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield _db.session
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


# ── Directory fixtures ───────────────────────────────────────────────────


def _user(email, full_name, roles=(), status="active"):
    user = User(email=email, full_name=full_name, status=status)
    for role in roles:
        user.user_roles.append(UserRole(role=role))
    _db.session.add(user)
    _db.session.commit()
    return user


@pytest.fixture()
def make_user():
    return _user


@pytest.fixture()
def acme():
    client = Client(name="Acme Corp", code="ACME")
    _db.session.add(client)
    _db.session.commit()
    return client


@pytest.fixture()
def globex():
    client = Client(name="Globex", code="GLOBEX")
    _db.session.add(client)
    _db.session.commit()
    return client


@pytest.fixture()
def requester():
    return _user("requester@msp.test", "Riley Requester")


@pytest.fixture()
def engineer():
    return _user("eng@msp.test", "Erin Engineer", roles=[ROLE_ENGINEER])


@pytest.fixture()
def manager():
    return _user("manager@msp.test", "Morgan Manager", roles=[ROLE_CHANGE_MANAGER])


@pytest.fixture()
def cab_members():
    return [
        _user("alice@msp.test", "Alice Adams", roles=[ROLE_CAB_MEMBER]),
        _user("bob@msp.test", "Bob Brown", roles=[ROLE_CAB_MEMBER]),
        _user("carol@msp.test", "Carol Clark", roles=[ROLE_CAB_MEMBER]),
    ]


@pytest.fixture()
def make_contact():
    def _make(client, name="Pat Approver", email=None, is_approver=True, is_active=True):
        contact = ClientContact(
            client_id=client.id,
            name=name,
            email=email or f"{name.split()[0].lower()}@client.test",
            is_approver=is_approver,
            is_active=is_active,
        )
        _db.session.add(contact)
        _db.session.commit()
        return contact
    return _make


@pytest.fixture()
def make_asset():
    def _make(client=None, name="Core Switch", hostname=None):
        asset = ExternalAsset(
            client_id=client.id if client is not None else None,
            name=name,
            hostname=hostname,
        )
        _db.session.add(asset)
        _db.session.commit()
        return asset
    return _make


# ── Governance fixtures ──────────────────────────────────────────────────


@pytest.fixture()
def make_change(requester):
    """Create a ChangeRequest; defaults are a medium/normal change with all plans."""
    def _make(client, **overrides):
        assets = overrides.pop("assets", ())
        values = {
            "title": "Patch firewall firmware",
            "client_id": client.id,
            "requester_id": requester.id,
            "priority": "medium",
            "change_type": "normal",
            "risk_level": "medium",
            "implementation_plan": "Upgrade firmware on the standby node, fail over, upgrade primary.",
            "backout_plan": "Fail back and restore the previous firmware image.",
            "test_plan": "Verify VPN tunnels and throughput.",
        }
        values.update(overrides)
        change = ChangeRequest(**values)
        change.external_assets.extend(assets)
        _db.session.add(change)
        _db.session.commit()
        return change
    return _make


@pytest.fixture()
def make_scheduled_change(make_change):
    """A change already occupying [start, end) in the given status."""
    def _make(client, start, end, status="scheduled", **overrides):
        return make_change(
            client,
            status=status,
            scheduled_start_date=start,
            scheduled_end_date=end,
            **overrides,
        )
    return _make


@pytest.fixture()
def make_policy():
    def _make(name="Policy", **fields):
        policy = ChangePolicy(name=name, **fields)
        _db.session.add(policy)
        _db.session.commit()
        return policy
    return _make


@pytest.fixture()
def make_blackout():
    def _make(starts_at, ends_at, client=None, name="Quarter close freeze", is_active=True):
        window = BlackoutWindow(
            name=name,
            client_id=client.id if client is not None else None,
            starts_at=starts_at,
            ends_at=ends_at,
            is_active=is_active,
        )
        _db.session.add(window)
        _db.session.commit()
        return window
    return _make
