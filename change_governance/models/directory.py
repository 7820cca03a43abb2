"""
Change Governance Core
Directory models consumed by the workflow core.

Models:
    - Client: managed-service customer that owns changes and blackout windows
    - ClientContact: client-side person; approver-flagged contacts sign off changes
    - User: internal staff member (requester, engineer, CAB member)
    - UserRole: role membership used for capability checks
    - ExternalAsset: configuration item referenced by changes (fed by asset sync)

These rows are maintained by surrounding CRUD and integrations; the core only
reads them, except for the change ↔ asset association.
"""

from datetime import datetime, timezone

from change_governance.models import db

# ── Constants ────────────────────────────────────────────────────────────────

ROLE_ENGINEER = "Engineer"
ROLE_CAB_MEMBER = "CAB Member"
ROLE_CHANGE_MANAGER = "Change Manager"

KNOWN_ROLES = {ROLE_ENGINEER, ROLE_CAB_MEMBER, ROLE_CHANGE_MANAGER}


class Client(db.Model):
    __tablename__ = "clients"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    code = db.Column(db.String(50), unique=True, nullable=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    contacts = db.relationship("ClientContact", back_populates="client", lazy="dynamic")

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "code": self.code,
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<Client {self.id}: {self.name}>"


class ClientContact(db.Model):
    """
    A person on the client side.

    Only contacts with ``is_approver`` and ``is_active`` receive client
    approval requests when a change is submitted.
    """

    __tablename__ = "client_contacts"

    id = db.Column(db.Integer, primary_key=True)
    client_id = db.Column(
        db.Integer, db.ForeignKey("clients.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    name = db.Column(db.String(200), nullable=False)
    email = db.Column(db.String(255), nullable=True)
    is_approver = db.Column(db.Boolean, default=False, nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    client = db.relationship("Client", back_populates="contacts")

    def to_dict(self):
        return {
            "id": self.id,
            "client_id": self.client_id,
            "name": self.name,
            "email": self.email,
            "is_approver": self.is_approver,
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<ClientContact {self.id}: {self.name}>"


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(200), unique=True, nullable=False)
    full_name = db.Column(db.String(200))
    status = db.Column(db.String(20), default="active")  # active, inactive, suspended
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    user_roles = db.relationship(
        "UserRole", back_populates="user", lazy="selectin", cascade="all, delete-orphan",
    )

    @property
    def role_names(self) -> set[str]:
        return {ur.role for ur in self.user_roles}

    def has_role(self, role: str) -> bool:
        """Capability check used by the workflow core ("Engineer", "CAB Member")."""
        return self.status == "active" and role in self.role_names

    def to_dict(self, include_roles=False):
        d = {
            "id": self.id,
            "email": self.email,
            "full_name": self.full_name,
            "status": self.status,
        }
        if include_roles:
            d["roles"] = sorted(self.role_names)
        return d

    def __repr__(self):
        return f"<User {self.id}: {self.email}>"


class UserRole(db.Model):
    __tablename__ = "user_roles"
    __table_args__ = (
        db.UniqueConstraint("user_id", "role", name="uq_user_role"),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    role = db.Column(db.String(50), nullable=False, comment="Engineer | CAB Member | Change Manager")
    assigned_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    user = db.relationship("User", back_populates="user_roles")


class ExternalAsset(db.Model):
    """
    Configuration item imported from an RMM/PSA/documentation platform.

    The import itself is out of scope; the scheduler only needs identity and a
    display name to report asset double-booking.
    """

    __tablename__ = "external_assets"
    __table_args__ = (
        db.UniqueConstraint("provider", "external_id", name="uq_asset_provider_external"),
    )

    id = db.Column(db.Integer, primary_key=True)
    client_id = db.Column(
        db.Integer, db.ForeignKey("clients.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    provider = db.Column(db.String(50), default="manual")
    external_id = db.Column(db.String(100), nullable=True)
    name = db.Column(db.String(255), nullable=True)
    hostname = db.Column(db.String(255), nullable=True)
    asset_type = db.Column(db.String(50), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    @property
    def display_name(self) -> str:
        return self.name or self.hostname or f"Asset #{self.id}"

    def to_dict(self):
        return {
            "id": self.id,
            "client_id": self.client_id,
            "provider": self.provider,
            "external_id": self.external_id,
            "name": self.display_name,
            "hostname": self.hostname,
            "asset_type": self.asset_type,
        }

    def __repr__(self):
        return f"<ExternalAsset {self.id}: {self.display_name}>"
