"""
Process Console
Organization domain models.

Models:
    - Role: seeded role definition (ADMIN / DESIGNER / FUNCTIONARY)
    - Unit: organizational unit, forms a tree through parent_id
    - User: console user bound to a role and optionally to a unit

Architecture chain: Unit ──1:N──▶ Unit (children)
                    Role ──1:N──▶ User ◀──N:1── Unit (loose back-reference)
"""

import enum

from app.models import _utcnow, _uuid, db, iso


# ── Constants ────────────────────────────────────────────────────────────────


class RoleKey(str, enum.Enum):
    ADMIN = "ADMIN"
    DESIGNER = "DESIGNER"
    FUNCTIONARY = "FUNCTIONARY"

    @classmethod
    def parse(cls, value):
        """Return the RoleKey for *value* (case-insensitive) or None."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value or "").strip().upper())
        except ValueError:
            return None


ROLE_DEFINITIONS = {
    RoleKey.ADMIN: {
        "name": "Administrator",
        "description": "Manages units, users and roles",
        "permissions": ["units.manage", "users.manage", "flows.manage", "tasks.manage"],
    },
    RoleKey.DESIGNER: {
        "name": "Process designer",
        "description": "Authors flow templates and launches instances",
        "permissions": ["flows.manage", "tasks.manage"],
    },
    RoleKey.FUNCTIONARY: {
        "name": "Functionary",
        "description": "Executes assigned tasks",
        "permissions": ["tasks.execute"],
    },
}


# ═════════════════════════════════════════════════════════════════════════════
# Role
# ═════════════════════════════════════════════════════════════════════════════


class Role(db.Model):
    """Seeded role. Immutable once created."""

    __tablename__ = "roles"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    key = db.Column(db.String(20), unique=True, nullable=False)
    name = db.Column(db.String(100), nullable=False)
    description = db.Column(db.Text, default="")
    permissions = db.Column(db.JSON, default=list)

    def to_dict(self):
        return {
            "id": self.id,
            "key": self.key,
            "name": self.name,
            "description": self.description,
            "permissions": list(self.permissions or []),
        }

    def __repr__(self):
        return f"<Role {self.key}>"


# ═════════════════════════════════════════════════════════════════════════════
# Unit
# ═════════════════════════════════════════════════════════════════════════════


class Unit(db.Model):
    """
    Organizational unit.

    parent_id forms a tree; the service layer rejects edits that would make
    a unit its own ancestor. lead_id is a loose reference to a User.
    """

    __tablename__ = "units"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    name = db.Column(db.String(200), nullable=False)
    parent_id = db.Column(
        db.String(36), db.ForeignKey("units.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    lead_id = db.Column(db.String(36), nullable=True, comment="Loose reference → users.id")
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    parent = db.relationship("Unit", remote_side=[id], foreign_keys=[parent_id])
    lead = db.relationship(
        "User", primaryjoin="foreign(Unit.lead_id) == User.id", viewonly=True,
    )

    def ancestor_ids(self):
        """Walk parent links upward; stops on a repeated id."""
        seen = []
        node = self.parent
        while node is not None and node.id not in seen:
            seen.append(node.id)
            node = node.parent
        return seen

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "parent_id": self.parent_id,
            "lead_id": self.lead_id,
            "parent": {"id": self.parent.id, "name": self.parent.name} if self.parent else None,
            "lead": {"id": self.lead.id, "full_name": self.lead.full_name} if self.lead else None,
        }

    def __repr__(self):
        return f"<Unit {self.id}: {self.name[:40]}>"


# ═════════════════════════════════════════════════════════════════════════════
# User
# ═════════════════════════════════════════════════════════════════════════════


class User(db.Model):
    """Console user. Email is unique and stored lowercase."""

    __tablename__ = "users"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    full_name = db.Column(db.String(200), nullable=False)
    email = db.Column(db.String(254), unique=True, nullable=False, index=True)
    role_id = db.Column(db.String(36), db.ForeignKey("roles.id"), nullable=False)
    unit_id = db.Column(
        db.String(36), db.ForeignKey("units.id", ondelete="SET NULL"), nullable=True, index=True,
    )

    # Profile
    avatar_color = db.Column(db.String(20), nullable=True)
    title = db.Column(db.String(150), nullable=True)
    phone = db.Column(db.String(50), nullable=True)
    about = db.Column(db.Text, nullable=True)

    workload = db.Column(db.Integer, default=0, comment="Open tasks owned by the user")
    last_login = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    role = db.relationship("Role")
    unit = db.relationship("Unit", foreign_keys=[unit_id])

    @property
    def role_key(self):
        return RoleKey.parse(self.role.key) if self.role else None

    def to_dict(self):
        return {
            "id": self.id,
            "full_name": self.full_name,
            "email": self.email,
            "role_id": self.role_id,
            "unit_id": self.unit_id,
            "avatar_color": self.avatar_color,
            "title": self.title,
            "phone": self.phone,
            "about": self.about,
            "workload": self.workload or 0,
            "last_login": iso(self.last_login),
            "role": self.role.to_dict() if self.role else None,
            "unit": {"id": self.unit.id, "name": self.unit.name} if self.unit else None,
        }

    def __repr__(self):
        return f"<User {self.id}: {self.email}>"
