"""
Organization service: roles, units and users.

Business logic for:
    - Role seeding:       ADMIN / DESIGNER / FUNCTIONARY (idempotent)
    - Unit tree:          create / update with parent-cycle detection
    - Users:              admin create/update, self-registration, profile edits
    - Workload counter:   open tasks per owner, refreshed by the task engine

Admin-only operations take a SessionContext and require RoleKey.ADMIN.
Each mutating function validates everything first and commits once.
"""

import logging

from email_validator import EmailNotValidError, validate_email
from sqlalchemy import func

from app.core.exceptions import (
    ConflictError,
    NotFoundError,
    ReferentialError,
    UnitCycleError,
    ValidationError,
)
from app.models import db
from app.models.organization import ROLE_DEFINITIONS, Role, RoleKey, Unit, User
from app.utils.helpers import atomic

logger = logging.getLogger(__name__)

_PROFILE_FIELDS = ("full_name", "avatar_color", "title", "phone", "about")


# ── Roles ────────────────────────────────────────────────────────────────────


def seed_roles():
    """Create the three built-in roles if missing. Returns all roles."""
    existing = {r.key for r in Role.query.all()}
    with atomic():
        for key, definition in ROLE_DEFINITIONS.items():
            if key.value in existing:
                continue
            db.session.add(Role(key=key.value, **definition))
            logger.info("Role seeded key=%s", key.value)
    return list_roles()


def list_roles():
    return Role.query.order_by(Role.key).all()


def get_role_by_key(key):
    role_key = RoleKey.parse(key)
    if role_key is None:
        raise ValidationError(f"Unknown role: {key!r}", details={"role": str(key)})
    role = Role.query.filter_by(key=role_key.value).first()
    if not role:
        raise ReferentialError("Role", role_key.value, "roles have not been seeded")
    return role


def _resolve_role(data):
    if data.get("role_id"):
        role = db.session.get(Role, data["role_id"])
        if not role:
            raise ReferentialError("Role", data["role_id"])
        return role
    if data.get("role_key"):
        return get_role_by_key(data["role_key"])
    return None


# ── Units ────────────────────────────────────────────────────────────────────


def list_units():
    return Unit.query.order_by(Unit.name).all()


def get_unit(unit_id):
    unit = db.session.get(Unit, unit_id)
    if not unit:
        raise NotFoundError("Unit", unit_id)
    return unit


def _check_unit_refs(data):
    parent = None
    if data.get("parent_id"):
        parent = db.session.get(Unit, data["parent_id"])
        if not parent:
            raise ReferentialError("Unit", data["parent_id"], "parent unit does not exist")
    if data.get("lead_id") and not db.session.get(User, data["lead_id"]):
        raise ReferentialError("User", data["lead_id"], "unit lead does not exist")
    return parent


def create_unit(data, ctx):
    ctx.require_role("create units", RoleKey.ADMIN)
    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError("name is required", details={"name": "required"})
    _check_unit_refs(data)

    unit = Unit(name=name, parent_id=data.get("parent_id"), lead_id=data.get("lead_id"))
    with atomic():
        db.session.add(unit)
    logger.info("Unit created id=%s parent=%s", unit.id, unit.parent_id)
    return unit


def update_unit(unit_id, data, ctx):
    """Update name / parent / lead. A unit can never become its own ancestor."""
    ctx.require_role("update units", RoleKey.ADMIN)
    unit = get_unit(unit_id)

    if "name" in data and not (data.get("name") or "").strip():
        raise ValidationError("name cannot be empty", details={"name": "required"})

    if "parent_id" in data and data["parent_id"]:
        parent = _check_unit_refs({"parent_id": data["parent_id"]})
        if parent.id == unit.id or unit.id in parent.ancestor_ids():
            logger.warning("Unit cycle rejected unit=%s parent=%s", unit.id, parent.id)
            raise UnitCycleError(
                f"Unit {unit.id} cannot be placed under {parent.id}: it would become its own ancestor",
                details={"parent_id": parent.id},
            )
    if data.get("lead_id"):
        _check_unit_refs({"lead_id": data["lead_id"]})

    with atomic():
        if "name" in data:
            unit.name = data["name"].strip()
        if "parent_id" in data:
            unit.parent_id = data["parent_id"] or None
        if "lead_id" in data:
            unit.lead_id = data["lead_id"] or None
    logger.info("Unit updated id=%s", unit.id)
    return unit


# ── Users ────────────────────────────────────────────────────────────────────


def list_users(unit_id=None):
    q = User.query
    if unit_id:
        q = q.filter_by(unit_id=unit_id)
    return q.order_by(User.full_name).all()


def get_user(user_id):
    user = db.session.get(User, user_id)
    if not user:
        raise NotFoundError("User", user_id)
    return user


def _clean_email(value, exclude_user_id=None):
    try:
        email = validate_email((value or "").strip(), check_deliverability=False).normalized.lower()
    except EmailNotValidError as e:
        raise ValidationError(f"Invalid email: {e}", details={"email": "invalid"})
    q = User.query.filter(func.lower(User.email) == email)
    if exclude_user_id:
        q = q.filter(User.id != exclude_user_id)
    if q.first():
        raise ConflictError("User", "email", email)
    return email


def create_user(data, ctx=None):
    """Create a user.

    With an ADMIN ctx the role/unit come from *data*. Without ctx this is a
    self-registration and the role is always FUNCTIONARY.
    """
    full_name = (data.get("full_name") or "").strip()
    if not full_name:
        raise ValidationError("full_name is required", details={"full_name": "required"})
    email = _clean_email(data.get("email"))

    if ctx is not None:
        ctx.require_role("create users", RoleKey.ADMIN)
        role = _resolve_role(data)
        if role is None:
            raise ValidationError("role_id or role_key is required", details={"role_id": "required"})
    else:
        role = get_role_by_key(RoleKey.FUNCTIONARY)

    unit_id = data.get("unit_id") or None
    if unit_id and not db.session.get(Unit, unit_id):
        raise ReferentialError("Unit", unit_id)

    user = User(
        full_name=full_name,
        email=email,
        role_id=role.id,
        unit_id=unit_id,
        **{f: data.get(f) for f in _PROFILE_FIELDS if f != "full_name"},
    )
    with atomic():
        db.session.add(user)
    logger.info("User created id=%s role=%s", user.id, role.key)
    return user


def update_user(user_id, data, ctx):
    """Admin edit: name, email, role, unit."""
    ctx.require_role("update users", RoleKey.ADMIN)
    user = get_user(user_id)

    email = _clean_email(data["email"], exclude_user_id=user.id) if "email" in data else None
    role = _resolve_role(data)
    if "unit_id" in data and data["unit_id"] and not db.session.get(Unit, data["unit_id"]):
        raise ReferentialError("Unit", data["unit_id"])
    if "full_name" in data and not (data.get("full_name") or "").strip():
        raise ValidationError("full_name cannot be empty", details={"full_name": "required"})

    with atomic():
        if "full_name" in data:
            user.full_name = data["full_name"].strip()
        if email:
            user.email = email
        if role is not None:
            user.role_id = role.id
        if "unit_id" in data:
            user.unit_id = data["unit_id"] or None
    logger.info("User updated id=%s by=%s", user.id, ctx.user_id)
    return user


def update_profile(ctx, data):
    """Self edit of the acting user's own profile fields."""
    user = get_user(ctx.user_id)

    email = _clean_email(data["email"], exclude_user_id=user.id) if "email" in data else None
    if "unit_id" in data and data["unit_id"] and not db.session.get(Unit, data["unit_id"]):
        raise ReferentialError("Unit", data["unit_id"])
    if "full_name" in data and not (data.get("full_name") or "").strip():
        raise ValidationError("full_name cannot be empty", details={"full_name": "required"})

    with atomic():
        for field in _PROFILE_FIELDS:
            if field in data:
                value = data[field]
                setattr(user, field, value.strip() if isinstance(value, str) else value)
        if email:
            user.email = email
        if "unit_id" in data:
            user.unit_id = data["unit_id"] or None
    return user


def refresh_workload(user_ids):
    """Recount open (non-completed) tasks for each user. Caller commits."""
    from app.models.task import Task, TaskStatus

    for user_id in {u for u in user_ids if u}:
        user = db.session.get(User, user_id)
        if user is None:
            continue
        user.workload = (
            Task.query
            .filter(Task.owner_id == user_id, Task.status != TaskStatus.COMPLETED.value)
            .count()
        )
