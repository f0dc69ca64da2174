"""
Shared pytest fixtures for the Process Console test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB reset + role seeding (autouse)
    - client: Flask test client (function-scoped)
    - unit: Pre-created Unit
    - admin / designer / functionary / other_functionary: Pre-created Users
    - admin_ctx / designer_ctx / functionary_ctx: SessionContext per user
    - headers: factory for the X-User-Id request header
"""

import pytest

from app import create_app
from app.core.session import SessionContext
from app.models import db as _db
from app.models.organization import Unit, User
from app.services.organization_service import get_role_by_key, seed_roles


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    return create_app("testing")


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
    """Per-test: open app context, seed roles, recreate tables afterwards."""
    with app.app_context():
        seed_roles()
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Organization fixtures ────────────────────────────────────────────────


def _make_user(full_name, email, role_key, unit=None):
    user = User(
        full_name=full_name,
        email=email,
        role_id=get_role_by_key(role_key).id,
        unit_id=unit.id if unit else None,
    )
    _db.session.add(user)
    _db.session.commit()
    return user


@pytest.fixture()
def unit():
    u = Unit(name="Operations")
    _db.session.add(u)
    _db.session.commit()
    return u


@pytest.fixture()
def admin(unit):
    return _make_user("Ada Admin", "ada@example.com", "ADMIN", unit)


@pytest.fixture()
def designer(unit):
    return _make_user("Dana Designer", "dana@example.com", "DESIGNER", unit)


@pytest.fixture()
def functionary(unit):
    return _make_user("Finn Functionary", "finn@example.com", "FUNCTIONARY", unit)


@pytest.fixture()
def other_functionary(unit):
    return _make_user("Fay Functionary", "fay@example.com", "FUNCTIONARY", unit)


@pytest.fixture()
def admin_ctx(admin):
    return SessionContext.for_user(admin)


@pytest.fixture()
def designer_ctx(designer):
    return SessionContext.for_user(designer)


@pytest.fixture()
def functionary_ctx(functionary):
    return SessionContext.for_user(functionary)


@pytest.fixture()
def headers():
    """Return the X-User-Id header dict for a user."""
    def _headers(user):
        return {"X-User-Id": user.id}
    return _headers
