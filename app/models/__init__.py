"""
Process Console
SQLAlchemy extension + shared model helpers.

Every model module imports ``db`` from here. ``create_app`` imports the
model modules so ``db.create_all()`` sees every table.
"""

import uuid
from datetime import datetime, timezone

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()


def _uuid():
    return str(uuid.uuid4())


def _utcnow():
    return datetime.now(timezone.utc)


def as_utc(value):
    """Return *value* as an aware UTC datetime.

    SQLite hands timezone-aware columns back as naive datetimes; those are
    treated as UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def iso(value):
    """ISO-8601 text for a datetime column (None-safe)."""
    value = as_utc(value)
    return value.isoformat() if value else None
