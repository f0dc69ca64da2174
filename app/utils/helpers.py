"""Shared utility functions used by services and blueprints.

parse_datetime:        lenient: returns None on bad input (normalizer)
parse_datetime_input:  strict: raises ValidationError (engine boundary)
round_half_up:         percentage rounding shared by aggregates
atomic:                commit-or-rollback scope for mutating services
"""
import logging
import math
from contextlib import contextmanager
from datetime import date, datetime, time, timezone

from app.core.exceptions import ValidationError
from app.models import as_utc, db

logger = logging.getLogger(__name__)


def parse_datetime(value):
    """Parse an ISO-8601 date or datetime to an aware UTC datetime.

    Returns None for empty/invalid input. Supports:
    - YYYY-MM-DD (midnight UTC)
    - YYYY-MM-DDTHH:MM:SS[.ffffff][+HH:MM | Z]
    - DD.MM.YYYY
    - date / datetime objects
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return as_utc(datetime.fromisoformat(text))
    except (ValueError, TypeError):
        pass
    try:
        return datetime.strptime(text, "%d.%m.%Y").replace(tzinfo=timezone.utc)
    except (ValueError, TypeError):
        return None


def parse_datetime_input(value, field):
    """Same as parse_datetime() but raises ValidationError on missing/bad input."""
    if value is None or value == "":
        raise ValidationError(f"{field} is required", details={field: "required"})
    parsed = parse_datetime(value)
    if parsed is None:
        raise ValidationError(
            f"{field} must be an ISO-8601 date or datetime", details={field: "invalid date"},
        )
    return parsed


def round_half_up(value):
    """Round a non-negative float to the nearest int, .5 going up."""
    return int(math.floor(value + 0.5))


def mean_pct(values):
    """Rounded arithmetic mean of percentages; 0 for an empty sequence."""
    values = list(values)
    if not values:
        return 0
    return round_half_up(sum(values) / len(values))


@contextmanager
def atomic():
    """Commit the session on success, roll back and re-raise on any failure.

    Usage::

        with atomic():
            db.session.add(task)
    """
    try:
        yield db.session
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
