"""
Process Console
Blueprint registry + shared request helpers.

The JSON adapter is thin: it parses the request, builds a SessionContext
from the X-User-Id header and hands everything to the service layer, which
owns validation and commits.
"""

from flask import g, request

from app.core.session import SessionContext
from app.models import db
from app.models.organization import User
from app.utils.errors import E, api_error


def session_context():
    """Build the acting SessionContext from the X-User-Id header.

    Returns:
        (ctx, None) on success, (None, error_response) otherwise.
    """
    user_id = (request.headers.get("X-User-Id") or "").strip()
    if not user_id:
        return None, api_error(E.UNAUTHENTICATED, "X-User-Id header is required")
    user = db.session.get(User, user_id)
    if not user:
        return None, api_error(E.UNAUTHENTICATED, f"Unknown user {user_id}")
    g.user_id = user.id
    return SessionContext.for_user(user), None


def json_body():
    """Request JSON object; {} for a missing, malformed or non-object body."""
    body = request.get_json(silent=True)
    return body if isinstance(body, dict) else {}
