"""Standardised API error responses.

Usage
-----
    from app.utils.errors import api_error, E, register_domain_error_handlers

    return api_error(E.NOT_FOUND, "Task not found")
    register_domain_error_handlers(tasks_bp)
"""

from __future__ import annotations

import logging

from flask import jsonify, request

from app.core.exceptions import (
    IncompleteInput,
    NotFoundError,
    PermissionDenied,
    StateConflict,
    ValidationError,
)

logger = logging.getLogger(__name__)


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants."""

    # Validation – HTTP 400 / 422
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"
    INCOMPLETE_INPUT = "ERR_INCOMPLETE_INPUT"

    # Not-found / referential – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Conflict – HTTP 409
    CONFLICT_STATE = "ERR_CONFLICT_STATE"

    # Permissions – HTTP 401 / 403
    UNAUTHENTICATED = "ERR_UNAUTHENTICATED"
    FORBIDDEN = "ERR_FORBIDDEN"

    # Server – HTTP 500
    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 422,
    E.INCOMPLETE_INPUT: 422,
    E.NOT_FOUND: 404,
    E.CONFLICT_STATE: 409,
    E.UNAUTHENTICATED: 401,
    E.FORBIDDEN: 403,
    E.INTERNAL: 500,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation for developers / UI.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra structured payload (field errors, conflicting ids, etc.).

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """

    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details

    return jsonify(body), http_status


def register_domain_error_handlers(bp):
    """Map the domain exception families onto ``api_error`` for one blueprint."""

    @bp.errorhandler(ValidationError)
    def _handle_validation(error: ValidationError):
        return api_error(E.VALIDATION_INVALID, str(error), details=error.details)

    @bp.errorhandler(IncompleteInput)
    def _handle_incomplete(error: IncompleteInput):
        return api_error(E.INCOMPLETE_INPUT, str(error), details=error.details)

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(error: NotFoundError):
        return api_error(E.NOT_FOUND, str(error))

    @bp.errorhandler(StateConflict)
    def _handle_conflict(error: StateConflict):
        return api_error(E.CONFLICT_STATE, str(error), details=error.details)

    @bp.errorhandler(PermissionDenied)
    def _handle_forbidden(error: PermissionDenied):
        logger.warning("Permission denied endpoint=%s: %s", request.endpoint, error)
        return api_error(E.FORBIDDEN, str(error))

    return bp
