"""
Console-wide exception hierarchy.

Services raise these; blueprints register one handler per family and get
consistent HTTP status codes everywhere. Every engine operation either
completes or raises one of these before the session is committed.

Families:
    ValidationError   malformed / out-of-range input          → 422
    StateConflict     illegal in the entity's current state   → 409
    ReferentialError  referenced entity missing/inconsistent  → 404
    IncompleteInput   composite input missing sub-parts       → 422
    PermissionDenied  actor role not allowed                  → 403

Usage:
    from app.core.exceptions import InvalidStatus, TemplateInUse

    raise InvalidStatus("archived")
    raise TemplateInUse(template_id, instance_count=2)
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable entity name (e.g. "Task", "FlowTemplate").
        resource_id: The id that was looked up.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ReferentialError(NotFoundError):
    """A referenced entity (stage, template, unit, user) is missing or belongs
    to a different parent than the one given."""

    def __init__(self, resource: str, resource_id: int | str | None = None,
                 reason: str | None = None) -> None:
        super().__init__(resource, resource_id)
        self.reason = reason
        if reason:
            self.args = (f"{self.args[0]}: {reason}",)


class ValidationError(Exception):
    """Input is malformed or violates a field-level business rule.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown; keys are field names.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class InvalidStatus(ValidationError):
    def __init__(self, value) -> None:
        super().__init__(f"Invalid status: {value!r}", details={"status": str(value)})
        self.value = value


class OutOfRange(ValidationError):
    def __init__(self, field: str, value, low: int = 0, high: int = 100) -> None:
        super().__init__(
            f"{field} must be between {low} and {high} (got {value!r})",
            details={field: f"out of range [{low}, {high}]"},
        )
        self.field = field
        self.value = value


class InvalidProblem(ValidationError):
    pass


class MalformedRecord(ValidationError):
    """An external record cannot be normalized (e.g. no identifier)."""


class InvalidDateRange(ValidationError):
    pass


class UnitCycleError(ValidationError):
    pass


class StateConflict(Exception):
    """Operation is illegal in the entity's current state."""

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class AlreadyResolved(StateConflict):
    def __init__(self, problem_id: str) -> None:
        super().__init__(f"Problem {problem_id} is already resolved", details={"problem_id": problem_id})
        self.problem_id = problem_id


class TemplateInUse(StateConflict):
    def __init__(self, template_id: str, instance_count: int) -> None:
        super().__init__(
            f"FlowTemplate {template_id} is referenced by {instance_count} instance(s)",
            details={"template_id": template_id, "instance_count": instance_count},
        )
        self.template_id = template_id
        self.instance_count = instance_count


class InvalidTransition(StateConflict):
    def __init__(self, entity: str, current: str, target: str, reason: str | None = None) -> None:
        msg = f"Cannot move {entity} from '{current}' to '{target}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg, details={"from": current, "to": target})
        self.current_status = current
        self.target_status = target


class ConflictError(StateConflict):
    """A unique value would be duplicated.

    Args:
        resource: Model name.
        field: The unique field that would be duplicated.
        value: The conflicting value.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        super().__init__(f"{resource} with {field}={value!r} already exists", details={field: value})
        self.resource = resource
        self.field = field
        self.value = value


class IncompleteInput(Exception):
    """A composite input is missing required sub-parts."""

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class IncompleteInstantiation(IncompleteInput):
    pass


class PermissionDenied(Exception):
    """The session actor's role may not perform the operation."""

    def __init__(self, user_id: str | None, action: str, allowed=None) -> None:
        self.user_id = user_id
        self.action = action
        self.allowed = sorted(allowed or [])
        msg = f"User {user_id} is not allowed to {action}"
        if self.allowed:
            msg += f" (requires one of: {', '.join(self.allowed)})"
        super().__init__(msg)
