"""
Task Lifecycle Engine.

Manages task creation and state with:
  - Input validation at the engine boundary (not only in forms)
  - Status changes (five literals; "completed" forces progress 100)
  - Progress updates decoupled from status
  - Problem reporting / resolution
  - Append-only history attributed to the SessionContext actor
  - Flow aggregate recompute after any change to a flow-bound task

States:
    pending → in_progress → blocked | completed | returned
    blocked → in_progress,  returned → in_progress

"completed" is terminal for change_status(). Reopening a completed task is
only possible through update_task(), the generic update path, which checks
nothing beyond progress consistency.

Every public function validates first and mutates inside utils.helpers.atomic,
so a rejected call leaves the session untouched.

Usage:
    from app.services import task_lifecycle

    task = task_lifecycle.create_task({...}, ctx)
    task_lifecycle.change_status(task.id, "completed", ctx)
"""

import logging
import numbers
from datetime import datetime, timezone

from app.core.exceptions import (
    AlreadyResolved,
    InvalidProblem,
    InvalidStatus,
    InvalidTransition,
    NotFoundError,
    OutOfRange,
    ReferentialError,
    StateConflict,
    ValidationError,
)
from app.models import _uuid, db
from app.models.flow import FlowInstance, StageStatus
from app.models.organization import User
from app.models.task import (
    MIN_DESCRIPTION_LENGTH,
    MIN_PROBLEM_LENGTH,
    ProblemStatus,
    SubTask,
    Task,
    TaskHistoryEntry,
    TaskPriority,
    TaskProblem,
    TaskStatus,
)
from app.services import alerting
from app.services.normalizer import normalize_task
from app.services.organization_service import refresh_workload
from app.utils.helpers import atomic, parse_datetime_input, round_half_up

logger = logging.getLogger(__name__)

_LIST_FIELDS = ("dependencies", "related_task_ids", "tags")


# ── Lookups ──────────────────────────────────────────────────────────────────


def get_task(task_id):
    task = db.session.get(Task, task_id)
    if not task:
        raise NotFoundError("Task", task_id)
    return task


def get_problem(problem_id):
    problem = db.session.get(TaskProblem, problem_id)
    if not problem:
        raise NotFoundError("TaskProblem", problem_id)
    return problem


def list_tasks(owner_id=None, assigner_id=None, status=None, flow_instance_id=None):
    """Return tasks ordered by deadline with optional filters."""
    q = Task.query
    if owner_id:
        q = q.filter_by(owner_id=owner_id)
    if assigner_id:
        q = q.filter_by(assigner_id=assigner_id)
    if status:
        parsed = TaskStatus.parse(status)
        if parsed is None:
            raise InvalidStatus(status)
        q = q.filter_by(status=parsed.value)
    if flow_instance_id:
        q = q.filter_by(flow_instance_id=flow_instance_id)
    return q.order_by(Task.deadline, Task.title).all()


def list_alert_tasks(now=None):
    """Tasks needing attention: blocked, or overdue and not completed."""
    now = now or datetime.now(timezone.utc)
    return [
        t for t in list_tasks()
        if t.status == TaskStatus.BLOCKED.value or t.is_overdue(now)
    ]


# ── Validation helpers ───────────────────────────────────────────────────────


def _parse_status(value):
    status = TaskStatus.parse(value)
    if status is None:
        raise InvalidStatus(value)
    return status


def _parse_priority(value):
    priority = TaskPriority.parse(value)
    if priority is None:
        raise ValidationError(
            f"Invalid priority: {value!r}",
            details={"priority": f"one of {sorted(p.value for p in TaskPriority)}"},
        )
    return priority


def _check_progress(value, field="progress"):
    if isinstance(value, bool) or not isinstance(value, numbers.Real):
        raise ValidationError(f"{field} must be a number", details={field: "not a number"})
    if value < 0 or value > 100:
        raise OutOfRange(field, value)
    return round_half_up(value)


def check_days(value, field="duration_days"):
    """Non-negative whole number of days; missing means 0."""
    if value is None or value == "":
        return 0
    if isinstance(value, str) and value.strip().isdigit():
        return int(value)
    whole = not isinstance(value, bool) and isinstance(value, numbers.Real) and float(value).is_integer()
    if not whole or value < 0:
        raise ValidationError(
            f"{field} must be a non-negative whole number (got {value!r})",
            details={field: "non-negative integer"},
        )
    return int(value)


def _check_description(value):
    description = (value or "").strip()
    if len(description) < MIN_DESCRIPTION_LENGTH:
        raise ValidationError(
            f"description must be at least {MIN_DESCRIPTION_LENGTH} characters",
            details={"description": f"min length {MIN_DESCRIPTION_LENGTH}"},
        )
    return description


def _check_user(user_id, role):
    if not user_id:
        raise ValidationError(f"{role} is required", details={role: "required"})
    if not db.session.get(User, user_id):
        raise ReferentialError("User", user_id, f"{role} does not exist")
    return user_id


def _check_flow_refs(flow_instance_id, stage_status_id):
    """A flow-bound task must point at a StageStatus of that same instance."""
    if not flow_instance_id and not stage_status_id:
        return
    if not flow_instance_id or not stage_status_id:
        raise ReferentialError(
            "StageStatus", stage_status_id,
            "flow_instance_id and stage_status_id must be given together",
        )
    if not db.session.get(FlowInstance, flow_instance_id):
        raise ReferentialError("FlowInstance", flow_instance_id)
    stage_status = db.session.get(StageStatus, stage_status_id)
    if not stage_status or stage_status.instance_id != flow_instance_id:
        raise ReferentialError(
            "StageStatus", stage_status_id,
            f"not a stage of flow instance {flow_instance_id}",
        )


def validate_task_input(data, ctx, *, check_flow_refs=True):
    """Validate create-task input; return the cleaned field dict.

    Required: title, description (≥ 10 chars), owner_id, priority, deadline.
    assigner_id defaults to the session actor.
    """
    title = (data.get("title") or "").strip()
    if not title:
        raise ValidationError("title is required", details={"title": "required"})
    if data.get("priority") in (None, ""):
        raise ValidationError("priority is required", details={"priority": "required"})

    cleaned = {
        "title": title,
        "description": _check_description(data.get("description")),
        "owner_id": _check_user(data.get("owner_id"), "owner_id"),
        "assigner_id": _check_user(data.get("assigner_id") or ctx.user_id, "assigner_id"),
        "priority": _parse_priority(data["priority"]).value,
        "deadline": parse_datetime_input(data.get("deadline"), "deadline"),
        "duration_days": check_days(data.get("duration_days")),
        "allow_rejection": bool(data.get("allow_rejection", True)),
        "flow_instance_id": data.get("flow_instance_id") or None,
        "stage_status_id": data.get("stage_status_id") or None,
    }
    for field in _LIST_FIELDS:
        cleaned[field] = list(data.get(field) or [])
    if check_flow_refs:
        _check_flow_refs(cleaned["flow_instance_id"], cleaned["stage_status_id"])
    return cleaned


def _append_history(task, action, ctx, notes=None):
    entry = TaskHistoryEntry(
        sequence=len(task.history),
        action=action,
        performed_by=ctx.user_id,
        performed_by_name=ctx.full_name or None,
        timestamp=datetime.now(timezone.utc),
        notes=notes,
    )
    task.history.append(entry)
    return entry


def _after_task_change(task, *user_ids, previous_instance_id=None):
    """Recompute flow aggregates and owner workload counters.

    *previous_instance_id* is the flow the task was bound to before the
    change; it is recomputed too when the task moved away from it.
    """
    from app.services.flow_orchestrator import recompute_aggregates

    db.session.flush()
    for instance_id in dict.fromkeys((task.flow_instance_id, previous_instance_id)):
        instance = db.session.get(FlowInstance, instance_id) if instance_id else None
        if instance is not None:
            recompute_aggregates(instance)
    refresh_workload([task.owner_id, *user_ids])


# ── Create ───────────────────────────────────────────────────────────────────


def build_task(cleaned):
    """Add a new pending task for already-validated input. Caller commits."""
    task = Task(
        status=TaskStatus.PENDING.value,
        progress=0,
        **cleaned,
    )
    db.session.add(task)
    return task


def create_task(data, ctx):
    """Create a free-standing (or stage-bound) task in status pending."""
    cleaned = validate_task_input(data, ctx)
    with atomic():
        task = build_task(cleaned)
        _after_task_change(task)
    logger.info("Task created id=%s owner=%s by=%s", task.id, task.owner_id, ctx.user_id)
    return task


# ── Status / progress ────────────────────────────────────────────────────────


def change_status(task_id, new_status, ctx, progress=None, notes=None):
    """Move a task to *new_status*.

    Raises:
        InvalidStatus: literal outside the five task statuses.
        OutOfRange: progress outside [0, 100].
        InvalidTransition: the task is completed (reopen via update_task).
    """
    status = _parse_status(new_status)
    task = get_task(task_id)
    if progress is not None:
        progress = _check_progress(progress)

    previous = task.status
    if previous == TaskStatus.COMPLETED.value and status is not TaskStatus.COMPLETED:
        logger.warning("Rejected transition task=%s %s→%s", task.id, previous, status.value)
        raise InvalidTransition("task", previous, status.value,
                                "completed tasks can only be reopened through a task update")

    with atomic():
        task.status = status.value
        if status is TaskStatus.COMPLETED:
            task.progress = 100
        elif progress is not None:
            task.progress = progress
        _append_history(task, f"Status {previous} → {status.value}", ctx, notes)
        _after_task_change(task)

    logger.info("Task status changed id=%s %s→%s by=%s", task.id, previous, task.status, ctx.user_id)
    return task


def update_progress(task_id, value, ctx):
    """Set progress without touching status. A completed task stays at 100."""
    task = get_task(task_id)
    value = _check_progress(value)
    if task.status == TaskStatus.COMPLETED.value and value != 100:
        raise OutOfRange("progress", value, 100, 100)

    with atomic():
        task.progress = value
        _after_task_change(task)
    return task


def update_task(task_id, data, ctx):
    """Generic update path (PATCH semantics).

    Accepts title, description, owner_id, priority, deadline, progress,
    status, duration_days, allow_rejection and the list fields. Status is
    not transition-guarded here; the only rule is completed ⇒ progress 100.
    """
    task = get_task(task_id)
    changes = {}

    if "title" in data:
        title = (data.get("title") or "").strip()
        if not title:
            raise ValidationError("title cannot be empty", details={"title": "required"})
        changes["title"] = title
    if "description" in data:
        changes["description"] = _check_description(data.get("description"))
    if "owner_id" in data:
        changes["owner_id"] = _check_user(data.get("owner_id"), "owner_id")
    if "priority" in data:
        changes["priority"] = _parse_priority(data["priority"]).value
    if "deadline" in data:
        changes["deadline"] = parse_datetime_input(data.get("deadline"), "deadline")
    if "duration_days" in data:
        changes["duration_days"] = check_days(data.get("duration_days"))
    if "allow_rejection" in data:
        changes["allow_rejection"] = bool(data["allow_rejection"])
    for field in _LIST_FIELDS:
        if field in data:
            changes[field] = list(data.get(field) or [])

    status = _parse_status(data["status"]).value if "status" in data else task.status
    progress = _check_progress(data["progress"]) if data.get("progress") is not None else None
    if status == TaskStatus.COMPLETED.value:
        if progress is not None and progress != 100:
            raise OutOfRange("progress", progress, 100, 100)
        progress = 100
    if progress is not None:
        changes["progress"] = progress

    previous_owner = task.owner_id
    previous_status = task.status
    with atomic():
        for field, value in changes.items():
            setattr(task, field, value)
        task.status = status
        if changes.get("owner_id") and changes["owner_id"] != previous_owner:
            _append_history(task, "Reassigned", ctx,
                            notes=f"{previous_owner} → {changes['owner_id']}")
        if status != previous_status:
            _append_history(task, f"Status {previous_status} → {status}", ctx)
        _after_task_change(task, previous_owner)

    logger.info("Task updated id=%s fields=%s by=%s", task.id, sorted(data), ctx.user_id)
    return task


def delete_task(task_id, ctx):
    """Delete a free-standing task. Flow tasks go away with their instance."""
    task = get_task(task_id)
    if task.flow_instance_id:
        raise StateConflict(
            f"Task {task.id} belongs to flow instance {task.flow_instance_id}; delete the instance instead",
            details={"flow_instance_id": task.flow_instance_id},
        )
    owner_id = task.owner_id
    with atomic():
        db.session.delete(task)
        db.session.flush()
        refresh_workload([owner_id])
    logger.info("Task deleted id=%s by=%s", task_id, ctx.user_id)


# ── Problems ─────────────────────────────────────────────────────────────────


def report_problem(task_id, description, ctx):
    """Open a problem on a task.

    Returns:
        (TaskProblem, Notification); severity "danger" when the task is
        already blocked, "warning" otherwise.
    """
    text = (description or "").strip()
    if len(text) < MIN_PROBLEM_LENGTH:
        raise InvalidProblem(
            f"Problem description must be at least {MIN_PROBLEM_LENGTH} characters",
            details={"description": f"min length {MIN_PROBLEM_LENGTH}"},
        )
    task = get_task(task_id)

    with atomic():
        problem = TaskProblem(
            reporter_id=ctx.user_id,
            description=text,
            status=ProblemStatus.OPEN.value,
            created_at=datetime.now(timezone.utc),
        )
        task.problems.append(problem)

    logger.info("Problem reported id=%s task=%s by=%s", problem.id, task.id, ctx.user_id)
    return problem, alerting.problem_notification(task, problem)


def resolve_problem(problem_id, ctx, resolution=None):
    """Resolve an open problem. Resolving twice raises AlreadyResolved."""
    problem = get_problem(problem_id)
    if problem.status != ProblemStatus.OPEN.value:
        raise AlreadyResolved(problem.id)

    with atomic():
        problem.status = ProblemStatus.RESOLVED.value
        problem.resolved_at = datetime.now(timezone.utc)
        problem.resolution = (resolution or "").strip() or None

    logger.info("Problem resolved id=%s by=%s", problem.id, ctx.user_id)
    return problem


# ── Sub-tasks ────────────────────────────────────────────────────────────────


def _clean_sub_task(data, task, existing=None):
    cleaned = {}
    if existing is None or "title" in data:
        title = (data.get("title") or "").strip()
        if not title:
            raise ValidationError("title is required", details={"title": "required"})
        cleaned["title"] = title
    if existing is None or "assignee_id" in data:
        cleaned["assignee_id"] = _check_user(data.get("assignee_id") or task.owner_id, "assignee_id")
    if existing is None or "deadline" in data:
        cleaned["deadline"] = (
            parse_datetime_input(data["deadline"], "deadline") if data.get("deadline") else task.deadline
        )

    status = _parse_status(data["status"]).value if "status" in data else (
        existing.status if existing is not None else TaskStatus.PENDING.value
    )
    progress = _check_progress(data["progress"]) if data.get("progress") is not None else None
    if status == TaskStatus.COMPLETED.value:
        progress = 100
    cleaned["status"] = status
    if progress is not None:
        cleaned["progress"] = progress
    elif existing is None:
        cleaned["progress"] = 0
    return cleaned


def add_sub_task(task_id, data, ctx):
    task = get_task(task_id)
    cleaned = _clean_sub_task(data, task)
    with atomic():
        sub_task = SubTask(created_at=datetime.now(timezone.utc), **cleaned)
        task.sub_tasks.append(sub_task)
    logger.info("SubTask added id=%s task=%s by=%s", sub_task.id, task.id, ctx.user_id)
    return sub_task


def update_sub_task(sub_task_id, data, ctx):
    sub_task = db.session.get(SubTask, sub_task_id)
    if not sub_task:
        raise NotFoundError("SubTask", sub_task_id)
    cleaned = _clean_sub_task(data, sub_task.task, existing=sub_task)
    with atomic():
        for field, value in cleaned.items():
            setattr(sub_task, field, value)
    return sub_task


# ── Import ───────────────────────────────────────────────────────────────────


def _existing_user(user_id):
    return user_id if user_id and db.session.get(User, user_id) else None


def import_task_record(record, ctx):
    """Upsert an external task record after normalizing it.

    Scalar fields are overwritten; problems, sub-tasks and history entries
    are added when their ids are not present yet.
    """
    canonical = normalize_task(record)
    _check_user(canonical["owner_id"], "owner_id")
    _check_user(canonical["assigner_id"] or ctx.user_id, "assigner_id")
    _check_flow_refs(canonical["flow_instance_id"], canonical["stage_status_id"])

    task = db.session.get(Task, canonical["id"])
    created = task is None
    previous_owner = None if created else task.owner_id
    previous_instance_id = None if created else task.flow_instance_id
    scalar_fields = (
        "title", "description", "status", "priority", "owner_id", "flow_instance_id",
        "stage_status_id", "deadline", "created_at", "updated_at", "progress",
        "duration_days", "allow_rejection", *_LIST_FIELDS,
    )

    with atomic():
        if created:
            task = Task(id=canonical["id"])
            db.session.add(task)
        for field in scalar_fields:
            setattr(task, field, canonical[field])
        task.assigner_id = canonical["assigner_id"] or ctx.user_id

        known_problems = {p.id for p in task.problems}
        for p in canonical["problems"]:
            if p["id"] not in known_problems:
                task.problems.append(TaskProblem(
                    id=p["id"],
                    reporter_id=_existing_user(p["reporter_id"]) or ctx.user_id,
                    description=p["description"],
                    status=p["status"],
                    created_at=p["created_at"] or canonical["created_at"],
                    resolved_at=p["resolved_at"],
                    resolution=p["resolution"],
                ))
        known_subs = {s.id for s in task.sub_tasks}
        for s in canonical["sub_tasks"]:
            if s["id"] not in known_subs:
                task.sub_tasks.append(SubTask(
                    id=s["id"],
                    title=s["title"],
                    status=s["status"],
                    assignee_id=_existing_user(s["assignee_id"]) or canonical["owner_id"],
                    progress=s["progress"],
                    deadline=s["deadline"] or canonical["deadline"],
                ))
        known_history = {h.id for h in task.history}
        for h in canonical["history"]:
            # id-less entries cannot be matched on re-import; take them only once
            if (h["id"] is None and not created) or h["id"] in known_history:
                continue
            task.history.append(TaskHistoryEntry(
                id=str(h["id"]) if h["id"] is not None else _uuid(),
                sequence=len(task.history),
                action=h["action"],
                performed_by=h["performed_by"],
                performed_by_name=h["performed_by_name"],
                timestamp=h["timestamp"] or canonical["updated_at"],
                notes=h["notes"],
            ))
        _after_task_change(task, previous_owner, previous_instance_id=previous_instance_id)

    logger.info("Task %s from import id=%s by=%s", "created" if created else "updated", task.id, ctx.user_id)
    return task
