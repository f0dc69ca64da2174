"""
Flow Orchestrator: templates, instantiation and derived aggregates.

Template authoring:
    create_template / update_template / delete_template (ADMIN or DESIGNER).
    A template still referenced by any instance cannot be deleted.

Instantiation:
    instantiate() snapshots every stage of a template into a StageStatus and
    creates one Task per supplied descriptor through the task lifecycle
    validation. Every stage must receive at least one owned task. The whole
    operation is all-or-nothing.

Aggregates (recomputed after every task mutation):
    stage progress   = rounded mean of its tasks' progress (0 when empty)
    stage status     = completed iff all tasks completed, else blocked if any
                       blocked, else in_progress if any progress > 0,
                       else pending
    instance progress = rounded mean of stage progress
    instance health   = delayed | at_risk | on_track

Rounding is half-up (see utils.helpers.round_half_up).
"""

import logging
from collections import defaultdict
from datetime import datetime, timedelta, timezone

from app.core.exceptions import (
    IncompleteInstantiation,
    InvalidDateRange,
    NotFoundError,
    ReferentialError,
    TemplateInUse,
    ValidationError,
)
from app.models import as_utc, db
from app.models.flow import FlowHealth, FlowInstance, FlowStage, FlowTemplate, StageStatus
from app.models.organization import RoleKey, Unit, User
from app.models.task import Task, TaskPriority, TaskStatus
from app.services.organization_service import refresh_workload
from app.services.task_lifecycle import build_task, check_days, validate_task_input
from app.utils.helpers import atomic, mean_pct, parse_datetime_input

logger = logging.getLogger(__name__)

_DESIGN_ROLES = (RoleKey.ADMIN, RoleKey.DESIGNER)


# ═════════════════════════════════════════════════════════════════════════════
# Aggregates (pure helpers + recompute)
# ═════════════════════════════════════════════════════════════════════════════


def stage_aggregate(tasks):
    """Return ``(progress, status)`` for the tasks of one stage.

    A blocked task wins over partial progress elsewhere in the stage.
    """
    tasks = list(tasks)
    progress = mean_pct(t.progress or 0 for t in tasks)
    statuses = {t.status for t in tasks}
    if tasks and statuses == {TaskStatus.COMPLETED.value}:
        status = TaskStatus.COMPLETED
    elif TaskStatus.BLOCKED.value in statuses:
        status = TaskStatus.BLOCKED
    elif any((t.progress or 0) > 0 for t in tasks):
        status = TaskStatus.IN_PROGRESS
    else:
        status = TaskStatus.PENDING
    return progress, status


def instance_health(due_date, progress, tasks, now):
    """delayed > at_risk > on_track."""
    if as_utc(due_date) < now and progress < 100:
        return FlowHealth.DELAYED
    if any(t.status == TaskStatus.BLOCKED.value or t.is_overdue(now) for t in tasks):
        return FlowHealth.AT_RISK
    return FlowHealth.ON_TRACK


def recompute_aggregates(instance, now=None):
    """Refresh StageStatus progress/status and instance progress/health.

    Idempotent: running it twice on unchanged tasks yields the same values.
    Does not commit.
    """
    now = now or datetime.now(timezone.utc)
    tasks = Task.query.filter_by(flow_instance_id=instance.id).all()
    by_stage = defaultdict(list)
    for task in tasks:
        by_stage[task.stage_status_id].append(task)

    for stage_status in instance.stage_statuses:
        progress, status = stage_aggregate(by_stage.get(stage_status.id, []))
        stage_status.progress = progress
        stage_status.status = status.value

    instance.progress = mean_pct(s.progress for s in instance.stage_statuses)
    instance.health = instance_health(instance.due_date, instance.progress, tasks, now).value
    return instance


# ═════════════════════════════════════════════════════════════════════════════
# Templates
# ═════════════════════════════════════════════════════════════════════════════


def list_templates():
    return FlowTemplate.query.order_by(FlowTemplate.name).all()


def get_template(template_id):
    template = db.session.get(FlowTemplate, template_id)
    if not template:
        raise NotFoundError("FlowTemplate", template_id)
    return template


def _clean_stages(stages):
    if not stages:
        raise ValidationError("A template needs at least one stage", details={"stages": "required"})
    cleaned = []
    for idx, stage in enumerate(stages):
        name = (stage.get("name") or "").strip()
        if not name:
            raise ValidationError(f"Stage #{idx + 1} needs a name", details={f"stages[{idx}].name": "required"})
        role = RoleKey.parse(stage.get("owner_role"))
        if role is None:
            raise ValidationError(
                f"Stage '{name}' has an unknown owner role: {stage.get('owner_role')!r}",
                details={f"stages[{idx}].owner_role": f"one of {[r.value for r in RoleKey]}"},
            )
        duration = stage.get("expected_duration_days")
        if isinstance(duration, bool) or not isinstance(duration, int) or duration <= 0:
            raise ValidationError(
                f"Stage '{name}' needs a positive expected duration",
                details={f"stages[{idx}].expected_duration_days": "must be a positive integer"},
            )
        cleaned.append({
            "id": stage.get("id") or None,
            "position": idx,
            "name": name,
            "description": stage.get("description") or "",
            "expected_duration_days": duration,
            "owner_role": role.value,
            "exit_criteria": stage.get("exit_criteria") or "",
        })
    return cleaned


def _clean_template(data, ctx, template=None):
    cleaned = {}
    if template is None or "name" in data:
        name = (data.get("name") or "").strip()
        if not name:
            raise ValidationError("name is required", details={"name": "required"})
        cleaned["name"] = name
    for field in ("description", "business_objective"):
        if template is None or field in data:
            cleaned[field] = data.get(field) or ""
    if template is None or "owner_id" in data:
        owner_id = data.get("owner_id") or ctx.user_id
        if not db.session.get(User, owner_id):
            raise ReferentialError("User", owner_id, "template owner does not exist")
        cleaned["owner_id"] = owner_id
    if template is None or "stages" in data:
        cleaned["stages"] = _clean_stages(data.get("stages"))
    if data.get("typical_duration_days"):
        cleaned["typical_duration_days"] = int(data["typical_duration_days"])
    elif "stages" in cleaned:
        cleaned["typical_duration_days"] = sum(s["expected_duration_days"] for s in cleaned["stages"])
    return cleaned


def create_template(data, ctx):
    ctx.require_role("create flow templates", *_DESIGN_ROLES)
    cleaned = _clean_template(data, ctx)
    stages = cleaned.pop("stages")

    with atomic():
        template = FlowTemplate(**cleaned)
        template.stages = [FlowStage(**{k: v for k, v in s.items() if k != "id"}) for s in stages]
        db.session.add(template)

    logger.info("FlowTemplate created id=%s stages=%d by=%s", template.id, len(stages), ctx.user_id)
    return template


def update_template(template_id, data, ctx):
    """Replace metadata and (optionally) the stage list.

    Stages carrying the id of an existing stage keep that id; stages missing
    from the new list are removed. Running instances keep their snapshots.
    """
    ctx.require_role("update flow templates", *_DESIGN_ROLES)
    template = get_template(template_id)
    cleaned = _clean_template(data, ctx, template=template)
    stages = cleaned.pop("stages", None)

    with atomic():
        for field, value in cleaned.items():
            setattr(template, field, value)
        if stages is not None:
            existing = {s.id: s for s in template.stages}
            new_stages = []
            for s in stages:
                stage = existing.get(s["id"]) or FlowStage()
                for field, value in s.items():
                    if field != "id":
                        setattr(stage, field, value)
                new_stages.append(stage)
            template.stages = new_stages
        template.last_updated = datetime.now(timezone.utc)

    logger.info("FlowTemplate updated id=%s by=%s", template.id, ctx.user_id)
    return template


def delete_template(template_id, ctx):
    ctx.require_role("delete flow templates", *_DESIGN_ROLES)
    template = get_template(template_id)
    in_use = FlowInstance.query.filter_by(template_id=template.id).count()
    if in_use:
        logger.warning("FlowTemplate delete rejected id=%s instances=%d", template.id, in_use)
        raise TemplateInUse(template.id, in_use)

    with atomic():
        db.session.delete(template)
    logger.info("FlowTemplate deleted id=%s by=%s", template_id, ctx.user_id)


# ═════════════════════════════════════════════════════════════════════════════
# Instances
# ═════════════════════════════════════════════════════════════════════════════


def list_instances(unit_id=None):
    q = FlowInstance.query
    if unit_id:
        q = q.filter_by(owner_unit_id=unit_id)
    return q.order_by(FlowInstance.kickoff_date.desc(), FlowInstance.name).all()


def get_instance(instance_id):
    instance = db.session.get(FlowInstance, instance_id)
    if not instance:
        raise NotFoundError("FlowInstance", instance_id)
    return instance


def _group_descriptors(template, stage_tasks):
    """Map stage id → task descriptors; unknown stage ids are rejected."""
    stage_ids = {s.id for s in template.stages}
    grouped = defaultdict(list)
    for entry in stage_tasks or []:
        stage_id = entry.get("stage_id")
        if stage_id not in stage_ids:
            raise ReferentialError("FlowStage", stage_id, f"not a stage of template {template.id}")
        grouped[stage_id].extend(entry.get("tasks") or [])
    return grouped


def _check_complete(template, grouped):
    missing_stages = [s.name for s in template.stages if not grouped.get(s.id)]
    unowned = []
    for stage in template.stages:
        for idx, descriptor in enumerate(grouped.get(stage.id, [])):
            owner_id = descriptor.get("owner_id")
            if not owner_id or not db.session.get(User, owner_id):
                unowned.append(f"{stage.name}#{idx + 1}")
    if missing_stages or unowned:
        logger.warning(
            "Instantiation rejected template=%s empty_stages=%s unowned=%s",
            template.id, missing_stages, unowned,
        )
        raise IncompleteInstantiation(
            "Every stage needs at least one task and every task needs an existing owner",
            details={"stages_without_tasks": missing_stages, "tasks_without_owner": unowned},
        )


def instantiate(data, ctx, now=None):
    """Create a FlowInstance from a template.

    data keys: template_id, owner_unit_id, name, kickoff_date, due_date,
    stage_tasks = [{"stage_id", "tasks": [{title, description, priority,
    due_in_days, owner_id}]}].

    Raises:
        ReferentialError: template / unit / stage id missing.
        InvalidDateRange: kickoff after due.
        IncompleteInstantiation: a stage without tasks or an unowned task.
        ValidationError: a task descriptor fails task validation.
    """
    ctx.require_role("instantiate flows", *_DESIGN_ROLES)

    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError("name is required", details={"name": "required"})
    template = db.session.get(FlowTemplate, data.get("template_id"))
    if not template:
        raise ReferentialError("FlowTemplate", data.get("template_id"))
    unit = db.session.get(Unit, data.get("owner_unit_id"))
    if not unit:
        raise ReferentialError("Unit", data.get("owner_unit_id"))

    kickoff = parse_datetime_input(data.get("kickoff_date"), "kickoff_date")
    due = parse_datetime_input(data.get("due_date"), "due_date")
    if kickoff > due:
        raise InvalidDateRange(
            "kickoff_date must be on or before due_date",
            details={"kickoff_date": kickoff.isoformat(), "due_date": due.isoformat()},
        )

    grouped = _group_descriptors(template, data.get("stage_tasks"))
    _check_complete(template, grouped)

    # validate every descriptor before anything is added to the session
    plan = []
    for stage in template.stages:
        for descriptor in grouped[stage.id]:
            title = (descriptor.get("title") or "").strip()
            due_in_days = descriptor.get("due_in_days")
            if due_in_days is None:
                due_in_days = stage.expected_duration_days
            due_in_days = check_days(due_in_days, "due_in_days")
            cleaned = validate_task_input({
                "title": title,
                "description": (descriptor.get("description") or "").strip()
                or f"{title} ({stage.name} stage of {name})",
                "owner_id": descriptor.get("owner_id"),
                "assigner_id": ctx.user_id,
                "priority": descriptor.get("priority") or TaskPriority.MEDIUM.value,
                "deadline": kickoff + timedelta(days=due_in_days),
                "duration_days": due_in_days,
                "tags": descriptor.get("tags"),
            }, ctx, check_flow_refs=False)
            plan.append((stage, cleaned))

    with atomic():
        instance = FlowInstance(
            template_id=template.id,
            owner_unit_id=unit.id,
            name=name,
            kickoff_date=kickoff,
            due_date=due,
            progress=0,
            health=FlowHealth.ON_TRACK.value,
        )
        db.session.add(instance)
        stage_statuses = {}
        for stage in template.stages:
            stage_statuses[stage.id] = StageStatus(
                stage_id=stage.id,
                position=stage.position,
                stage_name=stage.name,
                stage_description=stage.description or "",
                stage_owner_role=stage.owner_role,
                status=TaskStatus.PENDING.value,
                progress=0,
            )
            instance.stage_statuses.append(stage_statuses[stage.id])
        for stage, cleaned in plan:
            task = build_task(cleaned)
            task.flow_instance = instance
            task.stage_status = stage_statuses[stage.id]
        db.session.flush()
        recompute_aggregates(instance, now=now)
        refresh_workload([cleaned["owner_id"] for _, cleaned in plan])

    logger.info(
        "FlowInstance created id=%s template=%s tasks=%d by=%s",
        instance.id, template.id, len(plan), ctx.user_id,
    )
    return instance


def delete_instance(instance_id, ctx):
    """Delete an instance with its stage statuses and tasks."""
    ctx.require_role("delete flow instances", *_DESIGN_ROLES)
    instance = get_instance(instance_id)
    owners = [t.owner_id for t in instance.tasks]

    with atomic():
        db.session.delete(instance)
        db.session.flush()
        refresh_workload(owners)
    logger.info("FlowInstance deleted id=%s tasks=%d by=%s", instance_id, len(owners), ctx.user_id)


def assign_stage_owner(stage_status_id, owner_id, ctx):
    """Set (or clear, with owner_id=None) the responsible user of a stage."""
    ctx.require_role("assign stage owners", *_DESIGN_ROLES)
    stage_status = db.session.get(StageStatus, stage_status_id)
    if not stage_status:
        raise NotFoundError("StageStatus", stage_status_id)
    if owner_id and not db.session.get(User, owner_id):
        raise ReferentialError("User", owner_id, "stage owner does not exist")

    with atomic():
        stage_status.owner_id = owner_id or None
    logger.info("Stage owner assigned stage_status=%s owner=%s by=%s", stage_status.id, owner_id, ctx.user_id)
    return stage_status
