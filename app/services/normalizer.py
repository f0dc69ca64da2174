"""
Record normalizer: external records → canonical domain dicts.

Externally sourced records (API payloads, imports) arrive with
inconsistent casing, camelCase or snake_case keys and missing optional
fields. Every function here is pure: it never touches the session and
never rejects a record for a fixable defect. Defaults are filled instead:

  - status / priority / problem status / health are case-folded; unknown
    literals fall back to pending / medium / open / on_track
  - missing collections become []
  - updated_at ← created_at ← deadline ← now
  - workload capacity is never below 1

The only hard failure is a record without an identifier (MalformedRecord).
Normalizing an already-normalized record returns an equal dict.

Usage:
    from app.services.normalizer import normalize_task

    canonical = normalize_task({"id": "t1", "status": "IN_PROGRESS", ...})
"""

from __future__ import annotations

from datetime import datetime, timezone

from app.core.exceptions import MalformedRecord
from app.models.flow import FlowHealth
from app.models.task import ProblemStatus, TaskPriority, TaskStatus
from app.utils.helpers import parse_datetime, round_half_up


_MISSING = object()


def _get(record: dict, *keys, default=None):
    """First present key among *keys* (snake_case first, then camelCase)."""
    for key in keys:
        value = record.get(key, _MISSING)
        if value is not _MISSING and value is not None:
            return value
    return default


def _require_id(record, kind: str) -> str:
    if not isinstance(record, dict):
        raise MalformedRecord(f"{kind} record must be a mapping", details={"record": repr(record)[:80]})
    rid = record.get("id")
    if rid is None or str(rid).strip() == "":
        raise MalformedRecord(f"{kind} record has no identifier", details={"id": "required"})
    return str(rid)


def _optional_id(record):
    rid = record.get("id")
    if rid is None or str(rid).strip() == "":
        return None
    return str(rid)


def _fold(enum_cls, value, fallback):
    member = enum_cls.parse(value)
    return (member or fallback).value


def _list(value) -> list:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def _clamp_pct(value) -> int:
    try:
        pct = round_half_up(float(value))
    except (TypeError, ValueError, OverflowError):
        return 0
    return max(0, min(100, pct))


def _int(value, default: int = 0) -> int:
    """Whole number from a loosely typed field; *default* when unusable."""
    if value is None or isinstance(value, bool):
        return default
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return default


# ── Tasks ────────────────────────────────────────────────────────────────────


def normalize_problem(record: dict, task_id: str | None = None) -> dict:
    pid = _require_id(record, "TaskProblem")
    status = _fold(ProblemStatus, _get(record, "status"), ProblemStatus.OPEN)
    resolved = status == ProblemStatus.RESOLVED.value
    return {
        "id": pid,
        "task_id": _get(record, "task_id", "taskId", default=task_id),
        "reporter_id": _get(record, "reporter_id", "reporterId"),
        "description": _get(record, "description", default=""),
        "status": status,
        "created_at": parse_datetime(_get(record, "created_at", "createdAt")),
        "resolved_at": parse_datetime(_get(record, "resolved_at", "resolvedAt")) if resolved else None,
        "resolution": _get(record, "resolution") if resolved else None,
    }


def normalize_sub_task(record: dict, task_id: str | None = None) -> dict:
    sid = _require_id(record, "SubTask")
    status = _fold(TaskStatus, _get(record, "status"), TaskStatus.PENDING)
    progress = _clamp_pct(_get(record, "progress", default=0))
    if status == TaskStatus.COMPLETED.value:
        progress = 100
    return {
        "id": sid,
        "task_id": _get(record, "task_id", "taskId", default=task_id),
        "title": _get(record, "title", default=""),
        "status": status,
        "assignee_id": _get(record, "assignee_id", "assigneeId"),
        "progress": progress,
        "deadline": parse_datetime(_get(record, "deadline")),
    }


def normalize_history_entry(record: dict, task_id: str | None = None) -> dict:
    return {
        "id": _optional_id(record),
        "task_id": _get(record, "task_id", "taskId", default=task_id),
        "action": _get(record, "action", default=""),
        "performed_by": _get(record, "performed_by", "performedBy"),
        "performed_by_name": _get(record, "performed_by_name", "performedByName"),
        "timestamp": parse_datetime(_get(record, "timestamp")),
        "notes": _get(record, "notes"),
    }


def normalize_task(record: dict, now: datetime | None = None) -> dict:
    """Canonical task dict from an external task record."""
    task_id = _require_id(record, "Task")
    now = now or datetime.now(timezone.utc)

    status = _fold(TaskStatus, _get(record, "status"), TaskStatus.PENDING)
    progress = _clamp_pct(_get(record, "progress", default=0))
    if status == TaskStatus.COMPLETED.value:
        progress = 100

    deadline = parse_datetime(_get(record, "deadline")) or now
    created_at = parse_datetime(_get(record, "created_at", "createdAt")) or deadline
    updated_at = parse_datetime(_get(record, "updated_at", "updatedAt")) or created_at

    return {
        "id": task_id,
        "title": _get(record, "title", default=""),
        "description": _get(record, "description", default=""),
        "status": status,
        "priority": _fold(TaskPriority, _get(record, "priority"), TaskPriority.MEDIUM),
        "owner_id": _get(record, "owner_id", "ownerId"),
        "assigner_id": _get(record, "assigner_id", "assignerId"),
        "flow_instance_id": _get(record, "flow_instance_id", "flowInstanceId"),
        "stage_status_id": _get(record, "stage_status_id", "stageStatusId"),
        "deadline": deadline,
        "created_at": created_at,
        "updated_at": updated_at,
        "progress": progress,
        "duration_days": _int(_get(record, "duration_days", "durationDays")),
        "allow_rejection": bool(_get(record, "allow_rejection", "allowRejection", default=True)),
        "dependencies": _list(_get(record, "dependencies")),
        "related_task_ids": _list(_get(record, "related_task_ids", "relatedTaskIds")),
        "tags": _list(_get(record, "tags")),
        "problems": [normalize_problem(p, task_id) for p in _list(_get(record, "problems"))],
        "history": [normalize_history_entry(h, task_id) for h in _list(_get(record, "history"))],
        "sub_tasks": [
            normalize_sub_task(s, task_id) for s in _list(_get(record, "sub_tasks", "subTasks"))
        ],
    }


# ── Flow instances ───────────────────────────────────────────────────────────


def normalize_stage_status(record: dict) -> dict:
    stage = _get(record, "stage", default={}) or {}
    return {
        "id": _get(record, "id"),
        "status": _fold(TaskStatus, _get(record, "status"), TaskStatus.PENDING),
        "progress": _clamp_pct(_get(record, "progress", default=0)),
        "owner_id": _get(record, "owner_id", "ownerId", default=(_get(record, "owner") or {}).get("id")),
        "stage": {
            "id": _get(stage, "id", default=_get(record, "stage_id", "stageId")),
            "name": _get(stage, "name", default=""),
            "description": _get(stage, "description", default=""),
            "owner_role": _get(stage, "owner_role", "ownerRole"),
        },
    }


def _legacy_stage_map(stage_map: dict) -> list[dict]:
    """Convert the deprecated {stage_id: {status, ownerId, progress}} shape."""
    entries = []
    for stage_id, entry in stage_map.items():
        entry = entry or {}
        entries.append(normalize_stage_status({
            "id": None,
            "status": entry.get("status"),
            "progress": entry.get("progress"),
            "owner_id": _get(entry, "owner_id", "ownerId"),
            "stage_id": stage_id,
        }))
    return entries


def normalize_flow_instance(record: dict) -> dict:
    instance_id = _require_id(record, "FlowInstance")
    statuses = _get(record, "stage_statuses", "stageStatuses")
    if statuses is None and isinstance(record.get("stageStatus"), dict):
        stage_statuses = _legacy_stage_map(record["stageStatus"])
    else:
        stage_statuses = [normalize_stage_status(s) for s in _list(statuses)]
    return {
        "id": instance_id,
        "template_id": _get(record, "template_id", "templateId"),
        "owner_unit_id": _get(record, "owner_unit_id", "ownerUnitId"),
        "name": _get(record, "name", default=""),
        "kickoff_date": parse_datetime(_get(record, "kickoff_date", "kickoffDate")),
        "due_date": parse_datetime(_get(record, "due_date", "dueDate")),
        "progress": _clamp_pct(_get(record, "progress", default=0)),
        "health": _fold(FlowHealth, _get(record, "health"), FlowHealth.ON_TRACK),
        "stage_statuses": stage_statuses,
    }


# ── Workload ─────────────────────────────────────────────────────────────────


def normalize_workload(record: dict) -> dict:
    """Workload entry with capacity ≥ 1 (utilization never divides by zero)."""
    assigned = _int(_get(record, "assigned"))
    capacity = _int(_get(record, "capacity"), default=assigned)
    return {
        "user_id": _get(record, "user_id", "userId", "ownerId", default="unknown"),
        "assigned": assigned,
        "in_progress": _int(_get(record, "in_progress", "inProgress")),
        "blocked": _int(_get(record, "blocked")),
        "overdue": _int(_get(record, "overdue")),
        "capacity": max(capacity, 1),
    }
