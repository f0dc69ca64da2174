"""
Alerting & Metrics Deriver

Pure projections over the current task collection. Nothing here is
persisted: notifications, metric snapshots and workload summaries are
recomputed from whatever task list the caller passes in.

Usage:
    from app.services import alerting

    notes = alerting.derive_notifications(Task.query.all())
    metrics = alerting.build_metrics(tasks)
"""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timezone

from flask import current_app, has_app_context

from app.models.derived import MetricSnapshot, Notification, Severity, WorkloadSummary
from app.models.task import ProblemStatus, TaskStatus
from app.services.normalizer import normalize_workload

DEFAULT_ALERTS_LINK = "/app/tasks/alerts"


def _alerts_link() -> str:
    if has_app_context():
        return current_app.config.get("ALERTS_LINK", DEFAULT_ALERTS_LINK)
    return DEFAULT_ALERTS_LINK


def _severity_for(task) -> Severity:
    return Severity.DANGER if task.status == TaskStatus.BLOCKED.value else Severity.WARNING


# ═════════════════════════════════════════════════════════════════════════════
# Notifications
# ═════════════════════════════════════════════════════════════════════════════


def needs_attention(task, now: datetime) -> bool:
    """Blocked, or past its deadline and not completed."""
    return task.status == TaskStatus.BLOCKED.value or task.is_overdue(now)


def derive_notifications(tasks, now: datetime | None = None) -> list[Notification]:
    """One notification per task that is blocked or overdue.

    Blocked → danger, overdue → warning. Ids are ``ntf-<task id>`` so the
    same task never yields two notifications.
    """
    now = now or datetime.now(timezone.utc)
    link = _alerts_link()
    return [
        Notification(
            id=f"ntf-{task.id}",
            message=f'Task "{task.title}" needs attention (status: {task.status})',
            severity=_severity_for(task),
            created_at=now,
            link=link,
            task_id=task.id,
        )
        for task in tasks
        if needs_attention(task, now)
    ]


def problem_notification(task, problem) -> Notification:
    """Notification emitted when a problem is reported on *task*."""
    return Notification(
        id=f"ntf-problem-{problem.id}",
        message=f'Problem reported on "{task.title}": {problem.description}',
        severity=_severity_for(task),
        created_at=datetime.now(timezone.utc),
        link=_alerts_link(),
        task_id=task.id,
    )


def problem_tasks(tasks, open_only: bool = True) -> list:
    """Tasks carrying (open) problems, for the alerts view."""
    return [
        t for t in tasks
        if any(not open_only or p.status == ProblemStatus.OPEN.value for p in t.problems)
    ]


# ═════════════════════════════════════════════════════════════════════════════
# Metrics / workload
# ═════════════════════════════════════════════════════════════════════════════


def build_metrics(tasks, now: datetime | None = None) -> list[MetricSnapshot]:
    """Single snapshot of completed / delayed / reassigned counts.

    Returns an empty list when there are no tasks at all.
    """
    tasks = list(tasks)
    if not tasks:
        return []
    now = now or datetime.now(timezone.utc)
    return [
        MetricSnapshot(
            date=now,
            completed=sum(1 for t in tasks if t.status == TaskStatus.COMPLETED.value),
            delayed=sum(1 for t in tasks if t.is_overdue(now)),
            reassigned=sum(1 for t in tasks if t.history),
        )
    ]


def build_workload(tasks, users=(), now: datetime | None = None) -> list[WorkloadSummary]:
    """Per-owner workload counters.

    Every user in *users* gets an entry (zeros when idle); owners that only
    appear on tasks are included too. Capacity defaults to the assigned
    count and is never below 1.
    """
    now = now or datetime.now(timezone.utc)
    counters = defaultdict(lambda: {"assigned": 0, "in_progress": 0, "blocked": 0, "overdue": 0})
    counters.update((user.id, counters.default_factory()) for user in users)

    for task in tasks:
        if task.status == TaskStatus.COMPLETED.value:
            continue
        c = counters[task.owner_id]
        c["assigned"] += 1
        if task.status == TaskStatus.IN_PROGRESS.value:
            c["in_progress"] += 1
        elif task.status == TaskStatus.BLOCKED.value:
            c["blocked"] += 1
        if task.is_overdue(now):
            c["overdue"] += 1

    summaries = []
    for user_id, c in counters.items():
        entry = normalize_workload({"user_id": user_id, **c})
        summaries.append(WorkloadSummary(**entry))
    return sorted(summaries, key=lambda s: (-s.utilization, s.user_id))
