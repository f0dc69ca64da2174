"""
Process Console
Task domain models.

Models:
    - Task: unit of assignable work, optionally bound to a flow stage status
    - TaskHistoryEntry: append-only log of transitions / reassignments
    - TaskProblem: blocker reported against a task
    - SubTask: lightweight checklist item under a task

Architecture chain: FlowInstance ──1:N──▶ StageStatus ──1:N──▶ Task
                    Task ──1:N──▶ TaskHistoryEntry / TaskProblem / SubTask

Lifecycle states:
    Task:         pending → in_progress → blocked | completed | returned
                  blocked → in_progress,  returned → in_progress
    TaskProblem:  open → resolved
"""

import enum

from app.models import _utcnow, _uuid, as_utc, db, iso


# ── Constants ────────────────────────────────────────────────────────────────


class _ParsableEnum(str, enum.Enum):
    """str-valued enum with case-insensitive parsing."""

    @classmethod
    def parse(cls, value):
        """Return the member for *value* or None when it is not a known literal."""
        if isinstance(value, cls):
            return value
        if value is None:
            return None
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return None


class TaskStatus(_ParsableEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    COMPLETED = "completed"
    RETURNED = "returned"


class TaskPriority(_ParsableEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ProblemStatus(_ParsableEnum):
    OPEN = "open"
    RESOLVED = "resolved"


TASK_STATUSES = {s.value for s in TaskStatus}
TASK_PRIORITIES = {p.value for p in TaskPriority}

# Normal-operation edges. change_status only refuses to leave "completed";
# the map documents the intended flow for clients building action menus.
TASK_TRANSITIONS = {
    "pending":     ["in_progress", "blocked", "completed", "returned"],
    "in_progress": ["blocked", "completed", "returned"],
    "blocked":     ["in_progress"],
    "returned":    ["in_progress"],
    "completed":   [],
}

MIN_DESCRIPTION_LENGTH = 10
MIN_PROBLEM_LENGTH = 5


def suggested_transitions(status):
    """Return the statuses a task in *status* normally moves to."""
    return list(TASK_TRANSITIONS.get(status, []))


# ═════════════════════════════════════════════════════════════════════════════
# Task
# ═════════════════════════════════════════════════════════════════════════════


class Task(db.Model):
    """
    A unit of assignable work.

    Free-standing tasks belong to the task collection; flow-generated tasks
    are bound to one StageStatus of one FlowInstance and are deleted with it.
    """

    __tablename__ = "tasks"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    title = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text, nullable=False)
    status = db.Column(db.String(20), default=TaskStatus.PENDING.value, nullable=False, index=True)
    priority = db.Column(db.String(20), default=TaskPriority.MEDIUM.value, nullable=False)

    owner_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=False, index=True)
    assigner_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=False)

    flow_instance_id = db.Column(
        db.String(36), db.ForeignKey("flow_instances.id", ondelete="CASCADE"),
        nullable=True, index=True,
    )
    stage_status_id = db.Column(
        db.String(36), db.ForeignKey("stage_statuses.id", ondelete="CASCADE"),
        nullable=True, index=True,
    )

    deadline = db.Column(db.DateTime(timezone=True), nullable=False)
    progress = db.Column(db.Integer, default=0, nullable=False, comment="0-100")
    duration_days = db.Column(db.Integer, default=0)
    allow_rejection = db.Column(db.Boolean, default=True)

    dependencies = db.Column(db.JSON, default=list)
    related_task_ids = db.Column(db.JSON, default=list)
    tags = db.Column(db.JSON, default=list)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    owner = db.relationship("User", foreign_keys=[owner_id])
    assigner = db.relationship("User", foreign_keys=[assigner_id])
    flow_instance = db.relationship("FlowInstance", back_populates="tasks")
    stage_status = db.relationship("StageStatus", back_populates="tasks")

    history = db.relationship(
        "TaskHistoryEntry", back_populates="task",
        cascade="all, delete-orphan", order_by="TaskHistoryEntry.sequence",
    )
    problems = db.relationship(
        "TaskProblem", back_populates="task",
        cascade="all, delete-orphan", order_by="TaskProblem.created_at",
    )
    sub_tasks = db.relationship(
        "SubTask", back_populates="task",
        cascade="all, delete-orphan", order_by="SubTask.created_at",
    )

    def is_overdue(self, now):
        """Past its deadline and not completed."""
        return self.status != TaskStatus.COMPLETED.value and as_utc(self.deadline) < now

    def to_dict(self, include_children=True):
        d = {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "status": self.status,
            "priority": self.priority,
            "owner_id": self.owner_id,
            "assigner_id": self.assigner_id,
            "flow_instance_id": self.flow_instance_id,
            "stage_status_id": self.stage_status_id,
            "deadline": iso(self.deadline),
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
            "progress": self.progress,
            "duration_days": self.duration_days or 0,
            "allow_rejection": bool(self.allow_rejection),
            "dependencies": list(self.dependencies or []),
            "related_task_ids": list(self.related_task_ids or []),
            "tags": list(self.tags or []),
            "owner": {"id": self.owner.id, "full_name": self.owner.full_name} if self.owner else None,
            "assigner": (
                {"id": self.assigner.id, "full_name": self.assigner.full_name} if self.assigner else None
            ),
        }
        if include_children:
            d["history"] = [h.to_dict() for h in self.history]
            d["problems"] = [p.to_dict() for p in self.problems]
            d["sub_tasks"] = [s.to_dict() for s in self.sub_tasks]
        return d

    def __repr__(self):
        return f"<Task {self.id}: {self.title[:40]} ({self.status})>"


# ═════════════════════════════════════════════════════════════════════════════
# TaskHistoryEntry
# ═════════════════════════════════════════════════════════════════════════════


class TaskHistoryEntry(db.Model):
    """Append-only history row. sequence keeps insertion order stable."""

    __tablename__ = "task_history"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    task_id = db.Column(
        db.String(36), db.ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    sequence = db.Column(db.Integer, nullable=False, default=0)
    action = db.Column(db.String(200), nullable=False)
    performed_by = db.Column(db.String(36), nullable=True)
    performed_by_name = db.Column(db.String(200), nullable=True)
    timestamp = db.Column(db.DateTime(timezone=True), default=_utcnow)
    notes = db.Column(db.Text, nullable=True)

    task = db.relationship("Task", back_populates="history")

    def to_dict(self):
        return {
            "id": self.id,
            "task_id": self.task_id,
            "action": self.action,
            "performed_by": self.performed_by,
            "performed_by_name": self.performed_by_name,
            "timestamp": iso(self.timestamp),
            "notes": self.notes,
        }


# ═════════════════════════════════════════════════════════════════════════════
# TaskProblem
# ═════════════════════════════════════════════════════════════════════════════


class TaskProblem(db.Model):
    """
    Blocker reported against a task.

    resolution / resolved_at are only populated once status is "resolved".
    """

    __tablename__ = "task_problems"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    task_id = db.Column(
        db.String(36), db.ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    reporter_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=False)
    description = db.Column(db.Text, nullable=False)
    status = db.Column(db.String(20), default=ProblemStatus.OPEN.value, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    resolution = db.Column(db.Text, nullable=True)

    task = db.relationship("Task", back_populates="problems")

    def to_dict(self):
        return {
            "id": self.id,
            "task_id": self.task_id,
            "reporter_id": self.reporter_id,
            "description": self.description,
            "status": self.status,
            "created_at": iso(self.created_at),
            "resolved_at": iso(self.resolved_at),
            "resolution": self.resolution,
        }

    def __repr__(self):
        return f"<TaskProblem {self.id} ({self.status})>"


# ═════════════════════════════════════════════════════════════════════════════
# SubTask
# ═════════════════════════════════════════════════════════════════════════════


class SubTask(db.Model):
    __tablename__ = "sub_tasks"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    task_id = db.Column(
        db.String(36), db.ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    title = db.Column(db.String(300), nullable=False)
    status = db.Column(db.String(20), default=TaskStatus.PENDING.value, nullable=False)
    assignee_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=False)
    progress = db.Column(db.Integer, default=0, nullable=False)
    deadline = db.Column(db.DateTime(timezone=True), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    task = db.relationship("Task", back_populates="sub_tasks")

    def to_dict(self):
        return {
            "id": self.id,
            "task_id": self.task_id,
            "title": self.title,
            "status": self.status,
            "assignee_id": self.assignee_id,
            "progress": self.progress,
            "deadline": iso(self.deadline),
        }
