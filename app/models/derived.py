"""
Process Console
Derived (never persisted) view objects.

Notification, MetricSnapshot and WorkloadSummary are recomputed from the
current task collection on every read; see app.services.alerting.
"""

import enum
from dataclasses import asdict, dataclass
from datetime import datetime


class Severity(str, enum.Enum):
    INFO = "info"
    WARNING = "warning"
    DANGER = "danger"


@dataclass(frozen=True)
class Notification:
    id: str
    message: str
    severity: Severity
    created_at: datetime
    link: str | None = None
    task_id: str | None = None

    def to_dict(self):
        return {
            "id": self.id,
            "message": self.message,
            "severity": self.severity.value,
            "created_at": self.created_at.isoformat(),
            "link": self.link,
            "task_id": self.task_id,
        }


@dataclass(frozen=True)
class MetricSnapshot:
    date: datetime
    completed: int
    delayed: int
    reassigned: int

    def to_dict(self):
        d = asdict(self)
        d["date"] = self.date.isoformat()
        return d


@dataclass(frozen=True)
class WorkloadSummary:
    user_id: str
    assigned: int
    in_progress: int
    blocked: int
    overdue: int
    capacity: int

    @property
    def utilization(self):
        return round(self.assigned / self.capacity * 100, 1)

    def to_dict(self):
        d = asdict(self)
        d["utilization"] = self.utilization
        return d
