"""
Process Console
Flow domain models.

Models:
    - FlowTemplate: reusable, ordered definition of process stages
    - FlowStage: one named phase of a template, owned by a role
    - FlowInstance: one running execution of a template for a unit
    - StageStatus: live state of one stage within one instance

Architecture chain: FlowTemplate ──1:N──▶ FlowStage
                    FlowTemplate ──1:N──▶ FlowInstance (template_id nullable)
                    FlowInstance ──1:N──▶ StageStatus ──1:N──▶ Task

StageStatus copies the stage's name/description/owner role at instantiation,
so editing or removing a template stage never changes a running instance.
progress / health / StageStatus.status are derived; see
app.services.flow_orchestrator.recompute_aggregates.
"""

import enum

from app.models import _utcnow, _uuid, db, iso


# ── Constants ────────────────────────────────────────────────────────────────


class FlowHealth(str, enum.Enum):
    ON_TRACK = "on_track"
    AT_RISK = "at_risk"
    DELAYED = "delayed"

    @classmethod
    def parse(cls, value):
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value or "").strip().lower())
        except ValueError:
            return None


FLOW_HEALTH_VALUES = {h.value for h in FlowHealth}


# ═════════════════════════════════════════════════════════════════════════════
# FlowTemplate / FlowStage
# ═════════════════════════════════════════════════════════════════════════════


class FlowTemplate(db.Model):
    """Reusable process definition authored by designers."""

    __tablename__ = "flow_templates"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")
    business_objective = db.Column(db.Text, default="")
    owner_id = db.Column(db.String(36), db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    typical_duration_days = db.Column(db.Integer, default=0)
    last_updated = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    owner = db.relationship("User")
    stages = db.relationship(
        "FlowStage", back_populates="template",
        cascade="all, delete-orphan", order_by="FlowStage.position",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "business_objective": self.business_objective,
            "owner_id": self.owner_id,
            "typical_duration_days": self.typical_duration_days or 0,
            "last_updated": iso(self.last_updated),
            "stages": [s.to_dict() for s in self.stages],
        }

    def __repr__(self):
        return f"<FlowTemplate {self.id}: {self.name[:40]}>"


class FlowStage(db.Model):
    """
    A stage of a template. Ordering (position) defines display and duration
    sequence, not a hard execution dependency.
    """

    __tablename__ = "flow_stages"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    template_id = db.Column(
        db.String(36), db.ForeignKey("flow_templates.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    position = db.Column(db.Integer, nullable=False, default=0)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")
    expected_duration_days = db.Column(db.Integer, nullable=False)
    owner_role = db.Column(db.String(20), nullable=False, comment="RoleKey")
    exit_criteria = db.Column(db.Text, default="")

    template = db.relationship("FlowTemplate", back_populates="stages")

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "expected_duration_days": self.expected_duration_days,
            "owner_role": self.owner_role,
            "exit_criteria": self.exit_criteria,
        }


# ═════════════════════════════════════════════════════════════════════════════
# FlowInstance / StageStatus
# ═════════════════════════════════════════════════════════════════════════════


class FlowInstance(db.Model):
    """Running execution of a template against a unit and a schedule."""

    __tablename__ = "flow_instances"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    template_id = db.Column(
        db.String(36), db.ForeignKey("flow_templates.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    owner_unit_id = db.Column(
        db.String(36), db.ForeignKey("units.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    name = db.Column(db.String(200), nullable=False)
    kickoff_date = db.Column(db.DateTime(timezone=True), nullable=False)
    due_date = db.Column(db.DateTime(timezone=True), nullable=False)
    progress = db.Column(db.Integer, default=0, nullable=False)
    health = db.Column(db.String(20), default=FlowHealth.ON_TRACK.value, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    template = db.relationship("FlowTemplate")
    owner_unit = db.relationship("Unit")
    stage_statuses = db.relationship(
        "StageStatus", back_populates="instance",
        cascade="all, delete-orphan", order_by="StageStatus.position",
    )
    # "all" (not delete-orphan): free-standing tasks legitimately have no instance
    tasks = db.relationship("Task", back_populates="flow_instance", cascade="all")

    def to_dict(self):
        return {
            "id": self.id,
            "template_id": self.template_id,
            "template": {"id": self.template.id, "name": self.template.name} if self.template else None,
            "owner_unit_id": self.owner_unit_id,
            "owner_unit": (
                {"id": self.owner_unit.id, "name": self.owner_unit.name} if self.owner_unit else None
            ),
            "name": self.name,
            "kickoff_date": iso(self.kickoff_date),
            "due_date": iso(self.due_date),
            "progress": self.progress,
            "health": self.health,
            "stage_statuses": [s.to_dict() for s in self.stage_statuses],
        }

    def __repr__(self):
        return f"<FlowInstance {self.id}: {self.name[:40]} {self.progress}% {self.health}>"


class StageStatus(db.Model):
    """Live state of one template stage inside one FlowInstance."""

    __tablename__ = "stage_statuses"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    instance_id = db.Column(
        db.String(36), db.ForeignKey("flow_instances.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    stage_id = db.Column(db.String(36), nullable=False, comment="FlowStage.id at instantiation")
    position = db.Column(db.Integer, nullable=False, default=0)

    # Snapshot of the stage definition
    stage_name = db.Column(db.String(200), nullable=False)
    stage_description = db.Column(db.Text, default="")
    stage_owner_role = db.Column(db.String(20), nullable=False)

    status = db.Column(db.String(20), default="pending", nullable=False)
    progress = db.Column(db.Integer, default=0, nullable=False)
    owner_id = db.Column(db.String(36), db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    instance = db.relationship("FlowInstance", back_populates="stage_statuses")
    owner = db.relationship("User")
    tasks = db.relationship("Task", back_populates="stage_status", passive_deletes=True)

    def to_dict(self):
        return {
            "id": self.id,
            "status": self.status,
            "progress": self.progress,
            "owner": {"id": self.owner.id, "full_name": self.owner.full_name} if self.owner else None,
            "stage": {
                "id": self.stage_id,
                "name": self.stage_name,
                "description": self.stage_description,
                "owner_role": self.stage_owner_role,
            },
        }
