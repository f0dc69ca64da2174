"""
Flow Orchestrator tests.

Covers:
  - template validation and role checks
  - update_template keeps stage ids and leaves instances untouched
  - delete_template blocked while referenced
  - instantiate: referential / date-range / completeness failures with zero
    side effects, and the Onboarding scenarios
  - stage / instance aggregate rules (pure helpers + recompute)
  - delete_instance cascade, assign_stage_owner
"""

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from app.core.exceptions import (
    IncompleteInput,
    IncompleteInstantiation,
    InvalidDateRange,
    PermissionDenied,
    ReferentialError,
    StateConflict,
    TemplateInUse,
    ValidationError,
)
from app.models.flow import FlowHealth, FlowInstance, FlowTemplate, StageStatus
from app.models.task import Task, TaskStatus
from app.services import flow_orchestrator as fo
from app.services import task_lifecycle as tl

KICKOFF = datetime(2024, 1, 1, tzinfo=timezone.utc)


# ═══════════════════════════════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════════════════════════════


def _onboarding(ctx):
    return fo.create_template({
        "name": "Onboarding",
        "description": "New hire onboarding",
        "stages": [
            {"name": "Setup", "owner_role": "DESIGNER", "expected_duration_days": 2},
            {"name": "Review", "owner_role": "ADMIN", "expected_duration_days": 1},
        ],
    }, ctx)


def _instance_data(template, unit, setup_owner, review_owner, **overrides):
    setup, review = template.stages
    data = {
        "template_id": template.id,
        "owner_unit_id": unit.id,
        "name": "Onboarding - Jan",
        "kickoff_date": "2024-01-01",
        "due_date": "2024-01-10",
        "stage_tasks": [
            {"stage_id": setup.id, "tasks": [
                {"title": "Prepare docs", "owner_id": setup_owner.id, "due_in_days": 1},
            ]},
            {"stage_id": review.id, "tasks": [
                {"title": "Sign-off", "owner_id": review_owner.id, "due_in_days": 3},
            ]},
        ],
    }
    data.update(overrides)
    return data


def _t(status="pending", progress=0, deadline=None):
    return SimpleNamespace(
        status=status,
        progress=progress,
        is_overdue=lambda now: status != "completed" and deadline is not None and deadline < now,
    )


# ═══════════════════════════════════════════════════════════════════════════
# Templates
# ═══════════════════════════════════════════════════════════════════════════


class TestTemplates:
    def test_create_assigns_ids_and_default_duration(self, designer_ctx):
        template = _onboarding(designer_ctx)
        assert [s.name for s in template.stages] == ["Setup", "Review"]
        assert all(s.id for s in template.stages)
        assert template.typical_duration_days == 3
        assert template.owner_id == designer_ctx.user_id

    def test_functionary_cannot_author(self, functionary_ctx):
        with pytest.raises(PermissionDenied):
            _onboarding(functionary_ctx)
        assert FlowTemplate.query.count() == 0

    @pytest.mark.parametrize("stages", [
        [],
        [{"name": "", "owner_role": "ADMIN", "expected_duration_days": 1}],
        [{"name": "Setup", "owner_role": "JANITOR", "expected_duration_days": 1}],
        [{"name": "Setup", "owner_role": "ADMIN", "expected_duration_days": 0}],
        [{"name": "Setup", "owner_role": "ADMIN"}],
    ])
    def test_invalid_stages(self, designer_ctx, stages):
        with pytest.raises(ValidationError):
            fo.create_template({"name": "Broken", "stages": stages}, designer_ctx)

    def test_name_required(self, designer_ctx):
        with pytest.raises(ValidationError):
            fo.create_template({"name": " ", "stages": [
                {"name": "Setup", "owner_role": "ADMIN", "expected_duration_days": 1},
            ]}, designer_ctx)

    def test_update_keeps_existing_stage_ids(self, designer_ctx):
        template = _onboarding(designer_ctx)
        setup_id = template.stages[0].id
        fo.update_template(template.id, {"stages": [
            {"id": setup_id, "name": "Setup v2", "owner_role": "designer", "expected_duration_days": 4},
            {"name": "Handover", "owner_role": "FUNCTIONARY", "expected_duration_days": 2},
        ]}, designer_ctx)
        assert [s.name for s in template.stages] == ["Setup v2", "Handover"]
        assert template.stages[0].id == setup_id
        assert template.typical_duration_days == 6

    def test_update_does_not_touch_instances(self, designer_ctx, unit, functionary, admin):
        template = _onboarding(designer_ctx)
        instance = fo.instantiate(_instance_data(template, unit, functionary, admin), designer_ctx)
        fo.update_template(template.id, {"stages": [
            {"name": "Only stage", "owner_role": "ADMIN", "expected_duration_days": 1},
        ]}, designer_ctx)
        assert [s.stage_name for s in instance.stage_statuses] == ["Setup", "Review"]

    def test_delete_blocked_while_referenced(self, designer_ctx, unit, functionary, admin):
        template = _onboarding(designer_ctx)
        instance = fo.instantiate(_instance_data(template, unit, functionary, admin), designer_ctx)
        with pytest.raises(TemplateInUse) as exc:
            fo.delete_template(template.id, designer_ctx)
        assert isinstance(exc.value, StateConflict)
        assert exc.value.instance_count == 1

        fo.delete_instance(instance.id, designer_ctx)
        fo.delete_template(template.id, designer_ctx)
        assert FlowTemplate.query.count() == 0


# ═══════════════════════════════════════════════════════════════════════════
# Instantiation
# ═══════════════════════════════════════════════════════════════════════════


class TestInstantiate:
    def test_onboarding_scenario(self, designer_ctx, unit, functionary, admin):
        template = _onboarding(designer_ctx)
        instance = fo.instantiate(
            _instance_data(template, unit, functionary, admin), designer_ctx, now=KICKOFF,
        )
        assert FlowInstance.query.count() == 1
        assert instance.progress == 0
        assert instance.health == "on_track"
        assert [s.status for s in instance.stage_statuses] == ["pending", "pending"]
        assert all(s.owner_id is None for s in instance.stage_statuses)

        tasks = {t.title: t for t in Task.query.all()}
        assert set(tasks) == {"Prepare docs", "Sign-off"}
        prep = tasks["Prepare docs"]
        assert prep.flow_instance_id == instance.id
        assert prep.stage_status_id == instance.stage_statuses[0].id
        assert prep.assigner_id == designer_ctx.user_id
        assert prep.priority == "medium"
        assert len(prep.description) >= 10
        assert prep.deadline.date() == (KICKOFF + timedelta(days=1)).date()
        assert tasks["Sign-off"].deadline.date() == (KICKOFF + timedelta(days=3)).date()

    def test_completing_task_propagates(self, designer_ctx, unit, functionary, admin):
        template = _onboarding(designer_ctx)
        instance = fo.instantiate(_instance_data(template, unit, functionary, admin), designer_ctx)
        prep = Task.query.filter_by(title="Prepare docs").one()

        tl.change_status(prep.id, "completed", designer_ctx)

        setup, review = instance.stage_statuses
        assert prep.progress == 100
        assert setup.progress == 100
        assert setup.status == "completed"
        assert review.status == "pending"
        assert instance.progress == 50

    def test_due_in_days_defaults_to_stage_duration(self, designer_ctx, unit, functionary, admin):
        template = _onboarding(designer_ctx)
        data = _instance_data(template, unit, functionary, admin)
        del data["stage_tasks"][0]["tasks"][0]["due_in_days"]
        fo.instantiate(data, designer_ctx)
        prep = Task.query.filter_by(title="Prepare docs").one()
        assert prep.deadline.date() == (KICKOFF + timedelta(days=2)).date()

    def test_stage_without_tasks_has_no_side_effects(self, designer_ctx, unit, functionary, admin):
        template = _onboarding(designer_ctx)
        data = _instance_data(template, unit, functionary, admin)
        data["stage_tasks"] = data["stage_tasks"][:1]
        with pytest.raises(IncompleteInstantiation) as exc:
            fo.instantiate(data, designer_ctx)
        assert isinstance(exc.value, IncompleteInput)
        assert exc.value.details["stages_without_tasks"] == ["Review"]
        assert FlowInstance.query.count() == 0
        assert StageStatus.query.count() == 0
        assert Task.query.count() == 0

    def test_unowned_task_rejected(self, designer_ctx, unit, functionary, admin):
        template = _onboarding(designer_ctx)
        data = _instance_data(template, unit, functionary, admin)
        data["stage_tasks"][1]["tasks"][0].pop("owner_id")
        with pytest.raises(IncompleteInstantiation):
            fo.instantiate(data, designer_ctx)
        assert Task.query.count() == 0

    def test_unknown_owner_rejected(self, designer_ctx, unit, functionary, admin):
        template = _onboarding(designer_ctx)
        data = _instance_data(template, unit, functionary, admin)
        data["stage_tasks"][1]["tasks"][0]["owner_id"] = "ghost"
        with pytest.raises(IncompleteInstantiation):
            fo.instantiate(data, designer_ctx)

    def test_kickoff_after_due(self, designer_ctx, unit, functionary, admin):
        template = _onboarding(designer_ctx)
        data = _instance_data(template, unit, functionary, admin, kickoff_date="2024-02-01")
        with pytest.raises(InvalidDateRange):
            fo.instantiate(data, designer_ctx)
        assert FlowInstance.query.count() == 0

    def test_kickoff_equal_to_due_is_allowed(self, designer_ctx, unit, functionary, admin):
        template = _onboarding(designer_ctx)
        data = _instance_data(template, unit, functionary, admin, due_date="2024-01-01")
        assert fo.instantiate(data, designer_ctx).id

    def test_unknown_template_and_unit(self, designer_ctx, unit, functionary, admin):
        template = _onboarding(designer_ctx)
        with pytest.raises(ReferentialError):
            fo.instantiate(_instance_data(template, unit, functionary, admin, template_id="nope"), designer_ctx)
        with pytest.raises(ReferentialError):
            fo.instantiate(_instance_data(template, unit, functionary, admin, owner_unit_id="nope"), designer_ctx)

    def test_unknown_stage_id(self, designer_ctx, unit, functionary, admin):
        template = _onboarding(designer_ctx)
        data = _instance_data(template, unit, functionary, admin)
        data["stage_tasks"].append({"stage_id": "elsewhere", "tasks": [{"title": "x", "owner_id": admin.id}]})
        with pytest.raises(ReferentialError):
            fo.instantiate(data, designer_ctx)

    def test_bad_descriptor_aborts_everything(self, designer_ctx, unit, functionary, admin):
        template = _onboarding(designer_ctx)
        data = _instance_data(template, unit, functionary, admin)
        data["stage_tasks"][1]["tasks"][0]["description"] = "short"
        with pytest.raises(ValidationError):
            fo.instantiate(data, designer_ctx)
        assert FlowInstance.query.count() == 0
        assert Task.query.count() == 0

    @pytest.mark.parametrize("due_in_days", ["soon", -30, 2.5])
    def test_bad_due_in_days(self, designer_ctx, unit, functionary, admin, due_in_days):
        template = _onboarding(designer_ctx)
        data = _instance_data(template, unit, functionary, admin)
        data["stage_tasks"][1]["tasks"][0]["due_in_days"] = due_in_days
        with pytest.raises(ValidationError):
            fo.instantiate(data, designer_ctx)
        assert FlowInstance.query.count() == 0
        assert Task.query.count() == 0

    def test_due_in_days_zero_is_kickoff(self, designer_ctx, unit, functionary, admin):
        template = _onboarding(designer_ctx)
        data = _instance_data(template, unit, functionary, admin)
        data["stage_tasks"][0]["tasks"][0]["due_in_days"] = 0
        fo.instantiate(data, designer_ctx)
        assert Task.query.filter_by(title="Prepare docs").one().deadline.date() == KICKOFF.date()

    def test_functionary_cannot_instantiate(self, designer_ctx, functionary_ctx, unit, functionary, admin):
        template = _onboarding(designer_ctx)
        with pytest.raises(PermissionDenied):
            fo.instantiate(_instance_data(template, unit, functionary, admin), functionary_ctx)


# ═══════════════════════════════════════════════════════════════════════════
# Aggregates
# ═══════════════════════════════════════════════════════════════════════════


class TestStageAggregate:
    def test_empty_stage(self):
        assert fo.stage_aggregate([]) == (0, TaskStatus.PENDING)

    def test_all_completed(self):
        assert fo.stage_aggregate([_t("completed", 100), _t("completed", 100)]) == (100, TaskStatus.COMPLETED)

    def test_blocked_wins_over_progress(self):
        progress, status = fo.stage_aggregate([_t("in_progress", 60), _t("blocked", 10)])
        assert status is TaskStatus.BLOCKED
        assert progress == 35

    def test_in_progress_when_any_progress(self):
        assert fo.stage_aggregate([_t("pending", 0), _t("pending", 20)])[1] is TaskStatus.IN_PROGRESS

    def test_pending_when_no_progress(self):
        assert fo.stage_aggregate([_t("in_progress", 0), _t("returned", 0)])[1] is TaskStatus.PENDING

    def test_half_up_rounding(self):
        assert fo.stage_aggregate([_t(progress=0), _t(progress=1)])[0] == 1
        assert fo.stage_aggregate([_t(progress=33), _t(progress=34)])[0] == 34


class TestInstanceHealth:
    now = datetime(2024, 6, 1, tzinfo=timezone.utc)

    def test_delayed_when_due_passed(self):
        due = self.now - timedelta(days=1)
        assert fo.instance_health(due, 80, [], self.now) is FlowHealth.DELAYED
        assert fo.instance_health(due, 100, [], self.now) is FlowHealth.ON_TRACK

    def test_at_risk_when_blocked_or_overdue(self):
        due = self.now + timedelta(days=10)
        assert fo.instance_health(due, 10, [_t("blocked")], self.now) is FlowHealth.AT_RISK
        overdue = _t("in_progress", 10, deadline=self.now - timedelta(hours=1))
        assert fo.instance_health(due, 10, [overdue], self.now) is FlowHealth.AT_RISK

    def test_on_track(self):
        due = self.now + timedelta(days=10)
        assert fo.instance_health(due, 10, [_t("in_progress", 10)], self.now) is FlowHealth.ON_TRACK


class TestRecompute:
    def test_idempotent(self, designer_ctx, unit, functionary, admin):
        template = _onboarding(designer_ctx)
        instance = fo.instantiate(_instance_data(template, unit, functionary, admin), designer_ctx)
        prep = Task.query.filter_by(title="Prepare docs").one()
        tl.update_progress(prep.id, 45, designer_ctx)

        first = (instance.progress, instance.health, [(s.progress, s.status) for s in instance.stage_statuses])
        fo.recompute_aggregates(instance)
        fo.recompute_aggregates(instance)
        second = (instance.progress, instance.health, [(s.progress, s.status) for s in instance.stage_statuses])
        assert first == second
        assert instance.progress == 23  # mean(45, 0) = 22.5 → 23

    def test_blocked_task_marks_stage_and_health(self, designer_ctx, unit, functionary, admin):
        template = _onboarding(designer_ctx)
        data = _instance_data(template, unit, functionary, admin, kickoff_date="2030-01-01", due_date="2030-02-01")
        instance = fo.instantiate(data, designer_ctx)
        sign_off = Task.query.filter_by(title="Sign-off").one()
        tl.change_status(sign_off.id, "blocked", designer_ctx)
        assert instance.stage_statuses[1].status == "blocked"
        assert instance.health == "at_risk"

    def test_import_moving_task_recomputes_both_instances(self, designer_ctx, unit, functionary, admin):
        template = _onboarding(designer_ctx)
        first = fo.instantiate(_instance_data(template, unit, functionary, admin, name="First"), designer_ctx)
        second = fo.instantiate(_instance_data(template, unit, functionary, admin, name="Second"), designer_ctx)
        prep = Task.query.filter_by(flow_instance_id=first.id, title="Prepare docs").one()
        tl.change_status(prep.id, "completed", designer_ctx)
        assert first.progress == 50

        tl.import_task_record({
            "id": prep.id, "title": prep.title, "description": prep.description,
            "status": "completed", "ownerId": functionary.id,
            "flowInstanceId": second.id, "stageStatusId": second.stage_statuses[0].id,
        }, designer_ctx)

        assert first.progress == 0
        assert first.stage_statuses[0].status == "pending"
        assert second.stage_statuses[0].progress == 50
        assert second.progress == 25


# ═══════════════════════════════════════════════════════════════════════════
# Delete / stage owner / listing
# ═══════════════════════════════════════════════════════════════════════════


class TestInstanceAdmin:
    def test_delete_instance_cascades(self, designer_ctx, functionary_ctx, unit, functionary, admin):
        template = _onboarding(designer_ctx)
        instance = fo.instantiate(_instance_data(template, unit, functionary, admin), designer_ctx)
        prep = Task.query.filter_by(title="Prepare docs").one()
        tl.report_problem(prep.id, "Docs template missing", functionary_ctx)
        assert functionary.workload == 1

        fo.delete_instance(instance.id, designer_ctx)
        assert FlowInstance.query.count() == 0
        assert StageStatus.query.count() == 0
        assert Task.query.count() == 0
        assert functionary.workload == 0

    def test_flow_task_cannot_be_deleted_alone(self, designer_ctx, unit, functionary, admin):
        template = _onboarding(designer_ctx)
        fo.instantiate(_instance_data(template, unit, functionary, admin), designer_ctx)
        prep = Task.query.filter_by(title="Prepare docs").one()
        with pytest.raises(StateConflict):
            tl.delete_task(prep.id, designer_ctx)

    def test_assign_stage_owner(self, designer_ctx, unit, functionary, admin):
        template = _onboarding(designer_ctx)
        instance = fo.instantiate(_instance_data(template, unit, functionary, admin), designer_ctx)
        stage_status = instance.stage_statuses[0]
        fo.assign_stage_owner(stage_status.id, functionary.id, designer_ctx)
        assert stage_status.owner_id == functionary.id
        with pytest.raises(ReferentialError):
            fo.assign_stage_owner(stage_status.id, "ghost", designer_ctx)
        fo.assign_stage_owner(stage_status.id, None, designer_ctx)
        assert stage_status.owner_id is None

    def test_list_instances_by_unit(self, designer_ctx, unit, functionary, admin):
        template = _onboarding(designer_ctx)
        instance = fo.instantiate(_instance_data(template, unit, functionary, admin), designer_ctx)
        assert [i.id for i in fo.list_instances(unit_id=unit.id)] == [instance.id]
        assert fo.list_instances(unit_id="other") == []
        assert [t.name for t in fo.list_templates()] == ["Onboarding"]
