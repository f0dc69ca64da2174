"""
Task Lifecycle Engine tests: service layer, called directly.

Covers:
  - create_task validation (description length, owner existence, flow refs)
  - change_status: literals, case-insensitivity, completed ⇒ 100, terminal completed
  - update_progress range checks
  - update_task: reassignment history, reopening a completed task
  - report_problem / resolve_problem
  - sub-tasks, delete, import, workload counter
"""

from datetime import datetime, timedelta, timezone

import pytest

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
from app.models import db
from app.models.derived import Severity
from app.models.task import Task, TaskProblem
from app.services import task_lifecycle as tl


# ═══════════════════════════════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════════════════════════════


def _task_data(owner, **overrides):
    data = {
        "title": "Prepare onboarding pack",
        "description": "Collect forms and badges for new hires",
        "owner_id": owner.id,
        "priority": "HIGH",
        "deadline": (datetime.now(timezone.utc) + timedelta(days=5)).isoformat(),
    }
    data.update(overrides)
    return data


def _make_task(owner, ctx, **overrides):
    return tl.create_task(_task_data(owner, **overrides), ctx)


# ═══════════════════════════════════════════════════════════════════════════
# create_task
# ═══════════════════════════════════════════════════════════════════════════


class TestCreateTask:
    def test_defaults(self, functionary, admin_ctx):
        task = _make_task(functionary, admin_ctx)
        assert task.status == "pending"
        assert task.progress == 0
        assert task.priority == "high"
        assert task.assigner_id == admin_ctx.user_id
        assert task.history == []
        assert task.problems == []

    def test_short_description_rejected(self, functionary, admin_ctx):
        with pytest.raises(ValidationError):
            _make_task(functionary, admin_ctx, description="too short")
        assert Task.query.count() == 0

    def test_unknown_owner_is_referential_error(self, functionary, admin_ctx):
        with pytest.raises(ReferentialError):
            _make_task(functionary, admin_ctx, owner_id="ghost")

    @pytest.mark.parametrize("missing", ["title", "priority", "deadline", "owner_id"])
    def test_required_fields(self, functionary, admin_ctx, missing):
        data = _task_data(functionary)
        data.pop(missing)
        with pytest.raises(ValidationError):
            tl.create_task(data, admin_ctx)

    def test_bad_priority(self, functionary, admin_ctx):
        with pytest.raises(ValidationError):
            _make_task(functionary, admin_ctx, priority="urgent")

    def test_stage_status_without_instance_rejected(self, functionary, admin_ctx):
        with pytest.raises(ReferentialError):
            _make_task(functionary, admin_ctx, stage_status_id="ss-1")

    @pytest.mark.parametrize("days", ["soon", -3, 1.5, True])
    def test_bad_duration_days(self, functionary, admin_ctx, days):
        with pytest.raises(ValidationError):
            _make_task(functionary, admin_ctx, duration_days=days)
        assert Task.query.count() == 0

    def test_duration_days_accepts_whole_numbers(self, functionary, admin_ctx):
        assert _make_task(functionary, admin_ctx, duration_days="3").duration_days == 3
        assert _make_task(functionary, admin_ctx, duration_days=2.0).duration_days == 2

    def test_owner_workload_counter(self, functionary, admin_ctx):
        _make_task(functionary, admin_ctx)
        _make_task(functionary, admin_ctx)
        assert functionary.workload == 2


# ═══════════════════════════════════════════════════════════════════════════
# change_status / update_progress
# ═══════════════════════════════════════════════════════════════════════════


class TestChangeStatus:
    def test_case_insensitive_literal(self, functionary, functionary_ctx, admin_ctx):
        task = _make_task(functionary, admin_ctx)
        tl.change_status(task.id, "IN_PROGRESS", functionary_ctx)
        assert task.status == "in_progress"

    def test_invalid_literal(self, functionary, functionary_ctx, admin_ctx):
        task = _make_task(functionary, admin_ctx)
        with pytest.raises(InvalidStatus):
            tl.change_status(task.id, "archived", functionary_ctx)
        assert task.status == "pending"
        assert task.history == []

    def test_completed_forces_progress_100(self, functionary, functionary_ctx, admin_ctx):
        task = _make_task(functionary, admin_ctx)
        tl.change_status(task.id, "in_progress", functionary_ctx, progress=30)
        assert task.progress == 30
        tl.change_status(task.id, "completed", functionary_ctx, progress=10)
        assert task.status == "completed"
        assert task.progress == 100

    def test_history_attributed_to_actor(self, functionary, functionary_ctx, admin_ctx):
        task = _make_task(functionary, admin_ctx)
        tl.change_status(task.id, "in_progress", functionary_ctx)
        tl.change_status(task.id, "blocked", functionary_ctx, notes="waiting on IT")
        assert len(task.history) == 2
        last = task.history[-1]
        assert last.performed_by == functionary.id
        assert last.performed_by_name == functionary.full_name
        assert "in_progress" in last.action and "blocked" in last.action
        assert last.notes == "waiting on IT"

    def test_completed_is_terminal(self, functionary, functionary_ctx, admin_ctx):
        task = _make_task(functionary, admin_ctx)
        tl.change_status(task.id, "completed", functionary_ctx)
        with pytest.raises(InvalidTransition) as exc:
            tl.change_status(task.id, "in_progress", functionary_ctx)
        assert isinstance(exc.value, StateConflict)
        assert task.status == "completed"
        assert task.progress == 100

    def test_progress_out_of_range(self, functionary, functionary_ctx, admin_ctx):
        task = _make_task(functionary, admin_ctx)
        with pytest.raises(OutOfRange):
            tl.change_status(task.id, "in_progress", functionary_ctx, progress=101)
        assert task.status == "pending"

    def test_unknown_task(self, functionary_ctx):
        with pytest.raises(NotFoundError):
            tl.change_status("nope", "completed", functionary_ctx)

    def test_completing_reduces_workload(self, functionary, functionary_ctx, admin_ctx):
        task = _make_task(functionary, admin_ctx)
        assert functionary.workload == 1
        tl.change_status(task.id, "completed", functionary_ctx)
        assert functionary.workload == 0


class TestUpdateProgress:
    @pytest.mark.parametrize("value", [-1, 101, 250])
    def test_out_of_range(self, functionary, functionary_ctx, admin_ctx, value):
        task = _make_task(functionary, admin_ctx)
        with pytest.raises(OutOfRange):
            tl.update_progress(task.id, value, functionary_ctx)
        assert task.progress == 0

    def test_half_up_rounding(self, functionary, functionary_ctx, admin_ctx):
        task = _make_task(functionary, admin_ctx)
        tl.update_progress(task.id, 50.5, functionary_ctx)
        assert task.progress == 51

    def test_status_unchanged(self, functionary, functionary_ctx, admin_ctx):
        task = _make_task(functionary, admin_ctx)
        tl.update_progress(task.id, 100, functionary_ctx)
        assert task.progress == 100
        assert task.status == "pending"

    def test_non_numeric(self, functionary, functionary_ctx, admin_ctx):
        task = _make_task(functionary, admin_ctx)
        with pytest.raises(ValidationError):
            tl.update_progress(task.id, "half", functionary_ctx)

    def test_completed_task_stays_at_100(self, functionary, functionary_ctx, admin_ctx):
        task = _make_task(functionary, admin_ctx)
        tl.change_status(task.id, "completed", functionary_ctx)
        with pytest.raises(OutOfRange):
            tl.update_progress(task.id, 50, functionary_ctx)
        assert task.progress == 100


# ═══════════════════════════════════════════════════════════════════════════
# update_task
# ═══════════════════════════════════════════════════════════════════════════


class TestUpdateTask:
    def test_reassignment_appends_history(self, functionary, other_functionary, admin_ctx):
        task = _make_task(functionary, admin_ctx)
        tl.update_task(task.id, {"owner_id": other_functionary.id}, admin_ctx)
        assert task.owner_id == other_functionary.id
        assert [h.action for h in task.history] == ["Reassigned"]
        assert functionary.workload == 0
        assert other_functionary.workload == 1

    def test_reopen_completed_task(self, functionary, functionary_ctx, admin_ctx):
        task = _make_task(functionary, admin_ctx)
        tl.change_status(task.id, "completed", functionary_ctx)
        tl.update_task(task.id, {"status": "in_progress", "progress": 60}, admin_ctx)
        assert task.status == "in_progress"
        assert task.progress == 60

    def test_status_completed_forces_100(self, functionary, admin_ctx):
        task = _make_task(functionary, admin_ctx)
        tl.update_task(task.id, {"status": "COMPLETED"}, admin_ctx)
        assert task.progress == 100

    def test_completed_with_partial_progress_rejected(self, functionary, admin_ctx):
        task = _make_task(functionary, admin_ctx)
        with pytest.raises(OutOfRange):
            tl.update_task(task.id, {"status": "completed", "progress": 80}, admin_ctx)
        assert task.status == "pending"

    def test_list_fields_and_title(self, functionary, admin_ctx):
        task = _make_task(functionary, admin_ctx)
        tl.update_task(task.id, {"title": "Renamed", "tags": ["hr", "q1"]}, admin_ctx)
        assert task.title == "Renamed"
        assert task.tags == ["hr", "q1"]

    def test_empty_title_rejected(self, functionary, admin_ctx):
        task = _make_task(functionary, admin_ctx)
        with pytest.raises(ValidationError):
            tl.update_task(task.id, {"title": "  "}, admin_ctx)


# ═══════════════════════════════════════════════════════════════════════════
# Problems
# ═══════════════════════════════════════════════════════════════════════════


class TestProblems:
    def test_report_returns_warning_notification(self, functionary, functionary_ctx, admin_ctx):
        task = _make_task(functionary, admin_ctx)
        problem, notification = tl.report_problem(task.id, "  Printer is broken  ", functionary_ctx)
        assert problem.status == "open"
        assert problem.description == "Printer is broken"
        assert problem.reporter_id == functionary.id
        assert notification.severity is Severity.WARNING
        assert notification.task_id == task.id

    def test_report_on_blocked_task_is_danger(self, functionary, functionary_ctx, admin_ctx):
        task = _make_task(functionary, admin_ctx)
        tl.change_status(task.id, "blocked", functionary_ctx)
        _, notification = tl.report_problem(task.id, "Still no access", functionary_ctx)
        assert notification.severity is Severity.DANGER

    @pytest.mark.parametrize("description", ["", "    ", "abcd", None])
    def test_short_description(self, functionary, functionary_ctx, admin_ctx, description):
        task = _make_task(functionary, admin_ctx)
        with pytest.raises(InvalidProblem):
            tl.report_problem(task.id, description, functionary_ctx)
        assert TaskProblem.query.count() == 0

    def test_resolve_then_resolve_again(self, functionary, functionary_ctx, admin_ctx):
        task = _make_task(functionary, admin_ctx)
        problem, _ = tl.report_problem(task.id, "VPN keeps dropping", functionary_ctx)
        tl.resolve_problem(problem.id, admin_ctx, resolution="New token issued")
        assert problem.status == "resolved"
        assert problem.resolution == "New token issued"
        resolved_at = problem.resolved_at

        with pytest.raises(AlreadyResolved) as exc:
            tl.resolve_problem(problem.id, admin_ctx, resolution="overwritten?")
        assert isinstance(exc.value, StateConflict)
        db.session.refresh(problem)
        assert problem.resolution == "New token issued"
        assert problem.resolved_at == resolved_at


# ═══════════════════════════════════════════════════════════════════════════
# Sub-tasks / delete / listing
# ═══════════════════════════════════════════════════════════════════════════


class TestSubTasks:
    def test_add_defaults_to_task_owner_and_deadline(self, functionary, admin_ctx):
        task = _make_task(functionary, admin_ctx)
        sub = tl.add_sub_task(task.id, {"title": "Order badge"}, admin_ctx)
        assert sub.assignee_id == functionary.id
        assert sub.status == "pending"
        assert sub.progress == 0
        assert sub.deadline == task.deadline

    def test_complete_sub_task(self, functionary, admin_ctx):
        task = _make_task(functionary, admin_ctx)
        sub = tl.add_sub_task(task.id, {"title": "Order badge"}, admin_ctx)
        tl.update_sub_task(sub.id, {"status": "Completed"}, admin_ctx)
        assert sub.status == "completed"
        assert sub.progress == 100

    def test_invalid_status(self, functionary, admin_ctx):
        task = _make_task(functionary, admin_ctx)
        with pytest.raises(InvalidStatus):
            tl.add_sub_task(task.id, {"title": "Order badge", "status": "later"}, admin_ctx)


class TestDeleteAndList:
    def test_delete_free_standing(self, functionary, functionary_ctx, admin_ctx):
        task = _make_task(functionary, admin_ctx)
        tl.report_problem(task.id, "Missing laptop", functionary_ctx)
        tl.delete_task(task.id, admin_ctx)
        assert Task.query.count() == 0
        assert TaskProblem.query.count() == 0
        assert functionary.workload == 0

    def test_filters(self, functionary, other_functionary, functionary_ctx, admin_ctx):
        a = _make_task(functionary, admin_ctx)
        _make_task(other_functionary, admin_ctx)
        tl.change_status(a.id, "blocked", functionary_ctx)
        assert [t.id for t in tl.list_tasks(owner_id=functionary.id)] == [a.id]
        assert [t.id for t in tl.list_tasks(status="BLOCKED")] == [a.id]
        with pytest.raises(InvalidStatus):
            tl.list_tasks(status="nope")

    def test_alert_tasks(self, functionary, functionary_ctx, admin_ctx):
        overdue = _make_task(functionary, admin_ctx, deadline="2020-01-01")
        blocked = _make_task(functionary, admin_ctx)
        _make_task(functionary, admin_ctx)
        tl.change_status(blocked.id, "blocked", functionary_ctx)
        assert {t.id for t in tl.list_alert_tasks()} == {overdue.id, blocked.id}


# ═══════════════════════════════════════════════════════════════════════════
# import_task_record
# ═══════════════════════════════════════════════════════════════════════════


class TestImport:
    def test_creates_normalized_task(self, functionary, admin_ctx):
        task = tl.import_task_record({
            "id": "ext-1",
            "title": "Legacy task",
            "description": "Imported from spreadsheet",
            "status": "COMPLETED",
            "priority": "LOW",
            "ownerId": functionary.id,
            "deadline": "2024-01-15",
            "history": [{"action": "created"}],
            "problems": [{"id": "p-ext", "description": "old issue", "status": "RESOLVED", "resolution": "ok"}],
        }, admin_ctx)
        assert task.id == "ext-1"
        assert task.status == "completed"
        assert task.progress == 100
        assert task.priority == "low"
        assert task.assigner_id == admin_ctx.user_id
        assert len(task.history) == 1
        assert task.problems[0].resolution == "ok"

    def test_upsert_is_stable(self, functionary, admin_ctx):
        record = {
            "id": "ext-2", "title": "Legacy", "ownerId": functionary.id,
            "history": [{"id": "h-1", "action": "created"}, {"action": "untracked"}],
        }
        tl.import_task_record(record, admin_ctx)
        task = tl.import_task_record({**record, "title": "Legacy v2"}, admin_ctx)
        assert task.title == "Legacy v2"
        assert len(task.history) == 2
        assert Task.query.count() == 1

    def test_numeric_history_ids_are_matched_on_reimport(self, functionary, admin_ctx):
        record = {
            "id": "ext-9", "title": "Legacy", "ownerId": functionary.id,
            "history": [{"id": 5, "action": "created"}, {"id": 6, "action": "started"}],
        }
        tl.import_task_record(record, admin_ctx)
        task = tl.import_task_record(record, admin_ctx)
        assert sorted(h.id for h in task.history) == ["5", "6"]

    def test_junk_numbers_default(self, functionary, admin_ctx):
        task = tl.import_task_record(
            {"id": "ext-4", "ownerId": functionary.id, "durationDays": "n/a", "progress": "?"}, admin_ctx,
        )
        assert (task.duration_days, task.progress) == (0, 0)

    def test_record_without_id(self, admin_ctx):
        with pytest.raises(ValidationError):
            tl.import_task_record({"title": "x"}, admin_ctx)

    def test_unknown_owner(self, admin_ctx):
        with pytest.raises(ReferentialError):
            tl.import_task_record({"id": "ext-3", "ownerId": "ghost"}, admin_ctx)
