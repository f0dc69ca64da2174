"""
Process Console
Task blueprint: task lifecycle, problems, sub-tasks and derived alert views.

Endpoints summary:
    TASK      /api/v1/tasks                         GET, POST
              /api/v1/tasks/<id>                    GET, PATCH, DELETE
              /api/v1/tasks/<id>/status             PATCH   {status, progress?, notes?}
              /api/v1/tasks/<id>/progress           PATCH   {progress}
              /api/v1/tasks/import                  POST    [records] | {records: [...]}

    PROBLEM   /api/v1/tasks/<id>/problems           POST    {description}
              /api/v1/problems/<id>/resolve         POST    {resolution?}

    SUBTASK   /api/v1/tasks/<id>/sub-tasks          POST
              /api/v1/sub-tasks/<id>                PATCH

    DERIVED   /api/v1/tasks/alerts                  GET
              /api/v1/tasks/notifications           GET
              /api/v1/tasks/metrics                 GET
              /api/v1/tasks/workload/summary        GET
"""

import logging

from flask import Blueprint, jsonify, request

from app.blueprints import json_body, session_context
from app.core.exceptions import NotFoundError, ValidationError
from app.models.task import suggested_transitions
from app.services import alerting, task_lifecycle
from app.services.organization_service import list_users
from app.utils.errors import E, api_error, register_domain_error_handlers

logger = logging.getLogger(__name__)

task_bp = Blueprint("tasks", __name__, url_prefix="/api/v1")
register_domain_error_handlers(task_bp)


def _task_payload(task):
    d = task.to_dict()
    d["next_statuses"] = suggested_transitions(task.status)
    return d


# ═══════════════════════════════════════════════════════════════════════════
#  TASK CRUD
# ═══════════════════════════════════════════════════════════════════════════


@task_bp.route("/tasks", methods=["GET"])
def list_tasks():
    tasks = task_lifecycle.list_tasks(
        owner_id=request.args.get("owner_id"),
        assigner_id=request.args.get("assigner_id"),
        status=request.args.get("status"),
        flow_instance_id=request.args.get("flow_instance_id"),
    )
    return jsonify({"items": [t.to_dict(include_children=False) for t in tasks], "total": len(tasks)})


@task_bp.route("/tasks", methods=["POST"])
def create_task():
    ctx, err = session_context()
    if err:
        return err
    task = task_lifecycle.create_task(json_body(), ctx)
    return jsonify(_task_payload(task)), 201


@task_bp.route("/tasks/<task_id>", methods=["GET"])
def get_task(task_id):
    return jsonify(_task_payload(task_lifecycle.get_task(task_id)))


@task_bp.route("/tasks/<task_id>", methods=["PATCH"])
def update_task(task_id):
    ctx, err = session_context()
    if err:
        return err
    task = task_lifecycle.update_task(task_id, json_body(), ctx)
    return jsonify(_task_payload(task))


@task_bp.route("/tasks/<task_id>", methods=["DELETE"])
def delete_task(task_id):
    ctx, err = session_context()
    if err:
        return err
    task_lifecycle.delete_task(task_id, ctx)
    return jsonify({"deleted": True})


@task_bp.route("/tasks/<task_id>/status", methods=["PATCH"])
def change_status(task_id):
    ctx, err = session_context()
    if err:
        return err
    data = json_body()
    if not data.get("status"):
        return api_error(E.VALIDATION_REQUIRED, "status is required")
    task = task_lifecycle.change_status(
        task_id, data["status"], ctx, progress=data.get("progress"), notes=data.get("notes"),
    )
    return jsonify(_task_payload(task))


@task_bp.route("/tasks/<task_id>/progress", methods=["PATCH"])
def update_progress(task_id):
    ctx, err = session_context()
    if err:
        return err
    data = json_body()
    if "progress" not in data:
        return api_error(E.VALIDATION_REQUIRED, "progress is required")
    task = task_lifecycle.update_progress(task_id, data["progress"], ctx)
    return jsonify(_task_payload(task))


@task_bp.route("/tasks/import", methods=["POST"])
def import_tasks():
    """Upsert external task records; each record commits on its own."""
    ctx, err = session_context()
    if err:
        return err
    body = request.get_json(silent=True)
    records = body.get("records") if isinstance(body, dict) else body
    if not isinstance(records, list):
        return api_error(E.VALIDATION_REQUIRED, "a list of task records is required")

    imported, errors = [], []
    for idx, record in enumerate(records):
        try:
            imported.append(task_lifecycle.import_task_record(record, ctx).id)
        except (ValidationError, NotFoundError) as e:
            logger.warning("Import record #%d rejected: %s", idx, e)
            errors.append({"index": idx, "error": str(e)})
    status = 200 if imported or not errors else 422
    return jsonify({"imported": imported, "errors": errors}), status


# ═══════════════════════════════════════════════════════════════════════════
#  PROBLEMS / SUB-TASKS
# ═══════════════════════════════════════════════════════════════════════════


@task_bp.route("/tasks/<task_id>/problems", methods=["POST"])
def report_problem(task_id):
    ctx, err = session_context()
    if err:
        return err
    problem, notification = task_lifecycle.report_problem(task_id, json_body().get("description"), ctx)
    return jsonify({"problem": problem.to_dict(), "notification": notification.to_dict()}), 201


@task_bp.route("/problems/<problem_id>/resolve", methods=["POST"])
def resolve_problem(problem_id):
    ctx, err = session_context()
    if err:
        return err
    problem = task_lifecycle.resolve_problem(problem_id, ctx, resolution=json_body().get("resolution"))
    return jsonify(problem.to_dict())


@task_bp.route("/tasks/<task_id>/sub-tasks", methods=["POST"])
def add_sub_task(task_id):
    ctx, err = session_context()
    if err:
        return err
    sub_task = task_lifecycle.add_sub_task(task_id, json_body(), ctx)
    return jsonify(sub_task.to_dict()), 201


@task_bp.route("/sub-tasks/<sub_task_id>", methods=["PATCH"])
def update_sub_task(sub_task_id):
    ctx, err = session_context()
    if err:
        return err
    return jsonify(task_lifecycle.update_sub_task(sub_task_id, json_body(), ctx).to_dict())


# ═══════════════════════════════════════════════════════════════════════════
#  DERIVED VIEWS
# ═══════════════════════════════════════════════════════════════════════════


@task_bp.route("/tasks/alerts", methods=["GET"])
def alerts():
    tasks = task_lifecycle.list_tasks()
    return jsonify({
        "attention": [t.to_dict(include_children=False) for t in task_lifecycle.list_alert_tasks()],
        "with_problems": [t.to_dict() for t in alerting.problem_tasks(tasks)],
    })


@task_bp.route("/tasks/notifications", methods=["GET"])
def notifications():
    return jsonify([n.to_dict() for n in alerting.derive_notifications(task_lifecycle.list_tasks())])


@task_bp.route("/tasks/metrics", methods=["GET"])
def metrics():
    return jsonify([m.to_dict() for m in alerting.build_metrics(task_lifecycle.list_tasks())])


@task_bp.route("/tasks/workload/summary", methods=["GET"])
def workload_summary():
    summaries = alerting.build_workload(task_lifecycle.list_tasks(), list_users())
    return jsonify([s.to_dict() for s in summaries])
