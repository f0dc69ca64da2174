"""
Process Console
Flow blueprint: templates, instances and stage ownership.

Endpoints:
    TEMPLATE  /api/v1/flows/templates                    GET, POST
              /api/v1/flows/templates/<id>               GET, PUT, DELETE
    INSTANCE  /api/v1/flows/instances                    GET (?unit_id=), POST
              /api/v1/flows/instances/<id>               GET, DELETE
    STAGE     /api/v1/flows/stage-statuses/<id>/owner    PUT {owner_id}
"""

import logging

from flask import Blueprint, jsonify, request

from app.blueprints import json_body, session_context
from app.services import flow_orchestrator as flows
from app.utils.errors import register_domain_error_handlers

logger = logging.getLogger(__name__)

flow_bp = Blueprint("flows", __name__, url_prefix="/api/v1/flows")
register_domain_error_handlers(flow_bp)


# ── Templates ────────────────────────────────────────────────────────────────


@flow_bp.route("/templates", methods=["GET"])
def list_templates():
    return jsonify([t.to_dict() for t in flows.list_templates()])


@flow_bp.route("/templates", methods=["POST"])
def create_template():
    ctx, err = session_context()
    if err:
        return err
    template = flows.create_template(json_body(), ctx)
    return jsonify(template.to_dict()), 201


@flow_bp.route("/templates/<template_id>", methods=["GET"])
def get_template(template_id):
    return jsonify(flows.get_template(template_id).to_dict())


@flow_bp.route("/templates/<template_id>", methods=["PUT"])
def update_template(template_id):
    ctx, err = session_context()
    if err:
        return err
    return jsonify(flows.update_template(template_id, json_body(), ctx).to_dict())


@flow_bp.route("/templates/<template_id>", methods=["DELETE"])
def delete_template(template_id):
    ctx, err = session_context()
    if err:
        return err
    flows.delete_template(template_id, ctx)
    return jsonify({"deleted": True})


# ── Instances ────────────────────────────────────────────────────────────────


@flow_bp.route("/instances", methods=["GET"])
def list_instances():
    instances = flows.list_instances(unit_id=request.args.get("unit_id"))
    return jsonify([i.to_dict() for i in instances])


@flow_bp.route("/instances", methods=["POST"])
def instantiate():
    ctx, err = session_context()
    if err:
        return err
    instance = flows.instantiate(json_body(), ctx)
    return jsonify(instance.to_dict()), 201


@flow_bp.route("/instances/<instance_id>", methods=["GET"])
def get_instance(instance_id):
    instance = flows.get_instance(instance_id)
    d = instance.to_dict()
    d["tasks"] = [t.to_dict(include_children=False) for t in instance.tasks]
    return jsonify(d)


@flow_bp.route("/instances/<instance_id>", methods=["DELETE"])
def delete_instance(instance_id):
    ctx, err = session_context()
    if err:
        return err
    flows.delete_instance(instance_id, ctx)
    return jsonify({"deleted": True})


# ── Stage ownership ──────────────────────────────────────────────────────────


@flow_bp.route("/stage-statuses/<stage_status_id>/owner", methods=["PUT"])
def assign_stage_owner(stage_status_id):
    ctx, err = session_context()
    if err:
        return err
    stage_status = flows.assign_stage_owner(stage_status_id, json_body().get("owner_id"), ctx)
    return jsonify(stage_status.to_dict())
