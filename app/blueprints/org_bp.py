"""
Process Console
Organization blueprint: roles, units, users and the acting user's profile.

Endpoints:
    ROLES    /api/v1/roles                  GET
    UNITS    /api/v1/units                  GET, POST
             /api/v1/units/<id>             GET, PUT
    USERS    /api/v1/users                  GET (?unit_id=), POST (admin)
             /api/v1/users/register         POST (self-registration, no actor)
             /api/v1/users/<id>             GET, PUT (admin)
    PROFILE  /api/v1/users/profile          GET, PUT

Mutations require the X-User-Id header; role checks live in the service.
"""

import logging

from flask import Blueprint, jsonify, request

from app.blueprints import json_body, session_context
from app.services import organization_service as org
from app.utils.errors import register_domain_error_handlers

logger = logging.getLogger(__name__)

org_bp = Blueprint("org", __name__, url_prefix="/api/v1")
register_domain_error_handlers(org_bp)


# ── Roles ────────────────────────────────────────────────────────────────────


@org_bp.route("/roles", methods=["GET"])
def list_roles():
    return jsonify([r.to_dict() for r in org.list_roles()])


# ── Units ────────────────────────────────────────────────────────────────────


@org_bp.route("/units", methods=["GET"])
def list_units():
    return jsonify([u.to_dict() for u in org.list_units()])


@org_bp.route("/units/<unit_id>", methods=["GET"])
def get_unit(unit_id):
    return jsonify(org.get_unit(unit_id).to_dict())


@org_bp.route("/units", methods=["POST"])
def create_unit():
    ctx, err = session_context()
    if err:
        return err
    unit = org.create_unit(json_body(), ctx)
    return jsonify(unit.to_dict()), 201


@org_bp.route("/units/<unit_id>", methods=["PUT"])
def update_unit(unit_id):
    ctx, err = session_context()
    if err:
        return err
    return jsonify(org.update_unit(unit_id, json_body(), ctx).to_dict())


# ── Users ────────────────────────────────────────────────────────────────────


@org_bp.route("/users", methods=["GET"])
def list_users():
    users = org.list_users(unit_id=request.args.get("unit_id"))
    return jsonify([u.to_dict() for u in users])


@org_bp.route("/users", methods=["POST"])
def create_user():
    ctx, err = session_context()
    if err:
        return err
    user = org.create_user(json_body(), ctx)
    return jsonify(user.to_dict()), 201


@org_bp.route("/users/register", methods=["POST"])
def register_user():
    user = org.create_user(json_body())
    return jsonify(user.to_dict()), 201


@org_bp.route("/users/profile", methods=["GET"])
def get_profile():
    ctx, err = session_context()
    if err:
        return err
    return jsonify(org.get_user(ctx.user_id).to_dict())


@org_bp.route("/users/profile", methods=["PUT"])
def update_profile():
    ctx, err = session_context()
    if err:
        return err
    return jsonify(org.update_profile(ctx, json_body()).to_dict())


@org_bp.route("/users/<user_id>", methods=["GET"])
def get_user(user_id):
    return jsonify(org.get_user(user_id).to_dict())


@org_bp.route("/users/<user_id>", methods=["PUT"])
def update_user(user_id):
    ctx, err = session_context()
    if err:
        return err
    return jsonify(org.update_user(user_id, json_body(), ctx).to_dict())
