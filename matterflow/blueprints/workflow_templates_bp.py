"""
Workflow Template Blueprint.

Endpoints:
    GET    /api/v1/workflow-templates
           Query: practice_area (required), sub_type, matter_id
           Returns: applicable released templates, defaults first.

    GET    /api/v1/workflow-templates/<key>?version=
           Returns: one version with stages and task templates (latest
           released active version when ``version`` is omitted).

    GET    /api/v1/workflow-templates/<key>/versions
    POST   /api/v1/workflow-templates                      draft, nested stages allowed
    PATCH  /api/v1/workflow-templates/<id>                 draft fields / is_active
    POST   /api/v1/workflow-templates/<id>/release
    POST   /api/v1/workflow-templates/<id>/versions        Body: {"version": "1.1.0"}
    POST   /api/v1/workflow-templates/<id>/stages
    PATCH  /api/v1/workflow-templates/stages/<stage_id>
    POST   /api/v1/workflow-templates/stages/<stage_id>/task-templates
    PATCH  /api/v1/workflow-templates/task-templates/<task_template_id>

Layer contract:
    - Blueprint: parse input, call template_catalog, return JSON.
    - Immutability and release validation live in the service.
"""

import logging

from flask import Blueprint, jsonify, request

from matterflow.integrations.collaborators import get_collaborators
from matterflow.services import template_catalog as catalog
from matterflow.utils.errors import E, api_error
from matterflow.utils.helpers import get_json_body

logger = logging.getLogger(__name__)

workflow_templates_bp = Blueprint("workflow_templates", __name__, url_prefix="/api/v1/workflow-templates")


# ── Reads ──────────────────────────────────────────────────────────────────────


@workflow_templates_bp.route("", methods=["GET"])
def list_templates():
    practice_area = (request.args.get("practice_area") or "").strip()
    if not practice_area:
        return api_error(E.VALIDATION_REQUIRED, "practice_area is required")
    sub_type = request.args.get("sub_type") or None

    attributes = None
    matter_id = request.args.get("matter_id")
    if matter_id:
        try:
            attributes = get_collaborators().attributes.get_attributes(int(matter_id))
        except ValueError:
            return api_error(E.VALIDATION_INVALID, "matter_id must be an integer")

    items = catalog.list_applicable(practice_area, sub_type, attributes)
    return jsonify({"items": [t.to_dict() for t in items], "total": len(items)})


@workflow_templates_bp.route("/<key>", methods=["GET"])
def get_template(key):
    tpl = catalog.get_template(key, request.args.get("version") or None)
    return jsonify(tpl.to_dict(include_stages=True))


@workflow_templates_bp.route("/<key>/versions", methods=["GET"])
def list_versions(key):
    rows = catalog.list_versions(key)
    return jsonify({"items": [t.to_dict() for t in rows], "total": len(rows)})


# ── Authoring ──────────────────────────────────────────────────────────────────


@workflow_templates_bp.route("", methods=["POST"])
def create_template():
    data = get_json_body()
    missing = [f for f in ("key", "version", "name", "practice_area") if not data.get(f)]
    if missing:
        return api_error(E.VALIDATION_REQUIRED, f"Missing required field(s): {', '.join(missing)}",
                         details={"missing": missing})
    tpl = catalog.create_template(
        data.pop("key"), data.pop("version"), data.pop("name"), data.pop("practice_area"), **data,
    )
    return jsonify(tpl.to_dict(include_stages=True)), 201


@workflow_templates_bp.route("/<int:template_id>", methods=["PATCH"])
def update_template(template_id):
    data = get_json_body()
    if not data:
        return api_error(E.VALIDATION_REQUIRED, "No fields to update")
    has_flag = "is_active" in data
    is_active = data.pop("is_active", None)
    if has_flag and not isinstance(is_active, bool):
        return api_error(E.VALIDATION_INVALID, "is_active must be a boolean")
    tpl = None
    if data:
        tpl = catalog.update_template(template_id, **data)
    if has_flag:
        tpl = catalog.set_template_active(template_id, is_active)
    return jsonify(tpl.to_dict(include_stages=True))


@workflow_templates_bp.route("/<int:template_id>/release", methods=["POST"])
def release_template(template_id):
    tpl = catalog.release_template(template_id)
    return jsonify(tpl.to_dict(include_stages=True))


@workflow_templates_bp.route("/<int:template_id>/versions", methods=["POST"])
def create_version(template_id):
    version = get_json_body().get("version")
    if not version:
        return api_error(E.VALIDATION_REQUIRED, "version is required")
    tpl = catalog.create_new_version(template_id, version)
    return jsonify(tpl.to_dict(include_stages=True)), 201


@workflow_templates_bp.route("/<int:template_id>/stages", methods=["POST"])
def add_stage(template_id):
    data = get_json_body()
    if not data.get("name"):
        return api_error(E.VALIDATION_REQUIRED, "name is required")
    stage = catalog.add_stage(template_id, **data)
    return jsonify(stage.to_dict(include_tasks=True)), 201


@workflow_templates_bp.route("/stages/<int:stage_id>", methods=["PATCH"])
def update_stage(stage_id):
    stage = catalog.update_stage(stage_id, **get_json_body())
    return jsonify(stage.to_dict(include_tasks=True))


@workflow_templates_bp.route("/stages/<int:stage_id>/task-templates", methods=["POST"])
def add_task_template(stage_id):
    data = get_json_body()
    if not data.get("title"):
        return api_error(E.VALIDATION_REQUIRED, "title is required")
    tt = catalog.add_task_template(stage_id, **data)
    return jsonify(tt.to_dict()), 201


@workflow_templates_bp.route("/task-templates/<int:task_template_id>", methods=["PATCH"])
def update_task_template(task_template_id):
    tt = catalog.update_task_template(task_template_id, **get_json_body())
    return jsonify(tt.to_dict())
