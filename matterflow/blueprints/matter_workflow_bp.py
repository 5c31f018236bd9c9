"""
Matter Workflow Blueprint.

Endpoints:
    POST   /api/v1/matters/<mid>/workflow
           Body: {"template_id": <int>} | {"template_key": "...", "version": "..."} | {}
           An empty body picks the best applicable template.
           Returns: 201 with the workflow, its stages and progress.

    GET    /api/v1/matters/<mid>/workflow
    POST   /api/v1/matters/<mid>/workflow/reconcile
    POST   /api/v1/matters/<mid>/due-dates/refresh
    GET    /api/v1/matters/<mid>/stages/<sid>
    POST   /api/v1/matters/<mid>/stages/<sid>/advance
           Body: {"exception": {"reason": "...", "approved_by_id": <int>}}
           Required for soft and hard gates when the stage is not complete.
    GET    /api/v1/stages/<sid>/tasks          Query: status, limit, offset
    GET    /api/v1/exceptions                  Query: matter_id, object_type, object_id, exception_type

Layer contract:
    - NO db.session calls here; every write goes through a service that
      owns its unit of work.
"""

import logging

from flask import Blueprint, jsonify, request

from matterflow.blueprints import paginate_query
from matterflow.services import stage_gate, task_lifecycle, workflow_activator, workflow_queries
from matterflow.utils.errors import E, api_error
from matterflow.utils.helpers import get_actor_id, get_json_body, optional_int, text_field

logger = logging.getLogger(__name__)

matter_workflow_bp = Blueprint("matter_workflow", __name__, url_prefix="/api/v1")


@matter_workflow_bp.route("/matters/<int:matter_id>/workflow", methods=["POST"])
def activate_workflow(matter_id):
    data = get_json_body()
    actor_id = get_actor_id(data)
    template_id = optional_int(data, "template_id")
    template_key = text_field(data, "template_key")
    if template_key is None:
        return api_error(E.VALIDATION_INVALID, "template_key must be a string")

    if template_id is not None:
        workflow = workflow_activator.activate(matter_id, template_id, data.get("version"), actor_id)
    elif template_key:
        workflow = workflow_activator.activate(matter_id, template_key, data.get("version"), actor_id)
    else:
        workflow = workflow_activator.activate_for_matter(matter_id, actor_id)
    return jsonify(workflow_queries.workflow_summary(workflow)), 201


@matter_workflow_bp.route("/matters/<int:matter_id>/workflow", methods=["GET"])
def get_workflow(matter_id):
    workflow = workflow_queries.get_workflow(matter_id)
    return jsonify(workflow_queries.workflow_summary(workflow))


@matter_workflow_bp.route("/matters/<int:matter_id>/workflow/reconcile", methods=["POST"])
def reconcile_workflow(matter_id):
    return jsonify(stage_gate.reconcile_current_stage(matter_id))


@matter_workflow_bp.route("/matters/<int:matter_id>/due-dates/refresh", methods=["POST"])
def refresh_due_dates(matter_id):
    updated = task_lifecycle.refresh_due_dates(matter_id)
    return jsonify({"matter_id": matter_id, "updated": updated})


@matter_workflow_bp.route("/matters/<int:matter_id>/stages/<int:stage_id>", methods=["GET"])
def get_stage(matter_id, stage_id):
    stage = stage_gate.get_matter_stage(stage_id, matter_id)
    return jsonify(workflow_queries.stage_detail(stage))


@matter_workflow_bp.route("/matters/<int:matter_id>/stages/<int:stage_id>/advance", methods=["POST"])
def advance_stage(matter_id, stage_id):
    data = get_json_body()
    actor_id = get_actor_id(data)
    exception = data.get("exception")
    if exception is not None and not isinstance(exception, dict):
        return api_error(E.VALIDATION_INVALID, "exception must be an object")
    if exception is not None and "approved_by_id" in exception:
        exception = {**exception, "approved_by_id": optional_int(exception, "approved_by_id")}

    stage = stage_gate.force_advance(stage_id, actor_id, exception, matter_id=matter_id)
    workflow = workflow_queries.get_workflow(matter_id)
    return jsonify({
        "stage": workflow_queries.stage_detail(stage),
        "workflow": workflow_queries.workflow_summary(workflow),
    })


@matter_workflow_bp.route("/stages/<int:stage_id>/tasks", methods=["GET"])
def list_stage_tasks(stage_id):
    query = workflow_queries.list_stage_tasks(stage_id, request.args.get("status") or None)
    items, total = paginate_query(query)
    return jsonify({"items": [t.to_dict() for t in items], "total": total})


@matter_workflow_bp.route("/exceptions", methods=["GET"])
def list_exceptions():
    matter_id = request.args.get("matter_id", type=int)
    object_type = request.args.get("object_type") or None
    object_id = request.args.get("object_id") or None
    if object_id is not None and not object_type:
        return api_error(E.VALIDATION_REQUIRED, "object_type is required with object_id")
    query = workflow_queries.exceptions_query(
        matter_id=matter_id,
        object_type=object_type,
        object_id=object_id,
        exception_type=request.args.get("exception_type") or None,
    )
    items, total = paginate_query(query)
    return jsonify({"items": [e.to_dict() for e in items], "total": total})
