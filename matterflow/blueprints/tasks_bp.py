"""
Task Blueprint.

Endpoints:
    POST   /api/v1/tasks                          manual task; Body: {"matter_id", "title", ...}
    GET    /api/v1/tasks/<tid>
    PATCH  /api/v1/tasks/<tid>/status
           Body: {"status": "...", "reason": "...", "approved_by_id": <int>}
           ``reason`` is required for skipped / not_applicable.
    GET    /api/v1/tasks/<tid>/evidence
    POST   /api/v1/tasks/<tid>/evidence           Body: {"evidence_type", "document_id", "description"}
    POST   /api/v1/tasks/<tid>/evidence/<eid>/verify
           Body: {"method": "manual_review", "notes": "..."}; verifier is the actor.
    POST   /api/v1/tasks/<tid>/approval           request approval
    POST   /api/v1/tasks/<tid>/approval/decision  Body: {"decision": "approved|rejected", "comment"}

The acting user comes from ``X-User-Id`` (or ``actor_id`` in the body).
"""

import logging

from flask import Blueprint, jsonify

from matterflow.integrations.collaborators import get_collaborators
from matterflow.services import task_lifecycle
from matterflow.utils.errors import E, api_error
from matterflow.utils.helpers import (
    get_actor_id,
    get_json_body,
    optional_int,
    parse_datetime,
    text_field,
)

logger = logging.getLogger(__name__)

tasks_bp = Blueprint("tasks", __name__, url_prefix="/api/v1/tasks")


@tasks_bp.route("", methods=["POST"])
def create_task():
    data = get_json_body()
    actor_id = get_actor_id(data)
    matter_id = optional_int(data, "matter_id")
    title = text_field(data, "title")
    if title is None:
        return api_error(E.VALIDATION_INVALID, "title must be a string")
    if matter_id is None or not title:
        return api_error(E.VALIDATION_REQUIRED, "matter_id and title are required")

    fields = {k: v for k, v in data.items()
              if k in task_lifecycle.MANUAL_TASK_FIELDS and v is not None}
    if "due_date" in fields:
        try:
            fields["due_date"] = parse_datetime(fields["due_date"])
        except ValueError:
            return api_error(E.VALIDATION_INVALID, "due_date must be an ISO date or datetime")
    if "assignee_id" in fields:
        fields["assignee_id"] = optional_int(fields, "assignee_id")

    task = task_lifecycle.create_manual_task(matter_id, title, actor_id, **fields)
    return jsonify(task.to_dict()), 201


@tasks_bp.route("/<int:task_id>", methods=["GET"])
def get_task(task_id):
    task = task_lifecycle.get_task(task_id)
    data = task.to_dict()
    data["completion_blockers"] = task_lifecycle.completion_blockers(task) if not task.is_resolved else []
    return jsonify(data)


@tasks_bp.route("/<int:task_id>/status", methods=["PATCH"])
def update_status(task_id):
    data = get_json_body()
    status = text_field(data, "status")
    if status is None:
        return api_error(E.VALIDATION_INVALID, "status must be a string")
    if not status:
        return api_error(E.VALIDATION_REQUIRED, "status is required")
    task = task_lifecycle.update_task_status(
        task_id,
        status,
        actor_id=get_actor_id(data),
        reason=data.get("reason"),
        approver_id=optional_int(data, "approved_by_id"),
    )
    return jsonify(task.to_dict())


@tasks_bp.route("/<int:task_id>/evidence", methods=["GET"])
def list_evidence(task_id):
    task = task_lifecycle.get_task(task_id)
    items = get_collaborators().evidence.list_for_task(task.id)
    return jsonify({"items": [e.to_dict() for e in items], "total": len(items)})


@tasks_bp.route("/<int:task_id>/evidence", methods=["POST"])
def attach_evidence(task_id):
    data = get_json_body()
    evidence_type = text_field(data, "evidence_type")
    if evidence_type is None:
        return api_error(E.VALIDATION_INVALID, "evidence_type must be a string")
    if not evidence_type:
        return api_error(E.VALIDATION_REQUIRED, "evidence_type is required")
    item = task_lifecycle.attach_evidence(
        task_id,
        evidence_type,
        added_by=get_actor_id(data),
        document_id=data.get("document_id"),
        description=data.get("description"),
    )
    return jsonify(item.to_dict()), 201


@tasks_bp.route("/<int:task_id>/evidence/<int:evidence_id>/verify", methods=["POST"])
def verify_evidence(task_id, evidence_id):
    data = get_json_body()
    actor_id = get_actor_id(data)
    if actor_id is None:
        return api_error(E.VALIDATION_REQUIRED, "X-User-Id (verifier) is required")
    item = task_lifecycle.verify_evidence(
        task_id, evidence_id, actor_id,
        method=data.get("method") or "manual_review",
        notes=data.get("notes"),
    )
    return jsonify(item.to_dict())


@tasks_bp.route("/<int:task_id>/approval", methods=["POST"])
def request_approval(task_id):
    data = get_json_body()
    task = task_lifecycle.request_approval(task_id, get_actor_id(data))
    return jsonify(task.to_dict())


@tasks_bp.route("/<int:task_id>/approval/decision", methods=["POST"])
def decide_approval(task_id):
    data = get_json_body()
    actor_id = get_actor_id(data)
    decision = text_field(data, "decision")
    if decision is None:
        return api_error(E.VALIDATION_INVALID, "decision must be a string")
    if actor_id is None or not decision:
        return api_error(E.VALIDATION_REQUIRED, "X-User-Id (approver) and decision are required")
    task = task_lifecycle.decide_approval(task_id, actor_id, decision, data.get("comment"))
    return jsonify(task.to_dict())
