"""
Exception Ledger: records and validates overrides.

Every skip, not-applicable marking and forced gate progression is backed by
one TaskException row.  This module is the only writer of that table.

Validation on ``record``:
    - object_type / exception_type combination is allowed
    - the target exists (lookup-and-validate; object_id is an opaque key)
    - reason is non-blank
    - decision_source=user → approver holds ``required_role``
      (WORKFLOW_EXCEPTION_APPROVER_ROLE unless the caller names another)

Idempotence: if the target already points at an active exception of the
same type, that row is returned and nothing new is written.

Design decisions:
    - Rows are append-only (ORM guard in models.exception).  Undo is a
      status transition on the target that clears its pointer.
    - The approver's name is snapshotted so the audit trail survives user
      deletion.
"""

import logging

from flask import current_app

from matterflow.core.exceptions import InvalidExceptionError, NotFoundError
from matterflow.integrations.collaborators import get_collaborators
from matterflow.models import db
from matterflow.models.auth import User
from matterflow.models.exception import (
    ALLOWED_EXCEPTION_TYPES,
    DECISION_SOURCES,
    OBJECT_TYPES,
    TaskException,
)
from matterflow.models.task import Task
from matterflow.models.workflow import MatterStage
from matterflow.services.transaction import run_in_transaction

logger = logging.getLogger(__name__)


# ── Private helpers ──────────────────────────────────────────────────────────


def _load_target(object_type: str, object_id):
    """Resolve (object_type, object_id) to its row or raise InvalidExceptionError."""
    try:
        pk = int(object_id)
    except (TypeError, ValueError):
        raise InvalidExceptionError(
            f"object_id must reference a {object_type}",
            details={"object_id": object_id},
        ) from None
    model = Task if object_type == "task" else MatterStage
    target = db.session.get(model, pk)
    if target is None:
        raise InvalidExceptionError(
            f"{object_type} {pk} does not exist",
            details={"object_type": object_type, "object_id": str(pk)},
        )
    return target


def _matter_id_for(target) -> int:
    if isinstance(target, Task):
        return target.matter_id
    return target.workflow.matter_id


def active_exception_for(target) -> TaskException | None:
    """The exception currently justifying ``target``'s status, if any."""
    if isinstance(target, Task):
        return target.active_exception
    return target.exception


def _set_active(target, exc: TaskException) -> None:
    if isinstance(target, Task):
        target.active_exception = exc
    else:
        target.exception = exc


def _snapshot_approver_name(approver_id: int | None) -> str | None:
    if not approver_id:
        return None
    user = db.session.get(User, approver_id)
    return user.full_name if user else None


def _record(object_type, object_id, exception_type, reason, approver_id,
            decision_source, required_role, context) -> TaskException:
    if object_type not in OBJECT_TYPES:
        raise InvalidExceptionError(
            f"object_type must be one of {sorted(OBJECT_TYPES)}",
            details={"object_type": object_type},
        )
    if exception_type not in ALLOWED_EXCEPTION_TYPES[object_type]:
        raise InvalidExceptionError(
            f"exception_type '{exception_type}' is not valid for a {object_type}",
            details={"exception_type": exception_type,
                     "allowed": sorted(ALLOWED_EXCEPTION_TYPES[object_type])},
        )
    if decision_source not in DECISION_SOURCES:
        raise InvalidExceptionError(
            f"decision_source must be one of {sorted(DECISION_SOURCES)}",
            details={"decision_source": decision_source},
        )

    if reason is not None and not isinstance(reason, str):
        raise InvalidExceptionError("reason must be a string", details={"reason": "invalid"})
    reason = (reason or "").strip()
    if not reason:
        raise InvalidExceptionError("A reason is required", details={"reason": "required"})

    target = _load_target(object_type, object_id)

    # Approver authority is checked even when an active row is reused.
    if decision_source == "user":
        role = required_role or current_app.config["WORKFLOW_EXCEPTION_APPROVER_ROLE"]
        if not approver_id:
            raise InvalidExceptionError("An approver is required", details={"approved_by_id": "required"})
        if not get_collaborators().roles.has_role(approver_id, role):
            raise InvalidExceptionError(
                f"User {approver_id} is not authorised to approve this exception (requires {role})",
                details={"approved_by_id": approver_id, "required_role": role},
            )

    existing = active_exception_for(target)
    if existing is not None and existing.exception_type == exception_type:
        logger.debug(
            "Exception already active on %s %s; no new record", object_type, target.id,
            extra={"exception_id": existing.id},
        )
        return existing

    exc = TaskException(
        matter_id=_matter_id_for(target),
        object_type=object_type,
        object_id=str(target.id),
        exception_type=exception_type,
        reason=reason,
        decision_source=decision_source,
        approved_by_id=approver_id,
        approved_by_name_snapshot=_snapshot_approver_name(approver_id),
        context=context or None,
    )
    db.session.add(exc)
    _set_active(target, exc)
    db.session.flush()

    logger.info(
        "Exception recorded: %s %s %s (%s)", object_type, target.id, exception_type, decision_source,
        extra={"matter_id": exc.matter_id, "exception_id": exc.id,
               "task_id": target.id if object_type == "task" else None,
               "stage_id": target.id if object_type == "stage" else None},
    )
    return exc


# ── Public API ───────────────────────────────────────────────────────────────


def record(
    object_type: str,
    object_id,
    exception_type: str,
    reason: str,
    approver_id: int | None = None,
    decision_source: str = "user",
    *,
    required_role: str | None = None,
    context: dict | None = None,
) -> TaskException:
    """Record an exception against a task or matter stage and make it active.

    Only the ledger row and the target's active-exception pointer are
    written; the target's status is left alone.  Status changes that need an
    exception go through ``task_lifecycle.update_task_status`` and
    ``stage_gate.force_advance``, which call the ledger in the same unit of
    work.  A repeat request of the active type returns the existing row, but
    only after the new approver's authority has been checked.

    Args:
        object_type:     "task" | "stage".
        object_id:       Target primary key (any form that converts to int).
        exception_type:  "skipped" | "not_applicable" | "gate_override" (stage only).
        reason:          Mandatory free-text justification.
        approver_id:     Approving user; required when decision_source="user".
        decision_source: "user" | "system".
        required_role:   Minimum approver role; defaults to the configured
                         exception-approver role.
        context:         Extra audit context stored with the row.

    Raises:
        InvalidExceptionError: payload invalid or approver not authorised.
    """
    return run_in_transaction(
        lambda: _record(object_type, object_id, exception_type, reason, approver_id,
                        decision_source, required_role, context),
        label="exception record",
    )


def get_exception(exception_id: int) -> TaskException:
    exc = db.session.get(TaskException, exception_id)
    if exc is None:
        raise NotFoundError(resource="TaskException", resource_id=exception_id)
    return exc


def list_exceptions(object_type: str, object_id) -> list[TaskException]:
    """Full history for one target, oldest first (active and superseded rows)."""
    return (
        TaskException.query
        .filter_by(object_type=object_type, object_id=str(object_id))
        .order_by(TaskException.approved_at.asc(), TaskException.id.asc())
        .all()
    )


def list_matter_exceptions(matter_id: int, exception_type: str | None = None) -> list[TaskException]:
    q = TaskException.query.filter_by(matter_id=matter_id)
    if exception_type:
        q = q.filter_by(exception_type=exception_type)
    return q.order_by(TaskException.approved_at.asc(), TaskException.id.asc()).all()
