"""
Task Lifecycle: status transitions, completion preconditions, evidence and approvals.

Transition table (``models.task.TASK_TRANSITIONS``):
    pending      → in_progress | completed | skipped | not_applicable
    in_progress  → pending | completed | skipped | not_applicable
    skipped      → pending        (undo; the exception row stays in the ledger)
    not_applicable → pending
    completed    terminal

Completion is gated.  ``completion_blockers`` lists every unmet precondition:
    "evidence"                 requires_evidence and nothing attached
    "verified_evidence"        requires_verified_evidence and nothing verified
    "evidence_type:<type>"     a required evidence type is not covered
    "approval"                 requires_approval and not approved

Skipping / marking not-applicable goes through the exception ledger in the
same unit of work; a status change on a workflow task re-evaluates its stage
in that unit of work too, so a task, its stage and any exception row commit
together or not at all.

Evidence rows reference tasks by bare id; ownership is checked here on every
evidence write.
"""

import logging
from datetime import datetime, timezone

from flask import current_app

from matterflow.core.exceptions import (
    GateUnsatisfiedError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from matterflow.integrations.collaborators import get_collaborators
from matterflow.models import db
from matterflow.models.auth import USER_ROLES, User
from matterflow.models.matter import Matter
from matterflow.models.task import (
    EXCEPTION_STATUSES,
    TASK_STATUSES,
    VERIFICATION_METHODS,
    EvidenceItem,
    Task,
    validate_task_transition,
)
from matterflow.models.workflow import TASK_PRIORITIES
from matterflow.services import due_dates
from matterflow.services.exception_ledger import _record as record_exception
from matterflow.services.stage_gate import _evaluate_stage
from matterflow.services.template_catalog import (
    _check_choice,
    _check_evidence_types,
    _check_task_flags,
)
from matterflow.services.transaction import run_in_transaction

logger = logging.getLogger(__name__)

MANUAL_TASK_FIELDS = (
    "description", "priority", "assignee_id", "due_date", "is_mandatory",
    "requires_evidence", "required_evidence_types", "requires_verified_evidence",
    "requires_approval", "required_approver_role", "client_visible", "regulatory_basis",
)

APPROVAL_DECISIONS = ("approved", "rejected")


def _utcnow():
    return datetime.now(timezone.utc)


def _load_task(task_id: int) -> Task:
    task = db.session.get(Task, task_id)
    if task is None:
        raise NotFoundError(resource="Task", resource_id=task_id)
    return task


def _log_extra(task: Task, **extra) -> dict:
    return {"matter_id": task.matter_id, "task_id": task.id, "stage_id": task.matter_stage_id, **extra}


def get_task(task_id: int) -> Task:
    return _load_task(task_id)


# ═════════════════════════════════════════════════════════════════════════════
# Completion preconditions
# ═════════════════════════════════════════════════════════════════════════════


def completion_blockers(task: Task) -> list[str]:
    """Every precondition that still blocks ``task`` from completing."""
    missing = []
    evidence = []
    if task.needs_evidence or task.required_evidence_types:
        evidence = list(get_collaborators().evidence.list_for_task(task.id))

    if task.needs_evidence and not evidence:
        missing.append("evidence")

    verified = [e for e in evidence if e.verified_at is not None]
    if task.requires_verified_evidence and not verified:
        missing.append("verified_evidence")

    if task.required_evidence_types:
        pool = verified if task.requires_verified_evidence else evidence
        covered = {e.evidence_type for e in pool}
        for evidence_type in task.required_evidence_types:
            if evidence_type not in covered:
                missing.append(f"evidence_type:{evidence_type}")

    if task.requires_approval and task.approval_status != "approved":
        missing.append("approval")
    return missing


# ═════════════════════════════════════════════════════════════════════════════
# Status transitions
# ═════════════════════════════════════════════════════════════════════════════


def _update_task_status(task_id, new_status, actor_id, reason, approver_id) -> Task:
    if new_status not in TASK_STATUSES:
        raise ValidationError(
            f"status must be one of {list(TASK_STATUSES)}",
            details={"status": new_status},
        )
    task = _load_task(task_id)
    old_status = task.status
    if new_status == old_status:
        return task

    if not validate_task_transition(old_status, new_status):
        raise InvalidTransitionError("Task", task.id, old_status, new_status)

    stage = task.stage if task.is_workflow_task else None
    if stage is not None and stage.status in ("completed", "skipped") and new_status in ("pending", "in_progress"):
        raise InvalidTransitionError(
            "Task", task.id, old_status, new_status,
            reason=f"stage '{stage.name}' is already {stage.status}",
        )

    if new_status == "completed":
        missing = completion_blockers(task)
        if missing:
            raise GateUnsatisfiedError(task.id, missing)
        task.completed_at = _utcnow()
    elif new_status in EXCEPTION_STATUSES:
        # Ledger validates reason, approver role and the target itself.
        record_exception(
            "task", task.id, new_status, reason,
            approver_id or actor_id, "user", None,
            {"from_status": old_status, "requested_by_id": actor_id},
        )
    elif old_status in EXCEPTION_STATUSES:
        task.active_exception = None
        logger.info("Task %s restored from %s; exception row kept", task.id, old_status,
                    extra=_log_extra(task))

    task.status = new_status
    task.updated_at = _utcnow()
    db.session.flush()
    logger.info("Task %s: %s → %s", task.id, old_status, new_status, extra=_log_extra(task))

    if stage is not None:
        _evaluate_stage(stage.id, actor_id)
    return task


def update_task_status(
    task_id: int,
    new_status: str,
    actor_id: int | None = None,
    reason: str | None = None,
    approver_id: int | None = None,
) -> Task:
    """Move a task to ``new_status`` and re-evaluate its stage.

    Args:
        task_id:     Task to update.
        new_status:  Target status.
        actor_id:    User performing the change.
        reason:      Required for skipped / not_applicable.
        approver_id: Exception approver; defaults to ``actor_id``.

    Raises:
        InvalidTransitionError: transition not in the table, or reopening a
            task whose stage has already closed.
        GateUnsatisfiedError:   completion preconditions unmet.
        InvalidExceptionError:  skip without a valid reason/approver.
    """
    return run_in_transaction(
        lambda: _update_task_status(task_id, new_status, actor_id, reason, approver_id),
        label="task status update",
    )


# ═════════════════════════════════════════════════════════════════════════════
# Manual tasks
# ═════════════════════════════════════════════════════════════════════════════


def create_manual_task(matter_id: int, title: str, created_by: int | None = None, **fields) -> Task:
    """Create a matter task outside any workflow stage (never gates progression)."""
    unknown = sorted(set(fields) - set(MANUAL_TASK_FIELDS))
    if unknown:
        raise ValidationError(f"Unknown task fields: {unknown}", details={"unknown_fields": unknown})
    if not isinstance(title, str) or not title.strip():
        raise ValidationError("title is required", details={"title": "required"})
    priority = fields.get("priority") or "medium"
    if priority not in TASK_PRIORITIES:
        raise ValidationError(f"priority must be one of {list(TASK_PRIORITIES)}",
                              details={"priority": priority})
    # Same field rules as catalog task templates; an unknown role could never approve.
    _check_task_flags(fields)
    if fields.get("required_approver_role") is not None:
        _check_choice(fields["required_approver_role"], USER_ROLES, "required_approver_role")
    if "required_evidence_types" in fields:
        _check_evidence_types(fields["required_evidence_types"])

    def _work():
        if db.session.get(Matter, matter_id) is None:
            raise NotFoundError(resource="Matter", resource_id=matter_id)
        now = _utcnow()
        task = Task(
            matter_id=matter_id,
            title=title.strip()[:255],
            source="manual",
            status="pending",
            created_by_id=created_by,
            created_at=now,
            updated_at=now,
            **{**fields, "priority": priority},
        )
        db.session.add(task)
        db.session.flush()
        logger.info("Manual task created: %s", task.title, extra=_log_extra(task))
        return task

    return run_in_transaction(_work, matter_id=matter_id, label="manual task create")


# ═════════════════════════════════════════════════════════════════════════════
# Evidence
# ═════════════════════════════════════════════════════════════════════════════


def attach_evidence(
    task_id: int,
    evidence_type: str,
    added_by: int | None = None,
    document_id: str | None = None,
    description: str | None = None,
) -> EvidenceItem:
    if not isinstance(evidence_type, str) or not evidence_type.strip():
        raise ValidationError("evidence_type is required", details={"evidence_type": "required"})

    def _work():
        task = _load_task(task_id)
        item = EvidenceItem(
            task_id=task.id,
            evidence_type=evidence_type.strip(),
            document_id=document_id,
            description=description,
            added_by_id=added_by,
        )
        db.session.add(item)
        db.session.flush()
        logger.info("Evidence %s attached (%s)", item.id, item.evidence_type, extra=_log_extra(task))
        return item

    return run_in_transaction(_work, label="evidence attach")


def verify_evidence(
    task_id: int,
    evidence_id: int,
    verified_by: int,
    method: str = "manual_review",
    notes: str | None = None,
) -> EvidenceItem:
    """Stamp ``verified_at`` on an evidence item owned by ``task_id``."""
    if method not in VERIFICATION_METHODS:
        raise ValidationError(
            f"verification method must be one of {list(VERIFICATION_METHODS)}",
            details={"method": method},
        )

    def _work():
        task = _load_task(task_id)
        item = db.session.get(EvidenceItem, evidence_id)
        if item is None:
            raise NotFoundError(resource="EvidenceItem", resource_id=evidence_id)
        if item.task_id != task.id:
            raise ValidationError(
                f"Evidence {evidence_id} does not belong to task {task.id}",
                details={"evidence_id": evidence_id, "task_id": task.id},
            )
        if item.verified_at is not None:
            raise ValidationError(f"Evidence {evidence_id} is already verified",
                                  details={"evidence_id": evidence_id})
        verifier = db.session.get(User, verified_by) if verified_by else None
        if verifier is None or not verifier.is_active:
            raise ValidationError("An active verifying user is required",
                                  details={"verified_by_id": verified_by})

        item.verified_at = _utcnow()
        item.verified_by_id = verifier.id
        item.verification_method = method
        item.verification_notes = notes
        db.session.flush()
        logger.info("Evidence %s verified by user %s", item.id, verifier.id, extra=_log_extra(task))
        return item

    return run_in_transaction(_work, label="evidence verify")


# ═════════════════════════════════════════════════════════════════════════════
# Approvals
# ═════════════════════════════════════════════════════════════════════════════


def request_approval(task_id: int, actor_id: int | None) -> Task:
    def _work():
        task = _load_task(task_id)
        if not task.requires_approval:
            raise ValidationError(f"Task {task.id} does not require approval",
                                  details={"requires_approval": False})
        if task.approval_status == "approved":
            raise ValidationError(f"Task {task.id} is already approved",
                                  details={"approval_status": task.approval_status})
        if task.approval_status == "pending":
            return task
        task.approval_status = "pending"
        task.approval_requested_by_id = actor_id
        task.approved_by_id = None
        task.approved_at = None
        task.approval_comment = None
        db.session.flush()
        logger.info("Approval requested on task %s", task.id, extra=_log_extra(task))
        return task

    return run_in_transaction(_work, label="approval request")


def decide_approval(task_id: int, approver_id: int, decision: str, comment: str | None = None) -> Task:
    """Approve or reject a pending approval request.

    The approver needs ``required_approver_role`` (or the configured default)
    and may not be the user who requested the approval.
    """
    if decision not in APPROVAL_DECISIONS:
        raise ValidationError(f"decision must be one of {list(APPROVAL_DECISIONS)}",
                              details={"decision": decision})

    def _work():
        task = _load_task(task_id)
        if task.approval_status != "pending":
            raise ValidationError(f"Task {task.id} has no pending approval request",
                                  details={"approval_status": task.approval_status})
        role = task.required_approver_role or current_app.config["WORKFLOW_DEFAULT_APPROVER_ROLE"]
        if not approver_id or not get_collaborators().roles.has_role(approver_id, role):
            raise ValidationError(
                f"User {approver_id} is not authorised to approve this task (requires {role})",
                details={"approver_id": approver_id, "required_role": role},
            )
        if task.approval_requested_by_id is not None and approver_id == task.approval_requested_by_id:
            raise ValidationError("The requester cannot approve their own request",
                                  details={"approver_id": approver_id})

        task.approval_status = decision
        task.approved_by_id = approver_id
        task.approved_at = _utcnow()
        task.approval_comment = comment
        db.session.flush()
        logger.info("Approval %s on task %s by user %s", decision, task.id, approver_id,
                    extra=_log_extra(task))
        return task

    return run_in_transaction(_work, label="approval decision")


# ═════════════════════════════════════════════════════════════════════════════
# Due dates
# ═════════════════════════════════════════════════════════════════════════════


def refresh_due_dates(matter_id: int) -> int:
    """Fill in due dates whose anchor has become known since the task was created."""
    def _work():
        matter = db.session.get(Matter, matter_id)
        if matter is None:
            raise NotFoundError(resource="Matter", resource_id=matter_id)
        tasks = (
            Task.query
            .filter(Task.matter_id == matter_id,
                    Task.due_date.is_(None),
                    Task.relative_due_days.isnot(None),
                    Task.due_date_anchor.isnot(None))
            .all()
        )
        updated = 0
        for task in tasks:
            if task.is_resolved:
                continue
            due = due_dates.resolve(
                task.due_date_anchor, task.relative_due_days,
                due_dates.anchor_context(task=task, stage=task.stage, matter=matter),
            )
            if due is not None:
                task.due_date = due
                updated += 1
        db.session.flush()
        if updated:
            logger.info("Resolved %d pending due date(s)", updated, extra={"matter_id": matter_id})
        return updated

    return run_in_transaction(_work, matter_id=matter_id, label="due date refresh")
