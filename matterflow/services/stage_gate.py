"""
Stage Gate Evaluator: derives stage status from tasks and advances the workflow.

Natural progression (``evaluate``):
    1. Lock the MatterStage row (FOR UPDATE where supported; the version
       column catches the rest).
    2. Only an ``in_progress`` stage can complete; anything else is a no-op,
       which is what a losing concurrent evaluator observes.
    3. When the completion criteria hold: mark completed, then walk the
       remaining ``pending`` stages in sort order, re-evaluating each one's
       applicability conditions against the matter's *current* attributes.
       Inapplicable stages are skipped with a system exception; the first
       applicable one starts and gets its tasks.  A stage that is complete
       the moment it starts (no mandatory tasks) cascades.
    4. Recompute the ``current_stage_id`` cache; stamp workflow completion
       when no stage is left open.

Completion criteria:
    all_mandatory_tasks  every mandatory task resolved
    all_tasks            every task resolved
    custom               no strategy defined; behaves as all_mandatory_tasks
                         and logs a warning each time it is used

Forced progression (``force_advance``) is the external-caller path:
    none  advances without a record
    soft  needs an acknowledgement (gate_override exception, soft-gate role)
    hard  needs a gate_override exception approved by the gate-override role
The evaluator itself never overrides.
"""

import logging
from datetime import datetime, timezone

from flask import current_app
from sqlalchemy import select

from matterflow.core.exceptions import GateBlockedError, InvalidTransitionError, NotFoundError
from matterflow.integrations.collaborators import get_collaborators
from matterflow.models import db
from matterflow.models.task import Task
from matterflow.models.workflow import OPEN_STAGE_STATUSES, MatterStage, MatterWorkflow
from matterflow.services import due_dates
from matterflow.services.conditions import describe_unmet, evaluate_or_false
from matterflow.services.exception_ledger import _record as record_exception
from matterflow.services.transaction import run_in_transaction
from matterflow.services.workflow_events import emit

logger = logging.getLogger(__name__)

SYSTEM_SKIP_REASON = "applicability conditions not met"


def _utcnow():
    return datetime.now(timezone.utc)


def _lock_stage(stage_id: int) -> MatterStage:
    stmt = (
        select(MatterStage)
        .where(MatterStage.id == stage_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    stage = db.session.execute(stmt).scalar_one_or_none()
    if stage is None:
        raise NotFoundError(resource="MatterStage", resource_id=stage_id)
    return stage


def _log_extra(stage: MatterStage, **extra) -> dict:
    return {"matter_id": stage.workflow.matter_id, "stage_id": stage.id, **extra}


# ═════════════════════════════════════════════════════════════════════════════
# Read-side checks
# ═════════════════════════════════════════════════════════════════════════════


def check_stage_completion(stage: MatterStage, warn: bool = False) -> dict:
    """Completion summary for ``stage`` under its completion criteria.

    ``warn`` logs the custom-criteria fallback; only the evaluation paths set it.
    """
    tasks = list(stage.tasks)
    criteria = stage.completion_criteria
    effective = criteria
    if criteria == "custom":
        effective = "all_mandatory_tasks"
        if warn:
            logger.warning(
                "Stage %s uses completion_criteria=custom; evaluating as all_mandatory_tasks",
                stage.id, extra=_log_extra(stage),
            )

    mandatory = [t for t in tasks if t.is_mandatory]
    relevant = tasks if effective == "all_tasks" else mandatory
    pending = [t for t in tasks if not t.is_resolved]

    return {
        "stage_id": stage.id,
        "completion_criteria": criteria,
        "effective_criteria": effective,
        "is_complete": all(t.is_resolved for t in relevant),
        "total_tasks": len(tasks),
        "resolved_tasks": sum(1 for t in tasks if t.is_resolved),
        "mandatory_tasks": len(mandatory),
        "resolved_mandatory_tasks": sum(1 for t in mandatory if t.is_resolved),
        "blocking_task_ids": [t.id for t in relevant if not t.is_resolved],
        "pending_tasks": [
            {"id": t.id, "title": t.title, "status": t.status, "is_mandatory": t.is_mandatory}
            for t in pending
        ],
    }


def check_gate(stage: MatterStage) -> dict:
    """Preview of what ``force_advance`` would require for ``stage`` right now."""
    completion = check_stage_completion(stage)
    gate_type = stage.gate_type
    pending_mandatory = [t for t in completion["pending_tasks"] if t["is_mandatory"]]
    warnings = []
    needs_exception = False

    if stage.status != "in_progress":
        can_proceed = False
        warnings.append(f"Stage is {stage.status}; only the in-progress stage can be advanced")
    elif completion["is_complete"] or gate_type == "none":
        can_proceed = True
    elif gate_type == "soft":
        can_proceed = True
        needs_exception = True
        warnings.append(
            f"Stage '{stage.name}' has {len(completion['blocking_task_ids'])} unresolved task(s); "
            "advancing requires an acknowledgement"
        )
    else:
        can_proceed = False
        needs_exception = True
        warnings.append(
            f"Stage '{stage.name}' has a hard gate with {len(completion['blocking_task_ids'])} "
            "unresolved task(s); a gate_override exception is required"
        )

    return {
        "stage_id": stage.id,
        "gate_type": gate_type,
        "can_proceed": can_proceed,
        "is_blocked": not can_proceed,
        "requires_exception": needs_exception,
        "pending_mandatory": pending_mandatory,
        "blocking_task_ids": completion["blocking_task_ids"],
        "warnings": warnings,
    }


def derive_current_stage_id(workflow: MatterWorkflow) -> int | None:
    """First stage (by sort order) that is still pending or in progress."""
    for stage in sorted(workflow.stages, key=lambda s: s.sort_order):
        if stage.status in OPEN_STAGE_STATUSES:
            return stage.id
    return None


def workflow_progress(workflow: MatterWorkflow) -> dict:
    """Mandatory-task progress over non-skipped stages; 100% when there is nothing to do."""
    total = resolved = 0
    for stage in workflow.stages:
        if stage.status == "skipped":
            continue
        mandatory = [t for t in stage.tasks if t.is_mandatory]
        total += len(mandatory)
        resolved += sum(1 for t in mandatory if t.is_resolved)
    statuses = [s.status for s in workflow.stages]
    return {
        "total_mandatory_tasks": total,
        "resolved_mandatory_tasks": resolved,
        "progress_percent": 100 if total == 0 else round(resolved * 100 / total),
        "stages_total": len(statuses),
        "stages_completed": statuses.count("completed"),
        "stages_skipped": statuses.count("skipped"),
    }


# ═════════════════════════════════════════════════════════════════════════════
# Stage transitions (no commits; callers own the unit of work)
# ═════════════════════════════════════════════════════════════════════════════


def _instantiate_tasks(stage: MatterStage, actor_id: int | None) -> list[Task]:
    workflow = stage.workflow
    now = _utcnow()
    created = []
    for tt in stage.workflow_stage.task_templates:
        anchor = None
        if tt.relative_due_days is not None:
            anchor = tt.due_date_anchor or due_dates.DEFAULT_ANCHOR
        task = Task(
            matter_id=workflow.matter_id,
            stage=stage,
            workflow_task_template_id=tt.id,
            title=tt.title,
            description=tt.description,
            source="workflow",
            status="pending",
            priority=tt.default_priority or "medium",
            is_mandatory=tt.is_mandatory,
            requires_evidence=tt.requires_evidence,
            required_evidence_types=list(tt.required_evidence_types) if tt.required_evidence_types else None,
            requires_verified_evidence=tt.requires_verified_evidence,
            requires_approval=tt.requires_approval,
            required_approver_role=tt.required_approver_role,
            relative_due_days=tt.relative_due_days,
            due_date_anchor=anchor,
            client_visible=tt.client_visible,
            regulatory_basis=tt.regulatory_basis,
            created_by_id=actor_id,
            created_at=now,
            updated_at=now,
        )
        if anchor is not None:
            task.due_date = due_dates.resolve(
                anchor, tt.relative_due_days,
                due_dates.anchor_context(task=task, stage=stage, matter=workflow.matter),
            )
        db.session.add(task)
        created.append(task)
    db.session.flush()
    return created


def _start_stage(stage: MatterStage, actor_id: int | None) -> None:
    stage.status = "in_progress"
    stage.started_at = _utcnow()
    tasks = _instantiate_tasks(stage, actor_id) if not stage.tasks else []
    db.session.flush()
    emit("stage_started", stage.workflow.matter_id, stage.id, "pending", "in_progress",
         stage_name=stage.name, task_count=len(tasks))
    logger.info("Stage started: %s (%d tasks created)", stage.name, len(tasks), extra=_log_extra(stage))


def _complete_stage(stage: MatterStage, forced: bool = False) -> None:
    stage.status = "completed"
    stage.completed_at = _utcnow()
    db.session.flush()
    emit("stage_completed", stage.workflow.matter_id, stage.id, "in_progress", "completed",
         stage_name=stage.name, forced=forced)
    logger.info("Stage completed: %s%s", stage.name, " (forced)" if forced else "", extra=_log_extra(stage))


def _skip_stage(stage: MatterStage, attributes: dict, actor_id: int | None) -> None:
    unmet = describe_unmet(stage.applicability_conditions, attributes)
    from_status = stage.status
    stage.status = "skipped"
    stage.skipped_reason = (
        "Applicability conditions not met: " + "; ".join(unmet) if unmet
        else "Applicability conditions not met"
    )
    db.session.flush()
    exc = record_exception(
        "stage", stage.id, "not_applicable", SYSTEM_SKIP_REASON,
        None, "system", None,
        {"unmet_conditions": unmet,
         "conditions": stage.applicability_conditions,
         "triggered_by_id": actor_id},
    )
    emit("stage_skipped", stage.workflow.matter_id, stage.id, from_status, "skipped",
         stage_name=stage.name, reason=stage.skipped_reason, exception_id=exc.id)
    logger.info("Stage skipped: %s (%s)", stage.name, stage.skipped_reason,
                extra=_log_extra(stage, exception_id=exc.id))


def _sync_current_stage(workflow: MatterWorkflow) -> None:
    workflow.current_stage_id = derive_current_stage_id(workflow)


def _finish_if_done(workflow: MatterWorkflow) -> None:
    if workflow.completed_at is not None or not workflow.stages:
        return
    if any(s.status in OPEN_STAGE_STATUSES for s in workflow.stages):
        return
    workflow.completed_at = _utcnow()
    db.session.flush()
    emit("workflow_completed", workflow.matter_id, None, None, "completed",
         workflow_id=workflow.id, workflow_version=workflow.workflow_version)
    logger.info("Workflow completed for matter %s", workflow.matter_id,
                extra={"matter_id": workflow.matter_id})


def skip_inapplicable_stages(workflow: MatterWorkflow, attributes: dict, actor_id: int | None) -> None:
    """Skip every pending stage whose applicability conditions do not hold."""
    for stage in sorted(workflow.stages, key=lambda s: s.sort_order):
        if stage.status != "pending":
            continue
        if not evaluate_or_false(stage.applicability_conditions, attributes,
                                 matter_id=workflow.matter_id, stage_id=stage.id):
            _skip_stage(stage, attributes, actor_id)


def advance_workflow(workflow: MatterWorkflow, actor_id: int | None, attributes: dict | None = None) -> None:
    """Start the next applicable stage if none is running; cascade through complete ones."""
    while not any(s.status == "in_progress" for s in workflow.stages):
        next_stage = next(
            (s for s in sorted(workflow.stages, key=lambda s: s.sort_order) if s.status == "pending"),
            None,
        )
        if next_stage is None:
            break
        if attributes is None:
            attributes = get_collaborators().attributes.get_attributes(workflow.matter_id)
        if not evaluate_or_false(next_stage.applicability_conditions, attributes,
                                 matter_id=workflow.matter_id, stage_id=next_stage.id):
            _skip_stage(next_stage, attributes, actor_id)
            continue
        _start_stage(next_stage, actor_id)
        if check_stage_completion(next_stage, warn=True)["is_complete"]:
            _complete_stage(next_stage)

    _sync_current_stage(workflow)
    _finish_if_done(workflow)
    db.session.flush()


def _evaluate_stage(stage_id: int, actor_id: int | None = None) -> MatterStage:
    stage = _lock_stage(stage_id)
    if stage.status != "in_progress":
        return stage
    if check_stage_completion(stage, warn=True)["is_complete"]:
        _complete_stage(stage)
        advance_workflow(stage.workflow, actor_id)
    else:
        _sync_current_stage(stage.workflow)
        db.session.flush()
    return stage


# ═════════════════════════════════════════════════════════════════════════════
# Public API
# ═════════════════════════════════════════════════════════════════════════════


def get_matter_stage(stage_id: int, matter_id: int | None = None) -> MatterStage:
    stage = db.session.get(MatterStage, stage_id)
    if stage is None or (matter_id is not None and stage.workflow.matter_id != matter_id):
        raise NotFoundError(resource="MatterStage", resource_id=stage_id)
    return stage


def evaluate(matter_stage_id: int, actor_id: int | None = None) -> MatterStage:
    """Recompute one stage and advance the workflow if it completed."""
    return run_in_transaction(
        lambda: _evaluate_stage(matter_stage_id, actor_id),
        label="stage evaluation",
    )


def _force_advance(stage_id, actor_id, exception, matter_id) -> MatterStage:
    stage = _lock_stage(stage_id)
    if matter_id is not None and stage.workflow.matter_id != matter_id:
        raise NotFoundError(resource="MatterStage", resource_id=stage_id)
    if stage.status != "in_progress":
        raise InvalidTransitionError(
            "MatterStage", stage.id, stage.status, "completed",
            reason="only the in-progress stage can be advanced",
        )

    completion = check_stage_completion(stage, warn=True)
    if completion["is_complete"]:
        _complete_stage(stage)
        advance_workflow(stage.workflow, actor_id)
        return stage

    gate_type = stage.gate_type
    blocking = completion["blocking_task_ids"]

    if gate_type != "none":
        if not exception:
            if gate_type == "hard":
                raise GateBlockedError(stage.id, gate_type, blocking)
            raise GateBlockedError(
                stage.id, gate_type, blocking,
                message=f"Stage {stage.id} has a soft gate; advancing requires an acknowledgement with a reason",
            )
        role_key = "WORKFLOW_GATE_OVERRIDE_ROLE" if gate_type == "hard" else "WORKFLOW_SOFT_GATE_ROLE"
        approver_id = exception.get("approved_by_id") or actor_id
        exc = record_exception(
            "stage", stage.id, "gate_override", exception.get("reason"),
            approver_id, "user", current_app.config[role_key],
            {"gate_type": gate_type,
             "blocked_task_ids": blocking,
             "requested_by_id": actor_id,
             "acknowledgement": gate_type == "soft"},
        )
        emit("gate_overridden", stage.workflow.matter_id, stage.id, "in_progress", "completed",
             gate_type=gate_type, exception_id=exc.id, blocked_task_ids=blocking)
        logger.info("Gate overridden on stage %s (%s gate, %d unresolved)", stage.name, gate_type,
                    len(blocking), extra=_log_extra(stage, exception_id=exc.id))
    else:
        logger.info("Stage %s advanced early (no gate)", stage.name, extra=_log_extra(stage))

    _complete_stage(stage, forced=True)
    advance_workflow(stage.workflow, actor_id)
    return stage


def force_advance(matter_stage_id: int, actor_id: int | None, exception: dict | None = None,
                  matter_id: int | None = None) -> MatterStage:
    """Complete an in-progress stage ahead of its criteria, subject to its gate.

    Args:
        matter_stage_id: Stage to advance.
        actor_id:        User requesting the advance.
        exception:       ``{"reason": str, "approved_by_id": int}``; required
                         for soft and hard gates.  ``approved_by_id``
                         defaults to ``actor_id``.
        matter_id:       When given, the stage must belong to this matter.

    Raises:
        GateBlockedError:      gate requires an exception and none was given.
        InvalidExceptionError: exception payload invalid or approver lacks the role.
        InvalidTransitionError: stage is not in progress.
    """
    return run_in_transaction(
        lambda: _force_advance(matter_stage_id, actor_id, exception, matter_id),
        matter_id=matter_id,
        label="stage advance",
    )


def reconcile_current_stage(matter_id: int) -> dict:
    """Compare the cached current stage with the derived one and repair it."""
    def _work():
        workflow = MatterWorkflow.query.filter_by(matter_id=matter_id).first()
        if workflow is None:
            raise NotFoundError(resource="MatterWorkflow", resource_id=f"matter={matter_id}")
        cached = workflow.current_stage_id
        derived = derive_current_stage_id(workflow)
        matched = cached == derived
        if not matched:
            logger.warning(
                "current_stage_id drift on matter %s: cached=%s derived=%s; repaired",
                matter_id, cached, derived, extra={"matter_id": matter_id},
            )
            workflow.current_stage_id = derived
            db.session.flush()
        return {
            "matter_id": matter_id,
            "cached_stage_id": cached,
            "derived_stage_id": derived,
            "matched": matched,
            "repaired": not matched,
        }

    return run_in_transaction(_work, matter_id=matter_id, label="current stage reconcile")
