"""
Task lifecycle tests.

Test blocks:
  1. Transition table
  2. Evidence gates (plain, typed, verified)
  3. Skips, not-applicable and undo through the exception ledger
  4. Approvals
  5. Manual tasks and due-date refresh
"""

from datetime import datetime, timezone

import pytest

from conftest import task_tpl, three_stage_template
from matterflow.core.exceptions import (
    GateUnsatisfiedError,
    InvalidExceptionError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from matterflow.models import db as _db
from matterflow.models.exception import TaskException
from matterflow.models.matter import Matter
from matterflow.models.task import Task
from matterflow.models.workflow import MatterStage
from matterflow.services import task_lifecycle, workflow_activator


def _activate(make_matter, make_template, stages=None, attributes=None):
    matter = make_matter(attributes=attributes)
    tpl = make_template(stages or three_stage_template())
    wf = workflow_activator.activate(matter.id, tpl.id)
    return matter, wf


def _tasks(stage_id):
    return Task.query.filter_by(matter_stage_id=stage_id).order_by(Task.id).all()


# ── 1. Transitions ───────────────────────────────────────────────────────────


def test_pending_to_in_progress_to_completed(make_matter, make_template):
    _, wf = _activate(make_matter, make_template)
    task = wf.stages[0].tasks[0]

    assert task_lifecycle.update_task_status(task.id, "in_progress").status == "in_progress"
    done = task_lifecycle.update_task_status(task.id, "completed")
    assert done.status == "completed"
    assert done.completed_at is not None


def test_same_status_is_noop(make_matter, make_template):
    _, wf = _activate(make_matter, make_template)
    task = wf.stages[0].tasks[0]
    assert task_lifecycle.update_task_status(task.id, "pending").status == "pending"


def test_unknown_status_rejected(make_matter, make_template):
    _, wf = _activate(make_matter, make_template)
    with pytest.raises(ValidationError):
        task_lifecycle.update_task_status(wf.stages[0].tasks[0].id, "done-ish")


def test_completed_is_terminal(make_matter, make_template):
    _, wf = _activate(make_matter, make_template)
    task_id = wf.stages[0].tasks[2].id  # optional task; completing it does not close the stage
    task_lifecycle.update_task_status(task_id, "completed")
    with pytest.raises(InvalidTransitionError):
        task_lifecycle.update_task_status(task_id, "pending")


def test_missing_task():
    with pytest.raises(NotFoundError):
        task_lifecycle.update_task_status(404, "completed")


def test_completing_mandatory_tasks_completes_stage(make_matter, make_template):
    _, wf = _activate(make_matter, make_template, attributes={"has_mortgage": True})
    a_id, b_id = wf.stages[0].id, wf.stages[1].id
    first, second, _optional = _tasks(a_id)

    task_lifecycle.update_task_status(first.id, "completed")
    assert _db.session.get(MatterStage, a_id).status == "in_progress"

    task_lifecycle.update_task_status(second.id, "completed")
    a = _db.session.get(MatterStage, a_id)
    b = _db.session.get(MatterStage, b_id)
    assert a.status == "completed"
    assert b.status == "in_progress"
    assert [t.title for t in b.tasks] == ["Review mortgage offer"]
    assert a.workflow.current_stage_id == b_id


def test_cannot_reopen_task_in_closed_stage(make_matter, make_template):
    _, wf = _activate(make_matter, make_template)
    a_id = wf.stages[0].id
    first, second, optional = _tasks(a_id)
    task_lifecycle.update_task_status(first.id, "completed")
    task_lifecycle.update_task_status(second.id, "completed")

    with pytest.raises(InvalidTransitionError):
        task_lifecycle.update_task_status(optional.id, "in_progress")
    # Unresolved work in a closed stage can still be finished.
    assert task_lifecycle.update_task_status(optional.id, "completed").status == "completed"


# ── 2. Evidence gates ────────────────────────────────────────────────────────


def _aml_stages():
    return [
        {
            "name": "AML",
            "gate_type": "hard",
            "task_templates": [task_tpl(
                "Verify client identity",
                requires_verified_evidence=True,
                required_evidence_types=["id_document", "proof_of_address"],
            )],
        },
        {"name": "Investigation", "gate_type": "soft", "task_templates": [task_tpl("Order searches")]},
    ]


def test_verified_evidence_required_before_completion(make_matter, make_template, supervisor, paralegal):
    _, wf = _activate(make_matter, make_template, stages=_aml_stages())
    aml_id, next_id = wf.stages[0].id, wf.stages[1].id
    task = _tasks(aml_id)[0]

    with pytest.raises(GateUnsatisfiedError) as exc_info:
        task_lifecycle.update_task_status(task.id, "completed", actor_id=paralegal.id)
    assert exc_info.value.missing == [
        "evidence", "verified_evidence",
        "evidence_type:id_document", "evidence_type:proof_of_address",
    ]

    passport = task_lifecycle.attach_evidence(task.id, "id_document", added_by=paralegal.id, document_id="doc-1")
    bill = task_lifecycle.attach_evidence(task.id, "proof_of_address", added_by=paralegal.id, document_id="doc-2")

    # Attached but unverified evidence does not count.
    with pytest.raises(GateUnsatisfiedError) as exc_info:
        task_lifecycle.update_task_status(task.id, "completed", actor_id=paralegal.id)
    assert "verified_evidence" in exc_info.value.missing
    assert _db.session.get(Task, task.id).status == "pending"

    task_lifecycle.verify_evidence(task.id, passport.id, supervisor.id, method="original_seen")
    with pytest.raises(GateUnsatisfiedError) as exc_info:
        task_lifecycle.update_task_status(task.id, "completed", actor_id=paralegal.id)
    assert exc_info.value.missing == ["evidence_type:proof_of_address"]

    task_lifecycle.verify_evidence(task.id, bill.id, supervisor.id)
    done = task_lifecycle.update_task_status(task.id, "completed", actor_id=paralegal.id)

    assert done.status == "completed"
    assert _db.session.get(MatterStage, aml_id).status == "completed"
    nxt = _db.session.get(MatterStage, next_id)
    assert nxt.status == "in_progress"
    assert [t.title for t in nxt.tasks] == ["Order searches"]


def test_plain_evidence_requirement(make_matter, make_template):
    _, wf = _activate(make_matter, make_template, stages=[
        {"name": "S", "task_templates": [task_tpl("Upload", requires_evidence=True)]},
    ])
    task = wf.stages[0].tasks[0]
    with pytest.raises(GateUnsatisfiedError) as exc_info:
        task_lifecycle.update_task_status(task.id, "completed")
    assert exc_info.value.missing == ["evidence"]

    task_lifecycle.attach_evidence(task.id, "letter")
    assert task_lifecycle.update_task_status(task.id, "completed").status == "completed"


def test_verify_rejects_foreign_evidence(make_matter, make_template, supervisor):
    _, wf = _activate(make_matter, make_template)
    first, second = wf.stages[0].tasks[:2]
    item = task_lifecycle.attach_evidence(second.id, "id_document")
    with pytest.raises(ValidationError):
        task_lifecycle.verify_evidence(first.id, item.id, supervisor.id)


def test_verify_twice_rejected(make_matter, make_template, supervisor):
    _, wf = _activate(make_matter, make_template)
    task = wf.stages[0].tasks[0]
    item = task_lifecycle.attach_evidence(task.id, "id_document")
    task_lifecycle.verify_evidence(task.id, item.id, supervisor.id)
    with pytest.raises(ValidationError):
        task_lifecycle.verify_evidence(task.id, item.id, supervisor.id)


def test_inactive_verifier_rejected(make_matter, make_template, make_user):
    leaver = make_user("leaver@firm.test", "supervisor", "Former Partner", is_active=False)
    _, wf = _activate(make_matter, make_template)
    task = wf.stages[0].tasks[0]
    item = task_lifecycle.attach_evidence(task.id, "id_document")
    with pytest.raises(ValidationError):
        task_lifecycle.verify_evidence(task.id, item.id, leaver.id)


def test_blank_evidence_type_rejected(make_matter, make_template):
    _, wf = _activate(make_matter, make_template)
    with pytest.raises(ValidationError):
        task_lifecycle.attach_evidence(wf.stages[0].tasks[0].id, "  ")


# ── 3. Skips and undo ────────────────────────────────────────────────────────


def test_skip_requires_reason(make_matter, make_template, supervisor):
    _, wf = _activate(make_matter, make_template)
    task = wf.stages[0].tasks[0]
    with pytest.raises(InvalidExceptionError):
        task_lifecycle.update_task_status(task.id, "skipped", actor_id=supervisor.id, reason="   ")
    assert _db.session.get(Task, task.id).status == "pending"
    assert TaskException.query.count() == 0


def test_skip_requires_authorised_approver(make_matter, make_template, paralegal):
    _, wf = _activate(make_matter, make_template)
    task = wf.stages[0].tasks[0]
    with pytest.raises(InvalidExceptionError):
        task_lifecycle.update_task_status(task.id, "skipped", actor_id=paralegal.id,
                                          reason="Client already known")
    assert _db.session.get(Task, task.id).status == "pending"
    assert TaskException.query.count() == 0


def test_skip_with_supervisor_resolves_task(make_matter, make_template, paralegal, supervisor):
    _, wf = _activate(make_matter, make_template)
    task = wf.stages[0].tasks[0]

    skipped = task_lifecycle.update_task_status(
        task.id, "skipped", actor_id=paralegal.id,
        reason="Instruction taken at previous matter", approver_id=supervisor.id,
    )

    assert skipped.status == "skipped"
    assert skipped.is_resolved is True
    exc = skipped.active_exception
    assert exc.object_type == "task" and exc.object_id == str(task.id)
    assert exc.exception_type == "skipped"
    assert exc.approved_by_id == supervisor.id
    assert exc.approved_by_name_snapshot == "Sam Supervisor"
    assert exc.context == {"from_status": "pending", "requested_by_id": paralegal.id}


def test_not_applicable_with_actor_as_approver(make_matter, make_template, supervisor):
    _, wf = _activate(make_matter, make_template)
    task = wf.stages[0].tasks[1]
    marked = task_lifecycle.update_task_status(task.id, "not_applicable", actor_id=supervisor.id,
                                               reason="No other parties")
    assert marked.active_exception.exception_type == "not_applicable"
    assert marked.active_exception.approved_by_id == supervisor.id


def test_undo_skip_keeps_ledger_row(make_matter, make_template, supervisor):
    _, wf = _activate(make_matter, make_template)
    task = wf.stages[0].tasks[0]
    task_lifecycle.update_task_status(task.id, "skipped", actor_id=supervisor.id, reason="Duplicate")

    restored = task_lifecycle.update_task_status(task.id, "pending", actor_id=supervisor.id)

    assert restored.status == "pending"
    assert restored.active_exception_id is None
    assert restored.is_resolved is False
    rows = TaskException.query.filter_by(object_type="task", object_id=str(task.id)).all()
    assert len(rows) == 1


def test_skipping_last_mandatory_task_completes_stage(make_matter, make_template, supervisor):
    _, wf = _activate(make_matter, make_template, attributes={"has_mortgage": False})
    a_id, c_id = wf.stages[0].id, wf.stages[2].id
    first, second, _ = _tasks(a_id)

    task_lifecycle.update_task_status(first.id, "completed")
    task_lifecycle.update_task_status(second.id, "skipped", actor_id=supervisor.id, reason="Conflict checked on intake")

    assert _db.session.get(MatterStage, a_id).status == "completed"
    # B was skipped at activation; C is next.
    assert _db.session.get(MatterStage, c_id).status == "in_progress"


# ── 4. Approvals ─────────────────────────────────────────────────────────────


def _approval_stage():
    return [{"name": "Sign-off", "task_templates": [task_tpl("Approve contract", requires_approval=True)]}]


def test_approval_required_for_completion(make_matter, make_template, paralegal, supervisor):
    _, wf = _activate(make_matter, make_template, stages=_approval_stage())
    task = wf.stages[0].tasks[0]

    with pytest.raises(GateUnsatisfiedError) as exc_info:
        task_lifecycle.update_task_status(task.id, "completed")
    assert exc_info.value.missing == ["approval"]

    requested = task_lifecycle.request_approval(task.id, paralegal.id)
    assert requested.approval_status == "pending"
    # A second request while pending is a no-op.
    assert task_lifecycle.request_approval(task.id, paralegal.id).approval_status == "pending"

    approved = task_lifecycle.decide_approval(task.id, supervisor.id, "approved", "Looks right")
    assert approved.approval_status == "approved"
    assert approved.approved_by_id == supervisor.id
    assert approved.approval_comment == "Looks right"

    assert task_lifecycle.update_task_status(task.id, "completed").status == "completed"


def test_approval_needs_role(make_matter, make_template, paralegal, secretary):
    _, wf = _activate(make_matter, make_template, stages=_approval_stage())
    task = wf.stages[0].tasks[0]
    task_lifecycle.request_approval(task.id, secretary.id)
    with pytest.raises(ValidationError):
        task_lifecycle.decide_approval(task.id, paralegal.id, "approved")
    assert _db.session.get(Task, task.id).approval_status == "pending"


def test_self_approval_blocked(make_matter, make_template, supervisor):
    _, wf = _activate(make_matter, make_template, stages=_approval_stage())
    task = wf.stages[0].tasks[0]
    task_lifecycle.request_approval(task.id, supervisor.id)
    with pytest.raises(ValidationError):
        task_lifecycle.decide_approval(task.id, supervisor.id, "approved")


def test_rejection_allows_new_request(make_matter, make_template, paralegal, supervisor):
    _, wf = _activate(make_matter, make_template, stages=_approval_stage())
    task = wf.stages[0].tasks[0]
    task_lifecycle.request_approval(task.id, paralegal.id)
    rejected = task_lifecycle.decide_approval(task.id, supervisor.id, "rejected", "Wrong parties")
    assert rejected.approval_status == "rejected"

    again = task_lifecycle.request_approval(task.id, paralegal.id)
    assert again.approval_status == "pending"
    assert again.approved_by_id is None


def test_decision_without_request_rejected(make_matter, make_template, supervisor):
    _, wf = _activate(make_matter, make_template, stages=_approval_stage())
    with pytest.raises(ValidationError):
        task_lifecycle.decide_approval(wf.stages[0].tasks[0].id, supervisor.id, "approved")


def test_request_on_task_without_approval_rejected(make_matter, make_template, paralegal):
    _, wf = _activate(make_matter, make_template)
    with pytest.raises(ValidationError):
        task_lifecycle.request_approval(wf.stages[0].tasks[0].id, paralegal.id)


def test_specific_approver_role(make_matter, make_template, paralegal, make_user):
    fee_earner = make_user("fe@firm.test", "fee_earner", "Fran Fee-Earner")
    _, wf = _activate(make_matter, make_template, stages=[{
        "name": "S",
        "task_templates": [task_tpl("Check", requires_approval=True, required_approver_role="fee_earner")],
    }])
    task = wf.stages[0].tasks[0]
    task_lifecycle.request_approval(task.id, paralegal.id)
    assert task_lifecycle.decide_approval(task.id, fee_earner.id, "approved").approval_status == "approved"


# ── 5. Manual tasks and due dates ────────────────────────────────────────────


def test_manual_task_never_gates(make_matter, make_template):
    matter, wf = _activate(make_matter, make_template)
    manual = task_lifecycle.create_manual_task(matter.id, "Call the client", priority="high",
                                               is_mandatory=True)
    assert manual.source == "manual"
    assert manual.matter_stage_id is None

    done = task_lifecycle.update_task_status(manual.id, "completed")
    assert done.status == "completed"
    assert _db.session.get(MatterStage, wf.stages[0].id).status == "in_progress"


def test_manual_task_validation(make_matter):
    matter = make_matter()
    with pytest.raises(ValidationError):
        task_lifecycle.create_manual_task(matter.id, "   ")
    with pytest.raises(ValidationError):
        task_lifecycle.create_manual_task(matter.id, "Call", priority="whenever")
    with pytest.raises(ValidationError):
        task_lifecycle.create_manual_task(matter.id, "Call", matter_stage_id=1)
    with pytest.raises(NotFoundError):
        task_lifecycle.create_manual_task(999, "Call")


def test_manual_task_field_rules_match_catalog(make_matter):
    matter = make_matter()
    with pytest.raises(ValidationError) as exc_info:
        task_lifecycle.create_manual_task(matter.id, "Partner sign-off", requires_approval=True,
                                          required_approver_role="partner")
    assert "required_approver_role" in exc_info.value.details
    with pytest.raises(ValidationError):
        task_lifecycle.create_manual_task(matter.id, "Call", is_mandatory="yes")
    with pytest.raises(ValidationError):
        task_lifecycle.create_manual_task(matter.id, "Call", required_evidence_types="passport")
    assert Task.query.filter_by(matter_id=matter.id).count() == 0


def test_manual_task_approval_by_named_role(make_matter, paralegal, supervisor):
    matter = make_matter()
    task = task_lifecycle.create_manual_task(matter.id, "Fee estimate sign-off", requires_approval=True,
                                             required_approver_role="supervisor",
                                             required_evidence_types=["fee_estimate"])
    task_lifecycle.request_approval(task.id, paralegal.id)
    approved = task_lifecycle.decide_approval(task.id, supervisor.id, "approved")
    assert approved.approval_status == "approved"
    assert task_lifecycle.completion_blockers(approved) == ["evidence_type:fee_estimate"]


def test_refresh_due_dates_when_anchor_becomes_known(make_matter, make_template):
    matter, wf = _activate(make_matter, make_template, stages=[{
        "name": "S",
        "task_templates": [task_tpl("Post-opening check", relative_due_days=7, due_date_anchor="matter_opened")],
    }])
    task_id = wf.stages[0].tasks[0].id
    assert _db.session.get(Task, task_id).due_date is None
    assert task_lifecycle.refresh_due_dates(matter.id) == 0

    row = _db.session.get(Matter, matter.id)
    row.opened_at = datetime(2026, 4, 1, tzinfo=timezone.utc)
    _db.session.commit()

    assert task_lifecycle.refresh_due_dates(matter.id) == 1
    task = _db.session.get(Task, task_id)
    assert (task.due_date.year, task.due_date.month, task.due_date.day) == (2026, 4, 8)
