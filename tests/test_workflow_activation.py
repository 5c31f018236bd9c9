"""
Workflow activation tests.

Test blocks:
  1. Stage instantiation and initial skips
  2. Template resolution (id, key, default selection)
  3. Rejections (duplicate, draft, retired, missing matter)
"""

import pytest

from conftest import task_tpl, three_stage_template
from matterflow.core.exceptions import DuplicateWorkflowError, NotFoundError, ValidationError
from matterflow.models.exception import TaskException
from matterflow.models.task import Task
from matterflow.models.timeline import TimelineEvent
from matterflow.models.workflow import MatterStage, MatterWorkflow
from matterflow.services import template_catalog, workflow_activator
from matterflow.services.stage_gate import SYSTEM_SKIP_REASON


# ── 1. Instantiation ─────────────────────────────────────────────────────────


def test_activation_skips_inapplicable_stage(make_matter, make_template, supervisor):
    """No mortgage: A starts with its tasks, B is skipped by the system, C waits."""
    matter = make_matter(attributes={"has_mortgage": False})
    tpl = make_template(three_stage_template())

    wf = workflow_activator.activate(matter.id, tpl.id, activated_by=supervisor.id)

    assert wf.workflow_version == "1.0.0"
    assert wf.activated_by_id == supervisor.id
    a, b, c = wf.stages
    assert [s.status for s in (a, b, c)] == ["in_progress", "skipped", "pending"]
    assert wf.current_stage_id == a.id

    assert [t.title for t in a.tasks] == ["Record instruction", "Conflict check", "Optional welcome call"]
    assert all(t.source == "workflow" and t.status == "pending" for t in a.tasks)
    assert b.tasks == [] and c.tasks == []

    assert "has_mortgage" in b.skipped_reason
    exc = b.exception
    assert exc.object_type == "stage"
    assert exc.exception_type == "not_applicable"
    assert exc.decision_source == "system"
    assert exc.reason == SYSTEM_SKIP_REASON
    assert exc.approved_by_id is None
    assert exc.context["triggered_by_id"] == supervisor.id


def test_activation_with_mortgage_keeps_all_stages(make_matter, make_template):
    matter = make_matter(attributes={"has_mortgage": True})
    tpl = make_template(three_stage_template())

    wf = workflow_activator.activate(matter.id, tpl.id)

    assert [s.status for s in wf.stages] == ["in_progress", "pending", "pending"]
    assert TaskException.query.count() == 0


def test_missing_attribute_counts_as_not_met(make_matter, make_template):
    matter = make_matter(attributes={})
    tpl = make_template(three_stage_template())

    wf = workflow_activator.activate(matter.id, tpl.id)

    assert wf.stages[1].status == "skipped"


def test_activation_cascades_through_stages_without_mandatory_work(make_matter, make_template):
    """A stage with nothing mandatory completes the moment it starts."""
    matter = make_matter()
    tpl = make_template([
        {"name": "Intro", "task_templates": [task_tpl("Optional read", is_mandatory=False)]},
        {"name": "Real work", "gate_type": "hard", "task_templates": [task_tpl("Do it")]},
    ])

    wf = workflow_activator.activate(matter.id, tpl.id)

    intro, work = wf.stages
    assert intro.status == "completed"
    assert work.status == "in_progress"
    assert wf.current_stage_id == work.id
    assert [t.title for t in work.tasks] == ["Do it"]


def test_activation_records_timeline_after_commit(make_matter, make_template):
    matter = make_matter(attributes={"has_mortgage": False})
    tpl = make_template(three_stage_template())

    workflow_activator.activate(matter.id, tpl.id)

    types = [e.event_type for e in TimelineEvent.query.filter_by(matter_id=matter.id).order_by(TimelineEvent.id)]
    assert types == ["workflow_activated", "stage_skipped", "stage_started"]


def test_task_due_dates_resolved_from_anchor(make_matter, make_template):
    matter = make_matter()
    tpl = make_template([{
        "name": "Dated",
        "task_templates": [
            task_tpl("From stage start", relative_due_days=3, due_date_anchor="stage_started"),
            task_tpl("From opening", relative_due_days=3, due_date_anchor="matter_opened"),
            task_tpl("Default anchor", relative_due_days=1),
            task_tpl("Undated"),
        ],
    }])

    wf = workflow_activator.activate(matter.id, tpl.id)
    by_title = {t.title: t for t in wf.stages[0].tasks}

    started = wf.stages[0].started_at
    assert (by_title["From stage start"].due_date - started).days == 3
    # Matter has no opened_at yet; the date stays undetermined.
    assert by_title["From opening"].due_date is None
    assert by_title["Default anchor"].due_date_anchor == "task_created"
    assert by_title["Default anchor"].due_date is not None
    assert by_title["Undated"].due_date is None


# ── 2. Template resolution ───────────────────────────────────────────────────


def test_activate_by_key_pins_latest_version(make_matter, make_template):
    matter = make_matter()
    make_template(three_stage_template(), version="1.0.0")
    make_template(three_stage_template(), version="1.1.0")

    wf = workflow_activator.activate(matter.id, "test-workflow")

    assert wf.workflow_version == "1.1.0"


def test_activate_by_key_and_version(make_matter, make_template):
    matter = make_matter()
    make_template(three_stage_template(), version="1.0.0")
    make_template(three_stage_template(), version="1.1.0")

    wf = workflow_activator.activate(matter.id, "test-workflow", "1.0.0")

    assert wf.workflow_version == "1.0.0"


def test_activate_for_matter_picks_default(make_matter, make_template):
    matter = make_matter()
    make_template(three_stage_template(), key="other", version="5.0.0")
    default = make_template(three_stage_template(), key="preferred", is_default=True)

    wf = workflow_activator.activate_for_matter(matter.id)

    assert wf.workflow_template_id == default.id


def test_activate_for_matter_without_candidates(make_matter):
    matter = make_matter(practice_area="probate", sub_type=None)
    with pytest.raises(ValidationError):
        workflow_activator.activate_for_matter(matter.id)


# ── 3. Rejections ────────────────────────────────────────────────────────────


def test_duplicate_activation_rejected(make_matter, make_template):
    matter = make_matter()
    tpl = make_template(three_stage_template())
    first = workflow_activator.activate(matter.id, tpl.id)
    first_id = first.id

    with pytest.raises(DuplicateWorkflowError) as exc_info:
        workflow_activator.activate(matter.id, tpl.id)

    assert exc_info.value.existing_workflow_id == first_id
    assert MatterWorkflow.query.filter_by(matter_id=matter.id).count() == 1
    assert MatterStage.query.count() == 3
    assert Task.query.count() == 3


def test_draft_template_rejected(make_matter, make_template):
    matter = make_matter()
    tpl = make_template(three_stage_template(), release=False)
    with pytest.raises(ValidationError):
        workflow_activator.activate(matter.id, tpl.id)
    assert MatterWorkflow.query.count() == 0


def test_retired_template_rejected(make_matter, make_template):
    matter = make_matter()
    tpl = make_template(three_stage_template())
    template_catalog.set_template_active(tpl.id, False)
    with pytest.raises(ValidationError):
        workflow_activator.activate(matter.id, tpl.id)


def test_version_mismatch_by_id_rejected(make_matter, make_template):
    matter = make_matter()
    tpl = make_template(three_stage_template())
    with pytest.raises(ValidationError):
        workflow_activator.activate(matter.id, tpl.id, "9.0.0")


def test_missing_matter(make_template):
    tpl = make_template(three_stage_template())
    with pytest.raises(NotFoundError):
        workflow_activator.activate(999, tpl.id)
