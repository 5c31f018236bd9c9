"""
Matter Workflow Engine
Workflow domain models: templates, stages and their matter-bound instances.

Models:
    - WorkflowTemplate:      versioned definition for a practice area (immutable once released)
    - WorkflowStage:         ordered stage of a template with gate semantics
    - WorkflowTaskTemplate:  task blueprint inside a stage
    - MatterWorkflow:        one per matter, pinned to a template version
    - MatterStage:           stage instance on a matter with derived status

Architecture:
    WorkflowTemplate ──1:N──▶ WorkflowStage ──1:N──▶ WorkflowTaskTemplate
    Matter ──1:1──▶ MatterWorkflow ──1:N──▶ MatterStage ──1:N──▶ Task

Lifecycle states:
    WorkflowTemplate:  draft → released (no edits afterwards; is_active may still be toggled)
    MatterStage:       pending → in_progress → completed  |  pending → skipped
"""

from datetime import datetime, timezone

from sqlalchemy import event, inspect
from sqlalchemy.orm import Session

from matterflow.core.exceptions import TemplateImmutableError
from matterflow.models import db

# ── Constants ────────────────────────────────────────────────────────────────

GATE_TYPES = ("hard", "soft", "none")

COMPLETION_CRITERIA = ("all_mandatory_tasks", "all_tasks", "custom")

DUE_DATE_ANCHORS = ("stage_started", "task_created", "matter_created", "matter_opened")

STAGE_STATUSES = ("pending", "in_progress", "completed", "skipped")

# Stage statuses that still need work.
OPEN_STAGE_STATUSES = frozenset({"pending", "in_progress"})

TASK_PRIORITIES = ("low", "medium", "high", "urgent")

# Column edits still permitted on a released template.
RELEASED_TEMPLATE_MUTABLE_FIELDS = frozenset({"is_active"})


def _utcnow():
    return datetime.now(timezone.utc)


def parse_version(version: str) -> tuple[int, int, int]:
    """Parse ``MAJOR.MINOR.PATCH`` into a sortable tuple.

    Raises ValueError on anything else.
    """
    if not isinstance(version, str):
        raise ValueError(f"Invalid semantic version: {version!r}")
    parts = version.strip().split(".")
    if len(parts) != 3 or not all(p.isdigit() for p in parts):
        raise ValueError(f"Invalid semantic version: {version!r}")
    return int(parts[0]), int(parts[1]), int(parts[2])


# ═════════════════════════════════════════════════════════════════════════════
# Template catalog
# ═════════════════════════════════════════════════════════════════════════════


class WorkflowTemplate(db.Model):
    """
    Versioned workflow definition.

    Business rules:
    - (key, version) is unique.
    - Once ``released_at`` is set the template, its stages and task
      templates are read-only; corrections ship as a new version.
    - ``sub_types`` NULL means the template applies to every sub type of
      its practice area.
    """

    __tablename__ = "workflow_templates"
    __table_args__ = (
        db.UniqueConstraint("key", "version", name="uq_workflow_templates_key_version"),
        db.Index("ix_workflow_templates_practice_area", "practice_area"),
        db.Index("ix_workflow_templates_active", "is_active"),
    )

    id = db.Column(db.Integer, primary_key=True)
    key = db.Column(db.String(100), nullable=False, comment="Stable identifier, e.g. residential-purchase")
    version = db.Column(db.String(20), nullable=False, comment="Semantic version, e.g. 2.3.0")
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    practice_area = db.Column(db.String(30), nullable=False)
    sub_types = db.Column(db.JSON, nullable=True, comment="list[str] | NULL (= all sub types)")
    selection_conditions = db.Column(db.JSON, nullable=True)
    is_default = db.Column(db.Boolean, nullable=False, default=False)
    released_at = db.Column(db.DateTime(timezone=True), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    stages = db.relationship(
        "WorkflowStage",
        back_populates="template",
        order_by="WorkflowStage.sort_order",
        cascade="all, delete-orphan",
    )

    @property
    def is_released(self) -> bool:
        return self.released_at is not None

    @property
    def version_tuple(self) -> tuple[int, int, int]:
        return parse_version(self.version)

    def applies_to_sub_type(self, sub_type: str | None) -> bool:
        if not self.sub_types:
            return True
        return sub_type in self.sub_types

    def to_dict(self, include_stages=False):
        data = {
            "id": self.id,
            "key": self.key,
            "version": self.version,
            "name": self.name,
            "description": self.description,
            "practice_area": self.practice_area,
            "sub_types": self.sub_types,
            "selection_conditions": self.selection_conditions,
            "is_default": self.is_default,
            "released_at": self.released_at.isoformat() if self.released_at else None,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if include_stages:
            data["stages"] = [s.to_dict(include_tasks=True) for s in self.stages]
        return data

    def __repr__(self):
        return f"<WorkflowTemplate {self.key}@{self.version}>"


class WorkflowStage(db.Model):
    """Ordered stage of a template; ``sort_order`` is 1..n without gaps once released."""

    __tablename__ = "workflow_stages"
    __table_args__ = (
        db.UniqueConstraint("workflow_template_id", "sort_order", name="uq_workflow_stages_template_sort"),
    )

    id = db.Column(db.Integer, primary_key=True)
    workflow_template_id = db.Column(
        db.Integer, db.ForeignKey("workflow_templates.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    sort_order = db.Column(db.Integer, nullable=False)
    gate_type = db.Column(db.String(10), nullable=False, default="none", comment="hard | soft | none")
    completion_criteria = db.Column(
        db.String(30), nullable=False, default="all_mandatory_tasks",
        comment="all_mandatory_tasks | all_tasks | custom",
    )
    applicability_conditions = db.Column(
        db.JSON, nullable=True,
        comment="Condition map evaluated against matter attributes; NULL = always applies",
    )
    client_visible = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    template = db.relationship("WorkflowTemplate", back_populates="stages")
    task_templates = db.relationship(
        "WorkflowTaskTemplate",
        back_populates="stage",
        order_by="WorkflowTaskTemplate.sort_order",
        cascade="all, delete-orphan",
    )

    def to_dict(self, include_tasks=False):
        data = {
            "id": self.id,
            "workflow_template_id": self.workflow_template_id,
            "name": self.name,
            "description": self.description,
            "sort_order": self.sort_order,
            "gate_type": self.gate_type,
            "completion_criteria": self.completion_criteria,
            "applicability_conditions": self.applicability_conditions,
            "client_visible": self.client_visible,
        }
        if include_tasks:
            data["task_templates"] = [t.to_dict() for t in self.task_templates]
        return data

    def __repr__(self):
        return f"<WorkflowStage {self.id} #{self.sort_order} {self.name}>"


class WorkflowTaskTemplate(db.Model):
    """Blueprint for a task generated when its stage starts."""

    __tablename__ = "workflow_task_templates"
    __table_args__ = (
        db.UniqueConstraint("stage_id", "sort_order", name="uq_workflow_task_templates_stage_sort"),
    )

    id = db.Column(db.Integer, primary_key=True)
    stage_id = db.Column(
        db.Integer, db.ForeignKey("workflow_stages.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    is_mandatory = db.Column(db.Boolean, nullable=False, default=False)
    requires_evidence = db.Column(db.Boolean, nullable=False, default=False)
    required_evidence_types = db.Column(db.JSON, nullable=True, comment="list[str] | NULL")
    requires_verified_evidence = db.Column(db.Boolean, nullable=False, default=False)
    requires_approval = db.Column(db.Boolean, nullable=False, default=False)
    required_approver_role = db.Column(db.String(30), nullable=True)
    default_priority = db.Column(db.String(10), nullable=False, default="medium")
    relative_due_days = db.Column(db.Integer, nullable=True)
    due_date_anchor = db.Column(
        db.String(20), nullable=True,
        comment="stage_started | task_created | matter_created | matter_opened",
    )
    client_visible = db.Column(db.Boolean, nullable=False, default=False)
    regulatory_basis = db.Column(db.Text, nullable=True)
    sort_order = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    stage = db.relationship("WorkflowStage", back_populates="task_templates")

    def to_dict(self):
        return {
            "id": self.id,
            "stage_id": self.stage_id,
            "title": self.title,
            "description": self.description,
            "is_mandatory": self.is_mandatory,
            "requires_evidence": self.requires_evidence,
            "required_evidence_types": self.required_evidence_types,
            "requires_verified_evidence": self.requires_verified_evidence,
            "requires_approval": self.requires_approval,
            "required_approver_role": self.required_approver_role,
            "default_priority": self.default_priority,
            "relative_due_days": self.relative_due_days,
            "due_date_anchor": self.due_date_anchor,
            "client_visible": self.client_visible,
            "regulatory_basis": self.regulatory_basis,
            "sort_order": self.sort_order,
        }

    def __repr__(self):
        return f"<WorkflowTaskTemplate {self.id} {self.title}>"


# ═════════════════════════════════════════════════════════════════════════════
# Matter-bound instances
# ═════════════════════════════════════════════════════════════════════════════


class MatterWorkflow(db.Model):
    """
    Workflow instance pinned to a matter and template version.

    ``current_stage_id`` is a cache of the first stage that is neither
    completed nor skipped.  Only the gate evaluator writes it.
    """

    __tablename__ = "matter_workflows"
    __table_args__ = (
        db.UniqueConstraint("matter_id", name="uq_matter_workflows_matter"),
    )

    id = db.Column(db.Integer, primary_key=True)
    matter_id = db.Column(
        db.Integer, db.ForeignKey("matters.id", ondelete="CASCADE"), nullable=False,
    )
    workflow_template_id = db.Column(
        db.Integer, db.ForeignKey("workflow_templates.id", ondelete="RESTRICT"),
        nullable=False, index=True,
    )
    workflow_version = db.Column(db.String(20), nullable=False, comment="Pinned version (denormalised for audit)")
    activated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    activated_by_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    current_stage_id = db.Column(db.Integer, nullable=True, comment="Cache; derivable from stage statuses")
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    matter = db.relationship("Matter", back_populates="workflow")
    template = db.relationship("WorkflowTemplate")
    stages = db.relationship(
        "MatterStage",
        back_populates="workflow",
        order_by="MatterStage.sort_order",
        cascade="all, delete-orphan",
    )

    @property
    def is_completed(self) -> bool:
        return self.completed_at is not None

    def to_dict(self, include_stages=False):
        data = {
            "id": self.id,
            "matter_id": self.matter_id,
            "workflow_template_id": self.workflow_template_id,
            "workflow_key": self.template.key if self.template else None,
            "workflow_version": self.workflow_version,
            "activated_at": self.activated_at.isoformat() if self.activated_at else None,
            "activated_by_id": self.activated_by_id,
            "current_stage_id": self.current_stage_id,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
        if include_stages:
            data["stages"] = [s.to_dict() for s in self.stages]
        return data

    def __repr__(self):
        return f"<MatterWorkflow {self.id} matter={self.matter_id} v{self.workflow_version}>"


class MatterStage(db.Model):
    """
    Stage instance for one MatterWorkflow.

    ``version`` is the optimistic-lock column: two evaluators racing on the
    same stage cannot both write it, the loser gets StaleDataError and
    re-runs against the committed state.
    """

    __tablename__ = "matter_stages"
    __table_args__ = (
        db.UniqueConstraint("matter_workflow_id", "sort_order", name="uq_matter_stages_workflow_sort"),
    )

    id = db.Column(db.Integer, primary_key=True)
    matter_workflow_id = db.Column(
        db.Integer, db.ForeignKey("matter_workflows.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    workflow_stage_id = db.Column(
        db.Integer, db.ForeignKey("workflow_stages.id", ondelete="RESTRICT"), nullable=False,
    )
    name = db.Column(db.String(255), nullable=False)
    sort_order = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(20), nullable=False, default="pending")
    skipped_reason = db.Column(db.Text, nullable=True)
    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    exception_id = db.Column(
        db.Integer, db.ForeignKey("task_exceptions.id", ondelete="RESTRICT"), nullable=True,
        comment="Exception justifying a skip or forced gate progression",
    )
    version = db.Column(db.Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    workflow = db.relationship("MatterWorkflow", back_populates="stages")
    workflow_stage = db.relationship("WorkflowStage")
    exception = db.relationship("TaskException", foreign_keys=[exception_id])
    tasks = db.relationship(
        "Task",
        back_populates="stage",
        order_by="Task.id",
    )

    @property
    def gate_type(self) -> str:
        return self.workflow_stage.gate_type if self.workflow_stage else "none"

    @property
    def completion_criteria(self) -> str:
        return self.workflow_stage.completion_criteria if self.workflow_stage else "all_mandatory_tasks"

    @property
    def applicability_conditions(self) -> dict | None:
        return self.workflow_stage.applicability_conditions if self.workflow_stage else None

    def to_dict(self):
        return {
            "id": self.id,
            "matter_workflow_id": self.matter_workflow_id,
            "workflow_stage_id": self.workflow_stage_id,
            "name": self.name,
            "sort_order": self.sort_order,
            "status": self.status,
            "gate_type": self.gate_type,
            "completion_criteria": self.completion_criteria,
            "skipped_reason": self.skipped_reason,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "exception_id": self.exception_id,
        }

    def __repr__(self):
        return f"<MatterStage {self.id} #{self.sort_order} {self.status}>"


# ── Release guard ────────────────────────────────────────────────────────────


def _was_released(template: WorkflowTemplate | None) -> bool:
    """True when the template was already released before the pending flush."""
    if template is None:
        return False
    hist = inspect(template).attrs.released_at.history
    if hist.deleted:
        return hist.deleted[0] is not None
    if hist.added:
        # Set in this flush from NULL (or on a pending INSERT).
        return False
    # Unchanged; loads the column if it was expired by a previous commit.
    return template.released_at is not None


def _changed_columns(obj) -> set[str]:
    state = inspect(obj)
    return {
        attr.key for attr in state.mapper.column_attrs
        if state.attrs[attr.key].history.has_changes()
    }


def _owning_template(session, obj) -> WorkflowTemplate | None:
    with session.no_autoflush:
        if isinstance(obj, WorkflowTemplate):
            return obj
        if isinstance(obj, WorkflowStage):
            if obj.template is not None:
                return obj.template
            if obj.workflow_template_id is not None:
                return session.get(WorkflowTemplate, obj.workflow_template_id)
            return None
        if isinstance(obj, WorkflowTaskTemplate):
            stage = obj.stage
            if stage is None and obj.stage_id is not None:
                stage = session.get(WorkflowStage, obj.stage_id)
            return _owning_template(session, stage) if stage is not None else None
    return None


_CATALOG_TYPES = (WorkflowTemplate, WorkflowStage, WorkflowTaskTemplate)


@event.listens_for(Session, "before_flush")
def _guard_released_templates(session, flush_context, instances):
    """Reject any write that would alter a released template or its children."""
    for obj in session.new:
        if isinstance(obj, (WorkflowStage, WorkflowTaskTemplate)):
            template = _owning_template(session, obj)
            if _was_released(template):
                raise TemplateImmutableError(template.key, template.version, type(obj).__name__)

    for obj in session.dirty:
        if not isinstance(obj, _CATALOG_TYPES):
            continue
        changed = _changed_columns(obj)
        if not changed:
            continue
        template = _owning_template(session, obj)
        if not _was_released(template):
            continue
        if isinstance(obj, WorkflowTemplate) and changed <= RELEASED_TEMPLATE_MUTABLE_FIELDS:
            continue
        raise TemplateImmutableError(template.key, template.version, type(obj).__name__)

    for obj in session.deleted:
        if isinstance(obj, _CATALOG_TYPES):
            template = _owning_template(session, obj)
            if _was_released(template):
                raise TemplateImmutableError(template.key, template.version, type(obj).__name__)
