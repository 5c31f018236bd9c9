"""
Matter Workflow Engine
Task domain models: workflow-generated and manual tasks plus their evidence.

Models:
    - Task:          unit of work on a matter; workflow tasks belong to a MatterStage
    - EvidenceItem:  proof attached to a task (document, check result, ...)

Lifecycle states:
    Task:  pending → in_progress → completed (terminal)
           pending | in_progress → skipped | not_applicable  (requires a TaskException)
           skipped | not_applicable → pending                (undo; exception row kept)

EvidenceItem.task_id deliberately carries no foreign key: the evidence store
is owned by a separate service.  Ownership is validated by task_lifecycle on
every evidence write.
"""

from datetime import datetime, timezone

from matterflow.core.exceptions import ValidationError
from matterflow.models import db

# ── Constants ────────────────────────────────────────────────────────────────

TASK_STATUSES = ("pending", "in_progress", "completed", "skipped", "not_applicable")

TASK_SOURCES = ("workflow", "manual")

APPROVAL_STATUSES = ("pending", "approved", "rejected")

# Statuses that are only valid while a TaskException justifies them.
EXCEPTION_STATUSES = frozenset({"skipped", "not_applicable"})

TASK_TRANSITIONS = {
    "pending":        ["in_progress", "completed", "skipped", "not_applicable"],
    "in_progress":    ["pending", "completed", "skipped", "not_applicable"],
    "completed":      [],
    "skipped":        ["pending"],
    "not_applicable": ["pending"],
}

VERIFICATION_METHODS = ("manual_review", "electronic_check", "third_party", "original_seen")


def validate_task_transition(old_status, new_status):
    """Check if a task status transition is allowed."""
    return new_status in TASK_TRANSITIONS.get(old_status, [])


def _utcnow():
    return datetime.now(timezone.utc)


class Task(db.Model):
    """
    Task on a matter.

    Business rules:
    - ``matter_stage_id`` is NULL for manual tasks; those never gate a stage.
    - ``is_mandatory`` cannot change after creation.
    - A task is *resolved* when completed, or when skipped / not_applicable
      and ``active_exception_id`` points at the TaskException justifying it.
    """

    __tablename__ = "tasks"
    __table_args__ = (
        db.Index("ix_tasks_matter_status", "matter_id", "status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    matter_id = db.Column(
        db.Integer, db.ForeignKey("matters.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    matter_stage_id = db.Column(
        db.Integer, db.ForeignKey("matter_stages.id", ondelete="CASCADE"), nullable=True, index=True,
    )
    workflow_task_template_id = db.Column(
        db.Integer, db.ForeignKey("workflow_task_templates.id", ondelete="SET NULL"), nullable=True,
    )
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    source = db.Column(db.String(20), nullable=False, default="manual", comment="workflow | manual")
    status = db.Column(db.String(20), nullable=False, default="pending")
    priority = db.Column(db.String(10), nullable=False, default="medium")

    is_mandatory = db.Column(db.Boolean, nullable=False, default=False)
    requires_evidence = db.Column(db.Boolean, nullable=False, default=False)
    required_evidence_types = db.Column(db.JSON, nullable=True)
    requires_verified_evidence = db.Column(db.Boolean, nullable=False, default=False)
    requires_approval = db.Column(db.Boolean, nullable=False, default=False)
    required_approver_role = db.Column(db.String(30), nullable=True)
    approval_status = db.Column(db.String(20), nullable=True, comment="pending | approved | rejected")
    approval_requested_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    approved_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    approval_comment = db.Column(db.Text, nullable=True)

    due_date = db.Column(db.DateTime(timezone=True), nullable=True)
    due_date_anchor = db.Column(db.String(20), nullable=True)
    relative_due_days = db.Column(db.Integer, nullable=True)

    assignee_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    client_visible = db.Column(db.Boolean, nullable=False, default=False)
    regulatory_basis = db.Column(db.Text, nullable=True)

    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    active_exception_id = db.Column(
        db.Integer, db.ForeignKey("task_exceptions.id", ondelete="RESTRICT"), nullable=True,
        comment="Exception justifying the current skipped / not_applicable status",
    )

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    stage = db.relationship("MatterStage", back_populates="tasks")
    active_exception = db.relationship("TaskException", foreign_keys=[active_exception_id])

    @db.validates("is_mandatory")
    def _freeze_mandatory(self, key, value):
        if self.id is not None and self.is_mandatory is not None and bool(value) != self.is_mandatory:
            raise ValidationError(
                "is_mandatory cannot be changed after a task is created",
                details={"is_mandatory": "immutable"},
            )
        return value

    @property
    def is_workflow_task(self) -> bool:
        return self.source == "workflow" and self.matter_stage_id is not None

    @property
    def is_resolved(self) -> bool:
        if self.status == "completed":
            return True
        return self.status in EXCEPTION_STATUSES and (
            self.active_exception_id is not None or self.active_exception is not None
        )

    @property
    def needs_evidence(self) -> bool:
        return bool(self.requires_evidence or self.requires_verified_evidence)

    def to_dict(self):
        return {
            "id": self.id,
            "matter_id": self.matter_id,
            "matter_stage_id": self.matter_stage_id,
            "workflow_task_template_id": self.workflow_task_template_id,
            "title": self.title,
            "description": self.description,
            "source": self.source,
            "status": self.status,
            "priority": self.priority,
            "is_mandatory": self.is_mandatory,
            "requires_evidence": self.requires_evidence,
            "required_evidence_types": self.required_evidence_types,
            "requires_verified_evidence": self.requires_verified_evidence,
            "requires_approval": self.requires_approval,
            "required_approver_role": self.required_approver_role,
            "approval_status": self.approval_status,
            "approved_by_id": self.approved_by_id,
            "approved_at": self.approved_at.isoformat() if self.approved_at else None,
            "approval_comment": self.approval_comment,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "due_date_anchor": self.due_date_anchor,
            "relative_due_days": self.relative_due_days,
            "assignee_id": self.assignee_id,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "active_exception_id": self.active_exception_id,
            "is_resolved": self.is_resolved,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Task {self.id} {self.status} {self.title[:30]}>"


class EvidenceItem(db.Model):
    """Evidence linked to a task by id; ``verified_at`` is what completion gates read."""

    __tablename__ = "evidence_items"

    id = db.Column(db.Integer, primary_key=True)
    task_id = db.Column(db.Integer, nullable=False, index=True, comment="Task id; integrity enforced by task_lifecycle")
    evidence_type = db.Column(db.String(60), nullable=False, comment="e.g. id_document, proof_of_address")
    document_id = db.Column(db.String(64), nullable=True, comment="Opaque document-store reference")
    description = db.Column(db.Text, nullable=True)
    added_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    verified_at = db.Column(db.DateTime(timezone=True), nullable=True)
    verified_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    verification_method = db.Column(db.String(30), nullable=True)
    verification_notes = db.Column(db.Text, nullable=True)

    @property
    def is_verified(self) -> bool:
        return self.verified_at is not None

    def to_dict(self):
        return {
            "id": self.id,
            "task_id": self.task_id,
            "evidence_type": self.evidence_type,
            "document_id": self.document_id,
            "description": self.description,
            "added_by_id": self.added_by_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "verified_at": self.verified_at.isoformat() if self.verified_at else None,
            "verified_by_id": self.verified_by_id,
            "verification_method": self.verification_method,
            "verification_notes": self.verification_notes,
        }

    def __repr__(self):
        return f"<EvidenceItem {self.id} task={self.task_id} {self.evidence_type}>"
