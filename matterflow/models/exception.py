"""
Matter Workflow Engine
Exception ledger model: the compliance record behind every override.

One table serves both targets (task skips / not-applicable markings and
stage-level skips / gate overrides): ``object_type`` is the discriminant and
``object_id`` the opaque target key, so there is one audit ledger and one
idempotence rule.

Business rules:
- Rows are APPEND-ONLY.  Update and delete are rejected at flush time.
- ``reason`` is mandatory and non-blank.
- ``approved_by_name_snapshot`` is captured at record time so the trail
  stays readable if the user row is later removed.
- The object holds the pointer to its *active* exception
  (Task.active_exception_id / MatterStage.exception_id); reverting an object
  clears the pointer, the row stays.
"""

from datetime import datetime, timezone

from sqlalchemy import event, inspect
from sqlalchemy.orm import Session

from matterflow.core.exceptions import InvalidExceptionError
from matterflow.models import db

# ── Constants ────────────────────────────────────────────────────────────────

OBJECT_TYPES = frozenset({"task", "stage"})

EXCEPTION_TYPES = frozenset({"skipped", "not_applicable", "gate_override"})

DECISION_SOURCES = frozenset({"user", "system"})

# Which exception types may target which object type.
ALLOWED_EXCEPTION_TYPES = {
    "task": frozenset({"skipped", "not_applicable"}),
    "stage": frozenset({"skipped", "not_applicable", "gate_override"}),
}


class TaskException(db.Model):
    """Immutable, reason-carrying override record tied to an approver."""

    __tablename__ = "task_exceptions"
    __table_args__ = (
        db.Index("ix_task_exceptions_object", "object_type", "object_id"),
        db.Index("ix_task_exceptions_matter", "matter_id"),
        db.CheckConstraint("length(trim(reason)) > 0", name="ck_task_exceptions_reason_not_blank"),
    )

    id = db.Column(db.Integer, primary_key=True)
    matter_id = db.Column(
        db.Integer, db.ForeignKey("matters.id", ondelete="CASCADE"), nullable=False,
    )
    object_type = db.Column(db.String(10), nullable=False, comment="task | stage")
    object_id = db.Column(db.String(64), nullable=False, comment="Polymorphic target key as string")
    exception_type = db.Column(
        db.String(20), nullable=False, comment="skipped | not_applicable | gate_override",
    )
    reason = db.Column(db.Text, nullable=False)
    decision_source = db.Column(db.String(10), nullable=False, default="user", comment="user | system")
    approved_by_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    approved_by_name_snapshot = db.Column(db.String(255), nullable=True)
    approved_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    context = db.Column(
        db.JSON, nullable=True,
        comment="Decision context, e.g. gate type and blocked task ids for overrides",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "matter_id": self.matter_id,
            "object_type": self.object_type,
            "object_id": self.object_id,
            "exception_type": self.exception_type,
            "reason": self.reason,
            "decision_source": self.decision_source,
            "approved_by_id": self.approved_by_id,
            "approved_by_name": self.approved_by_name_snapshot,
            "approved_at": self.approved_at.isoformat() if self.approved_at else None,
            "context": self.context or {},
        }

    def __repr__(self) -> str:
        return f"<TaskException #{self.id} {self.object_type}/{self.object_id} {self.exception_type}>"


@event.listens_for(Session, "before_flush")
def _guard_append_only(session, flush_context, instances):
    """Reject edits and deletes of ledger rows."""
    for obj in session.dirty:
        if isinstance(obj, TaskException):
            state = inspect(obj)
            if any(state.attrs[a.key].history.has_changes() for a in state.mapper.column_attrs):
                raise InvalidExceptionError(
                    f"TaskException {obj.id} is immutable",
                    details={"exception_id": obj.id},
                )
    for obj in session.deleted:
        if isinstance(obj, TaskException):
            raise InvalidExceptionError(
                f"TaskException {obj.id} cannot be deleted",
                details={"exception_id": obj.id},
            )
