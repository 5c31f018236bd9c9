"""
Matter Workflow Engine
Timeline model: persisted copy of the domain events the engine emits.

Written by the default event subscriber after the originating transaction
has committed; a failed write here never affects the stage transition.
"""

import json
from datetime import datetime, timezone

from matterflow.models import db

EVENT_TYPES = {
    "workflow_activated",
    "workflow_completed",
    "stage_started",
    "stage_completed",
    "stage_skipped",
    "gate_overridden",
}


class TimelineEvent(db.Model):
    """One row per published workflow event."""

    __tablename__ = "timeline_events"
    __table_args__ = (
        db.Index("idx_timeline_matter", "matter_id"),
        db.Index("idx_timeline_type", "event_type"),
    )

    id = db.Column(db.Integer, primary_key=True)
    matter_id = db.Column(db.Integer, nullable=False)
    stage_id = db.Column(db.Integer, nullable=True)
    event_type = db.Column(db.String(40), nullable=False)
    from_status = db.Column(db.String(20), nullable=True)
    to_status = db.Column(db.String(20), nullable=True)
    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    payload_json = db.Column(db.Text, default="{}")

    @property
    def payload(self) -> dict:
        try:
            return json.loads(self.payload_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "matter_id": self.matter_id,
            "stage_id": self.stage_id,
            "event_type": self.event_type,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "occurred_at": self.occurred_at.isoformat() if self.occurred_at else None,
            "payload": self.payload,
        }

    def __repr__(self):
        return f"<TimelineEvent {self.id}: {self.event_type} matter={self.matter_id}>"
