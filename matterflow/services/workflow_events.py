"""
Workflow domain events.

Services call ``emit()`` while the unit of work is open; the event is
buffered on the session and handed to the installed publisher only after
the transaction commits (see ``services.transaction``).  Rolled-back work
publishes nothing.

Delivery is fire-and-forget: each subscriber runs inside its own
try/except, failures are logged with traceback and never reach the caller
or undo the committed transition.

The default publisher is an ``EventBus`` with one subscriber,
``record_timeline_event``, which persists every event as a TimelineEvent row.
"""

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone

from matterflow.models import db
from matterflow.models.timeline import EVENT_TYPES, TimelineEvent

logger = logging.getLogger(__name__)

_BUFFER_KEY = "matterflow.pending_events"


@dataclass(frozen=True)
class WorkflowEvent:
    event_type: str
    matter_id: int
    stage_id: int | None = None
    from_status: str | None = None
    to_status: str | None = None
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    payload: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["occurred_at"] = self.occurred_at.isoformat()
        return data


class EventBus:
    """In-process publisher that fans events out to subscribers."""

    def __init__(self, subscribers=None):
        self._subscribers = list(subscribers or [])

    @property
    def subscribers(self) -> list:
        return list(self._subscribers)

    def subscribe(self, handler) -> None:
        if handler not in self._subscribers:
            self._subscribers.append(handler)

    def unsubscribe(self, handler) -> None:
        if handler in self._subscribers:
            self._subscribers.remove(handler)

    def publish(self, event: WorkflowEvent) -> None:
        for handler in list(self._subscribers):
            try:
                handler(event)
            except Exception:
                logger.warning(
                    "Event subscriber %s failed for %s",
                    getattr(handler, "__name__", handler), event.event_type,
                    exc_info=True,
                    extra={"matter_id": event.matter_id, "stage_id": event.stage_id,
                           "event_type": event.event_type},
                )


# ── Buffer (per session) ─────────────────────────────────────────────────────


def emit(event_type: str, matter_id: int, stage_id: int | None = None,
         from_status: str | None = None, to_status: str | None = None, **payload) -> WorkflowEvent:
    """Queue a domain event for publication after the current commit."""
    if event_type not in EVENT_TYPES:
        raise ValueError(f"Unknown workflow event type: {event_type}")
    event = WorkflowEvent(
        event_type=event_type,
        matter_id=matter_id,
        stage_id=stage_id,
        from_status=from_status,
        to_status=to_status,
        payload=payload,
    )
    db.session.info.setdefault(_BUFFER_KEY, []).append(event)
    return event


def pending_events() -> list[WorkflowEvent]:
    return list(db.session.info.get(_BUFFER_KEY, []))


def discard_pending() -> None:
    db.session.info.pop(_BUFFER_KEY, None)


def drain_pending() -> list[WorkflowEvent]:
    return db.session.info.pop(_BUFFER_KEY, [])


def publish_all(publisher, events: list[WorkflowEvent]) -> None:
    """Hand committed events to ``publisher``; never raises."""
    for event in events:
        try:
            publisher.publish(event)
        except Exception:
            logger.warning(
                "Publishing %s failed", event.event_type, exc_info=True,
                extra={"matter_id": event.matter_id, "event_type": event.event_type},
            )


# ── Default subscriber ───────────────────────────────────────────────────────


def record_timeline_event(event: WorkflowEvent) -> None:
    """Persist the event as a TimelineEvent in its own short transaction."""
    row = TimelineEvent(
        matter_id=event.matter_id,
        stage_id=event.stage_id,
        event_type=event.event_type,
        from_status=event.from_status,
        to_status=event.to_status,
        occurred_at=event.occurred_at,
        payload_json=json.dumps(event.payload, default=str),
    )
    try:
        db.session.add(row)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise


def default_event_bus() -> EventBus:
    return EventBus([record_timeline_event])
