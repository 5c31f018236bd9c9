"""
Due-date resolver.

    resolve("stage_started", 5, {"stage_started": started_at})  →  started_at + 5 days

``None`` means *not yet determinable* (the anchor event has not happened),
never "no due date".  Tasks that carry no offset simply have no due date;
that is decided by the caller before resolving.
"""

from datetime import datetime, timedelta

from matterflow.core.exceptions import ValidationError
from matterflow.models.workflow import DUE_DATE_ANCHORS

# Anchor used when a template gives an offset without naming one.
DEFAULT_ANCHOR = "task_created"


def resolve(anchor_type: str, relative_days: int, context: dict) -> datetime | None:
    """Return the anchor timestamp shifted by ``relative_days`` (may be negative)."""
    if anchor_type not in DUE_DATE_ANCHORS:
        raise ValidationError(
            f"Unknown due date anchor '{anchor_type}'",
            details={"due_date_anchor": f"must be one of {list(DUE_DATE_ANCHORS)}"},
        )
    if relative_days is None:
        return None
    anchor = (context or {}).get(anchor_type)
    if anchor is None:
        return None
    return anchor + timedelta(days=int(relative_days))


def anchor_context(task=None, stage=None, matter=None) -> dict:
    """Build a resolver context from whatever rows are at hand."""
    return {
        "stage_started": stage.started_at if stage is not None else None,
        "task_created": task.created_at if task is not None else None,
        "matter_created": matter.created_at if matter is not None else None,
        "matter_opened": matter.opened_at if matter is not None else None,
    }
