"""Shared request helpers for blueprints.

get_json_body:   request JSON as a dict (empty dict when absent)
get_actor_id:    acting user from X-User-Id or the body's actor_id
text_field:      stripped string field, None when the JSON value is not a string
parse_datetime:  ISO date/datetime input → aware datetime (raises ValueError)
"""
import logging
from datetime import date, datetime, time, timezone

from flask import request

from matterflow.core.exceptions import ValidationError

logger = logging.getLogger(__name__)


def get_json_body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _as_int(value, field):
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer", details={field: "invalid"})
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer", details={field: "invalid"}) from None


def get_actor_id(data: dict | None = None) -> int | None:
    """Acting user id.  Authentication is handled upstream of this service.

    The ``X-User-Id`` header wins over an ``actor_id`` body field.
    """
    header = request.headers.get("X-User-Id")
    if header:
        return _as_int(header, "X-User-Id")
    return _as_int((data or {}).get("actor_id"), "actor_id")


def optional_int(data: dict, field: str) -> int | None:
    return _as_int(data.get(field), field)


def text_field(data: dict, field: str) -> str | None:
    """Stripped string value of ``field``; "" when absent, None when not a string."""
    value = data.get(field)
    if value is None:
        return ""
    if not isinstance(value, str):
        return None
    return value.strip()


def parse_datetime(value):
    """Parse an ISO date or datetime string, raising ValueError on bad input.

    Dates become midnight UTC; naive datetimes are taken as UTC.
    """
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime.combine(value, time.min)
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
