"""Standardised API error responses.

Usage
-----
    from matterflow.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Matter not found")
    return api_error(E.VALIDATION_REQUIRED, "status is required")
    return api_error(E.GATE_BLOCKED, "Gate blocked", details={"pending_task_ids": [3]})
"""

from __future__ import annotations

from flask import jsonify


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants.

    Convention:
     • ERR_  prefix for standard application errors
     • workflow errors reuse the exception's own ``code``
    """

    # Malformed input – HTTP 400
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"

    # Business-rule validation – HTTP 422
    VALIDATION_CONSTRAINT = "ERR_VALIDATION_CONSTRAINT"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Conflict / duplicate – HTTP 409
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"

    # Server – HTTP 500
    DATABASE = "ERR_DATABASE"
    INTERNAL = "ERR_INTERNAL"

    # Workflow engine
    TEMPLATE_IMMUTABLE = "TEMPLATE_IMMUTABLE"
    DUPLICATE_WORKFLOW = "DUPLICATE_WORKFLOW"
    GATE_UNSATISFIED = "GATE_UNSATISFIED"
    GATE_BLOCKED = "GATE_BLOCKED"
    INVALID_EXCEPTION = "INVALID_EXCEPTION"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    APPLICABILITY_EVALUATION = "APPLICABILITY_EVALUATION"
    CONCURRENT_UPDATE = "CONCURRENT_UPDATE"
    WORKFLOW_ERROR = "WORKFLOW_ERROR"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.VALIDATION_CONSTRAINT: 422,
    E.NOT_FOUND: 404,
    E.CONFLICT_DUPLICATE: 409,
    E.DATABASE: 500,
    E.INTERNAL: 500,
    E.TEMPLATE_IMMUTABLE: 409,
    E.DUPLICATE_WORKFLOW: 409,
    E.GATE_UNSATISFIED: 409,
    E.GATE_BLOCKED: 409,
    E.INVALID_EXCEPTION: 422,
    E.INVALID_TRANSITION: 422,
    E.APPLICABILITY_EVALUATION: 422,
    E.CONCURRENT_UPDATE: 409,
    E.WORKFLOW_ERROR: 422,
}


def status_for(code: str) -> int:
    return _DEFAULT_STATUS.get(code, 400)


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation for developers / UI.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra structured payload (missing preconditions, blocking task IDs, ...).

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """
    http_status = status or status_for(code)

    body: dict = {
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details

    return jsonify(body), http_status
