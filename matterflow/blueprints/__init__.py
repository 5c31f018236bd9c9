"""
Matter Workflow Engine
Blueprint registry helpers: pagination and the shared error handlers.
"""

import logging

from flask import request

from matterflow.core.exceptions import ConflictError, NotFoundError, ValidationError, WorkflowError
from matterflow.utils.errors import E, api_error

logger = logging.getLogger(__name__)


def paginate_query(query, default_limit=200, max_limit=1000):
    """Apply limit/offset pagination to a SQLAlchemy query.

    Query params:
        limit  - max items (default 200, capped at max_limit)
        offset - starting position (default 0)

    Returns:
        (items_list, total_count)
    """
    total = query.count()
    try:
        limit = min(int(request.args.get("limit", default_limit)), max_limit)
    except (ValueError, TypeError):
        limit = default_limit
    try:
        offset = max(int(request.args.get("offset", 0)), 0)
    except (ValueError, TypeError):
        offset = 0
    items = query.limit(limit).offset(offset).all()
    return items, total


def register_error_handlers(app):
    """Map service exceptions to the JSON error envelope once, app-wide."""

    @app.errorhandler(NotFoundError)
    def _not_found(exc):
        return api_error(E.NOT_FOUND, str(exc))

    @app.errorhandler(ValidationError)
    def _validation(exc):
        return api_error(E.VALIDATION_CONSTRAINT, str(exc), details=exc.details)

    @app.errorhandler(ConflictError)
    def _conflict(exc):
        return api_error(E.CONFLICT_DUPLICATE, str(exc),
                         details={"resource": exc.resource, "field": exc.field, "value": exc.value})

    @app.errorhandler(WorkflowError)
    def _workflow(exc):
        logger.info("Workflow rule rejected %s %s: %s", request.method, request.path, exc)
        return api_error(exc.code, str(exc), details=exc.details)
