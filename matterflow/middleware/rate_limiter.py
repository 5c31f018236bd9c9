"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in matterflow/__init__.py with no default
limits; this module applies granular limits per route category.

Usage:
    from matterflow.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

# Blueprint name → limit string
BLUEPRINT_LIMITS = {
    "workflow_templates": "60/minute",
    "matter_workflow": "120/minute",
    "tasks": "120/minute",
}


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Template authoring:      60/minute
        - Workflow / task routes: 120/minute
        - Health check:           exempt

    Rate limiting is disabled in testing mode.
    """
    if app.config.get("TESTING") or not app.config.get("RATELIMIT_ENABLED", True):
        app.logger.info("Rate limiter disabled")
        return

    for bp_name, limit in BLUEPRINT_LIMITS.items():
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(limit)(bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info("Rate limiter configured: %s", ", ".join(f"{k}={v}" for k, v in BLUEPRINT_LIMITS.items()))
