"""
Health check blueprint.

Endpoints:
    GET /api/v1/health  - liveness plus a database round trip
"""

import logging
import time

from flask import Blueprint, jsonify

from matterflow.models import db

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__, url_prefix="/api/v1/health")


@health_bp.route("", methods=["GET"])
def health():
    checks = {}
    overall = True
    try:
        t0 = time.perf_counter()
        db.session.execute(db.text("SELECT 1"))
        checks["database"] = {"status": "ok", "latency_ms": round((time.perf_counter() - t0) * 1000, 1)}
    except Exception as exc:
        db.session.rollback()
        checks["database"] = {"status": "error", "detail": str(exc)}
        overall = False
        logger.error("Health check - database failed: %s", exc)

    body = {"status": "ok" if overall else "degraded", "app": "matterflow", "checks": checks}
    return jsonify(body), 200 if overall else 503
