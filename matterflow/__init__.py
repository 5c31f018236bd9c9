"""
Matter Workflow Engine
Flask Application Factory.

Usage:
    from matterflow import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

from flask import Flask
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate

from matterflow.config import config
from matterflow.models import db
from matterflow.middleware.logging_config import configure_logging
from matterflow.middleware.rate_limiter import init_rate_limits
from matterflow.middleware.timing import init_request_timing

logger = logging.getLogger(__name__)

# ── SQLite FK enforcement (global engine event) ─────────────────────────
from sqlalchemy import event as _sa_event, engine as _sa_engine


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],                     # no global limit; applied per blueprint
    storage_uri=os.getenv("RATELIMIT_STORAGE_URI", "memory://"),
)


def create_app(config_name=None, collaborators=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.
        collaborators: Optional overrides for the workflow collaborator
                     gateways (``attributes``, ``roles``, ``evidence``,
                     ``events``).

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    cfg = config[config_name]
    app.config.from_object(cfg() if config_name == "production" else cfg)

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)

    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Request timing middleware ────────────────────────────────────────
    init_request_timing(app)

    # ── Request guards (input length + Content-Type) ─────────────────────
    app.config.setdefault("MAX_CONTENT_LENGTH", 2 * 1024 * 1024)  # 2 MB

    @app.before_request
    def _guard_request():
        from flask import abort, request as _req

        if _req.method in ("POST", "PUT", "PATCH") and _req.path.startswith("/api/"):
            ct = _req.content_type or ""
            if _req.data and "json" not in ct:
                abort(415, description="Content-Type must be application/json")

    # ── Workflow collaborators ───────────────────────────────────────────
    from matterflow.integrations.collaborators import install_collaborators
    install_collaborators(app, **(collaborators or {}))

    # ── Import all models so Alembic can detect them ─────────────────────
    from matterflow.models import auth as _auth_models           # noqa: F401
    from matterflow.models import matter as _matter_models       # noqa: F401
    from matterflow.models import workflow as _workflow_models   # noqa: F401
    from matterflow.models import task as _task_models           # noqa: F401
    from matterflow.models import exception as _exception_models  # noqa: F401
    from matterflow.models import timeline as _timeline_models   # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    if app.config.get("TESTING") or app.config.get("DEBUG"):
        with app.app_context():
            try:
                db.create_all()
            except Exception as e:
                app.logger.warning("db.create_all() failed: %s", e)

    # ── Blueprints ───────────────────────────────────────────────────────
    from matterflow.blueprints import register_error_handlers
    from matterflow.blueprints.health_bp import health_bp
    from matterflow.blueprints.matter_workflow_bp import matter_workflow_bp
    from matterflow.blueprints.tasks_bp import tasks_bp
    from matterflow.blueprints.workflow_templates_bp import workflow_templates_bp

    app.register_blueprint(health_bp)
    app.register_blueprint(workflow_templates_bp)
    app.register_blueprint(matter_workflow_bp)
    app.register_blueprint(tasks_bp)

    register_error_handlers(app)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("seed-workflow-templates")
    def seed_workflow_templates_cmd():
        """Create and release the default workflow templates."""
        from matterflow.services.template_seeds import seed_default_templates
        count = seed_default_templates()
        logger.info("Seeded %s new workflow templates.", count)

    @app.cli.command("reconcile-current-stage")
    def reconcile_current_stage_cmd():
        """Compare every workflow's cached current stage with the derived one."""
        from matterflow.models.workflow import MatterWorkflow
        from matterflow.services.stage_gate import reconcile_current_stage
        repaired = 0
        for (matter_id,) in db.session.query(MatterWorkflow.matter_id).all():
            if reconcile_current_stage(matter_id)["repaired"]:
                repaired += 1
        logger.info("current_stage_id reconciled; %d workflow(s) repaired.", repaired)

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        from flask import request
        return {"error": "Not found", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(415)
    def unsupported_media(e):
        return {"error": e.description}, 415

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error"}, 500

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    return app
