"""
Clinical Privilege Approvals
Flask Application Factory.

Usage:
    from privileges import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import importlib
import logging
import os

import click
from flask import Flask
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate

from privileges.config import config
from privileges.core.exceptions import ConflictError, NotFoundError, ValidationError
from privileges.middleware.logging_config import configure_logging
from privileges.middleware.rate_limiter import init_rate_limits
from privileges.models import db
from privileges.utils.errors import E, api_error

logger = logging.getLogger(__name__)

# ── SQLite FK enforcement (global engine event) ─────────────────────────
from sqlalchemy import event as _sa_event, engine as _sa_engine  # noqa: E402


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
    default_limits=[],                     # per-blueprint limits only
    storage_uri=os.getenv("RATELIMIT_STORAGE_URI", "memory://"),
)


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    cfg = config[config_name]
    # Production validates its required environment on instantiation
    app.config.from_object(cfg() if cfg is config["production"] else cfg)

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

    # ── Import all models so Alembic can detect them ─────────────────────
    from privileges.models import privilege as _privilege_models        # noqa: F401
    from privileges.models import approval as _approval_models          # noqa: F401
    from privileges.models import escalation as _escalation_models      # noqa: F401
    from privileges.models import notification as _notification_models  # noqa: F401
    from privileges.models import scheduling as _scheduling_models      # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    os.makedirs(app.instance_path, exist_ok=True)
    with app.app_context():
        try:
            db.create_all()
            app.logger.info("db.create_all() completed successfully")
        except Exception as e:
            app.logger.warning("db.create_all() failed: %s", e)

    # ── Blueprints ───────────────────────────────────────────────────────
    from privileges.blueprints.approval_bp import approval_bp
    from privileges.blueprints.escalation_bp import escalation_bp
    from privileges.blueprints.health_bp import health_bp

    app.register_blueprint(approval_bp)
    app.register_blueprint(escalation_bp)
    app.register_blueprint(health_bp)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("seed-approval-rules")
    def seed_approval_rules_cmd():
        """Seed the approval requirement rule table with the default matrix."""
        from privileges.services.rule_table import seed_default_rules
        count = seed_default_rules()
        db.session.commit()
        logger.info("Seeded %s new approval rules.", count)

    @app.cli.command("run-job")
    @click.argument("name")
    def run_job_cmd(name):
        """Run a registered scheduled job once."""
        from privileges.services.scheduler_service import SchedulerService
        result = SchedulerService.run_job(name)
        logger.info("Job %s finished: %s", name, result.get("status"))

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(NotFoundError)
    def handle_not_found(e):
        return api_error(E.NOT_FOUND, str(e))

    @app.errorhandler(ValidationError)
    def handle_validation(e):
        return api_error(E.VALIDATION_RULE, str(e), details=e.details)

    @app.errorhandler(ConflictError)
    def handle_conflict(e):
        return api_error(E.CONFLICT_DUPLICATE, str(e))

    @app.errorhandler(404)
    def not_found(e):
        from flask import request
        return {"error": "Not found", "path": request.path}, 404

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error"}, 500

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    # ── Scheduler initialization (import jobs to register them) ──────────
    importlib.import_module("privileges.services.scheduled_jobs")  # registers @register_job handlers
    from privileges.services.scheduler_service import SchedulerService as _SchedulerSvc
    _SchedulerSvc.init_app(app)
    _SchedulerSvc.ensure_jobs_registered()

    # ── Background escalation runner (opt-in) ────────────────────────────
    if app.config.get("ESCALATION_RUNNER_ENABLED"):
        from privileges.services.escalation_runner import ScheduledEscalationRunner
        runner = ScheduledEscalationRunner(
            lambda: _SchedulerSvc.run_job("escalation_sweep"),
            interval_minutes=app.config.get("ESCALATION_INTERVAL_MINUTES", 60),
        )
        app.extensions["escalation_runner"] = runner
        runner.start()

    return app