"""
Approval Routing Engine
Flask Application Factory.

Usage:
    from approval_routing import create_app
    app = create_app()           # defaults to APP_ENV or "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

import click
from flask import Flask, request
from flask_cors import CORS
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event

from approval_routing.config import config
from approval_routing.middleware.logging_config import configure_logging
from approval_routing.middleware.request_context import init_request_context
from approval_routing.models import db

logger = logging.getLogger(__name__)


# ── SQLite FK enforcement (global engine event) ─────────────────────────
@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()


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
    app.config.from_object(config[config_name]())

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Principal headers + request timing ───────────────────────────────
    init_request_context(app)

    # ── Import all models so create_all / Alembic see them ───────────────
    from approval_routing.models import approval as _approval_models          # noqa: F401
    from approval_routing.models import notification as _notification_models  # noqa: F401
    from approval_routing.models import project_role as _project_role_models  # noqa: F401
    from approval_routing.models import scheduling as _scheduling_models      # noqa: F401

    db_uri = app.config["SQLALCHEMY_DATABASE_URI"]
    if db_uri.startswith("sqlite:///") and ":memory:" not in db_uri:
        # Local dev database lives under instance/
        os.makedirs(os.path.dirname(db_uri[len("sqlite:///"):]), exist_ok=True)

    # ── Auto-create tables (CREATE IF NOT EXISTS) ─────────────────────────
    with app.app_context():
        try:
            db.create_all()
            app.logger.info("db.create_all() completed successfully")
        except Exception as e:
            app.logger.warning("db.create_all() failed: %s", e)

    # ── Blueprints ───────────────────────────────────────────────────────
    from approval_routing.blueprints.approval_bp import approval_bp
    from approval_routing.blueprints.threshold_settings_bp import threshold_settings_bp

    app.register_blueprint(approval_bp)
    app.register_blueprint(threshold_settings_bp)

    # ── Approval engine + scheduler ──────────────────────────────────────
    from approval_routing.services import approval_engine
    from approval_routing.services.scheduler_service import SchedulerService

    approval_engine.init_app(app)
    SchedulerService.init_app(app)
    if app.config.get("APPROVAL_SWEEP_ENABLED"):
        SchedulerService.start(app.config["APPROVAL_SWEEP_INTERVAL_SECONDS"])

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("sweep-approvals")
    def sweep_approvals_cmd():
        """Run the approval escalation sweep once."""
        outcome = SchedulerService.run_job("approval_escalation_sweep")
        click.echo(f"{outcome['status']}: {outcome['result'] or outcome['error']}")

    @app.cli.command("seed-approval-thresholds")
    @click.option("--tenant", "tenant_id", required=True, help="Tenant to install the defaults for.")
    def seed_approval_thresholds_cmd(tenant_id):
        """Install the default construction approval thresholds for a tenant."""
        from approval_routing.services.threshold_service import seed_default_thresholds

        result = seed_default_thresholds(tenant_id)
        click.echo(f"Created {len(result['created'])} thresholds, skipped {len(result['skipped'])}.")

    # ── Health check ─────────────────────────────────────────────────────
    @app.route("/api/v1/health")
    def health():
        return {"status": "ok", "app": "Approval Routing Engine"}

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        return {"error": "Not found", "code": "NOT_FOUND", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed", "code": "METHOD_NOT_ALLOWED"}, 405

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error", "code": "INTERNAL"}, 500

    return app
