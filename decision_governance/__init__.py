"""
Decision Governance Engine
Flask Application Factory.

Usage:
    from decision_governance import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import importlib
import logging
import os

from flask import Flask, request
from flask_cors import CORS
from flask_migrate import Migrate

from decision_governance.config import config
from decision_governance.middleware.logging_config import configure_logging
from decision_governance.models import db

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
    config_class = config[config_name]
    if config_name == "production":
        app.config.from_object(config_class())
    else:
        app.config.from_object(config_class)

    configure_logging(app)

    db.init_app(app)
    migrate.init_app(app, db)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Models (register tables on db.metadata) ──────────────────────────
    from decision_governance.models import organization as _organization_models  # noqa: F401
    from decision_governance.models import decision as _decision_models          # noqa: F401
    from decision_governance.models import conflict as _conflict_models          # noqa: F401
    from decision_governance.models import governance as _governance_models      # noqa: F401
    from decision_governance.models import audit as _audit_models                # noqa: F401
    from decision_governance.models import notification as _notification_models  # noqa: F401
    from decision_governance.models import scheduling as _scheduling_models      # noqa: F401

    # Development SQLite file lives under instance/
    if not app.config.get("TESTING"):
        os.makedirs(app.instance_path, exist_ok=True)

    with app.app_context():
        try:
            db.create_all()
            app.logger.info("db.create_all() completed successfully")
        except Exception as e:
            app.logger.warning("db.create_all() failed: %s", e)

    from decision_governance.blueprints.decision_bp import decision_bp
    from decision_governance.blueprints.entity_bp import entity_bp
    from decision_governance.blueprints.conflict_bp import conflict_bp
    from decision_governance.blueprints.notification_bp import notification_bp
    from decision_governance.blueprints.organization_bp import organization_bp

    app.register_blueprint(organization_bp)
    app.register_blueprint(decision_bp)
    app.register_blueprint(entity_bp)
    app.register_blueprint(conflict_bp)
    app.register_blueprint(notification_bp)

    @app.route("/api/v1/health")
    def health():
        return {"status": "ok", "app": "Decision Governance Engine"}

    @app.errorhandler(404)
    def not_found(e):
        return {"error": "Not found", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error"}, 500

    # ── Scheduler initialization (import jobs to register them) ──────────
    importlib.import_module("decision_governance.services.scheduled_jobs")
    from decision_governance.services.scheduler_service import SchedulerService
    SchedulerService.init_app(app)

    return app
