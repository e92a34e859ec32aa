"""
PipeTrak Milestones
Flask Application Factory.

Usage:
    from pipetrak import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

import click
from flask import Flask, request
from flask.cli import AppGroup
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate

from pipetrak.config import config
from pipetrak.models import db
from pipetrak.middleware.logging_config import configure_logging
from pipetrak.middleware.rate_limiter import init_rate_limits
from pipetrak.middleware.timing import init_request_timing

# ── SQLite FK enforcement (global engine event) ─────────────────────────
from sqlalchemy import event as _sa_event, engine as _sa_engine

logger = logging.getLogger(__name__)


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        # SQLAlchemy emits BEGIN itself (see _sqlite_begin) so SAVEPOINTs nest correctly
        dbapi_conn.isolation_level = None
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


@_sa_event.listens_for(_sa_engine.Engine, "begin")
def _sqlite_begin(conn):
    if conn.dialect.name == "sqlite":
        conn.exec_driver_sql("BEGIN")


migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],                     # no global limit - apply per-blueprint
    storage_uri=os.getenv("REDIS_URL", "memory://"),  # Redis in production, memory for dev
)

pipetrak_cli = AppGroup("pipetrak", help="PipeTrak milestone maintenance commands.")


@pipetrak_cli.command("create-project")
@click.argument("job_number")
@click.argument("job_name")
def create_project_cmd(job_number, job_name):
    """Create a project and seed its default milestone templates."""
    from pipetrak.models.pipetrak import Project
    from pipetrak.services.milestone_persistence_service import seed_default_templates

    project = Project(job_number=job_number, job_name=job_name)
    db.session.add(project)
    db.session.flush()
    count = seed_default_templates(project.id)
    db.session.commit()
    logger.info("Created project %s (id=%s) with %s templates.", job_number, project.id, count)


@pipetrak_cli.command("seed-templates")
@click.argument("project_id", type=int)
def seed_templates_cmd(project_id):
    """Seed the default ROC-aligned milestone templates for a project."""
    from pipetrak.services.milestone_persistence_service import seed_default_templates

    count = seed_default_templates(project_id)
    db.session.commit()
    logger.info("Seeded %s new milestone templates for project %s.", count, project_id)


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
    app.config.from_object(config[config_name])

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
        from flask import abort
        if request.method in ("POST", "PUT", "PATCH") and request.path.startswith("/api/"):
            ct = request.content_type or ""
            if request.data and "json" not in ct:
                abort(415, description="Content-Type must be application/json")

    # ── Import all models so Alembic can detect them ─────────────────────
    from pipetrak.models import pipetrak as _pipetrak_models  # noqa: F401

    # ── Auto-create tables (safe for production - CREATE IF NOT EXISTS) ──
    with app.app_context():
        if app.config.get("SQLALCHEMY_DATABASE_URI", "").startswith("sqlite:///") and not app.testing:
            os.makedirs(app.instance_path, exist_ok=True)
        try:
            db.create_all()
            app.logger.info("db.create_all() completed successfully")
        except Exception as e:
            app.logger.warning("db.create_all() failed: %s", e)

    # ── Blueprints ───────────────────────────────────────────────────────
    from pipetrak.blueprints.health_bp import health_bp
    from pipetrak.blueprints.milestone_bp import milestone_bp

    app.register_blueprint(health_bp)
    app.register_blueprint(milestone_bp)

    init_rate_limits(app, limiter)

    # ── CLI commands ─────────────────────────────────────────────────────
    app.cli.add_command(pipetrak_cli)

    @app.route("/api/v1/health")
    def health():
        return {"status": "ok", "app": "PipeTrak Milestones"}

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        return {"error": "Not found", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(415)
    def unsupported_media_type(e):
        return {"error": e.description or "Unsupported media type"}, 415

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "detail": str(e.description)}, 429

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error"}, 500

    return app
