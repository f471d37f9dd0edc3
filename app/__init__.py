"""
Incident Ledger
Flask Application Factory.

Usage:
    from app import create_app
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

from app.ai.generator import build_generator
from app.config import config
from app.models import db
from app.middleware.logging_config import configure_logging
from app.middleware.rate_limiter import init_rate_limits
from app.middleware.timing import init_request_timing

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
    default_limits=[],                     # no global limit, applied per blueprint
    storage_uri=os.getenv("REDIS_URL", "memory://"),
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
    app.config.from_object(config[config_name])
    os.makedirs(app.instance_path, exist_ok=True)  # default SQLite file lives here

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
        from flask import request as _req, abort
        max_len = app.config.get("MAX_CONTENT_LENGTH")
        if max_len and _req.content_length and _req.content_length > max_len:
            abort(413, description="Request body too large")
        if _req.method in ("POST", "PUT", "PATCH") and _req.path.startswith("/api/"):
            ct = _req.content_type or ""
            if _req.data and "json" not in ct:
                abort(415, description="Content-Type must be application/json")

    # ── Import all models so Alembic can detect them ─────────────────────
    from app.models import service as _service_models        # noqa: F401
    from app.models import incident as _incident_models      # noqa: F401
    from app.models import sla as _sla_models                # noqa: F401
    from app.models import quarter as _quarter_models        # noqa: F401
    from app.models import enrichment as _enrichment_models  # noqa: F401
    from app.models import audit as _audit_models            # noqa: F401

    from app.services.sla_service import seed_defaults

    with app.app_context():
        db.create_all()
        seed_defaults()

    # ── Text generator (one per app) ─────────────────────────────────────
    app.extensions["generator"] = build_generator(app.config)
    logger.info(
        "Generator configured: %s (%s)",
        app.config.get("GENERATOR_PROVIDER"),
        app.extensions["generator"].base_url,
    )

    # ── Blueprints ───────────────────────────────────────────────────────
    from app.blueprints.health_bp import health_bp
    from app.blueprints.service_bp import service_bp
    from app.blueprints.incident_bp import incident_bp
    from app.blueprints.sla_bp import sla_bp
    from app.blueprints.metrics_bp import metrics_bp
    from app.blueprints.quarter_bp import quarter_bp
    from app.blueprints.enrichment_bp import enrichment_bp

    app.register_blueprint(health_bp)
    app.register_blueprint(service_bp)
    app.register_blueprint(incident_bp)
    app.register_blueprint(sla_bp)
    app.register_blueprint(metrics_bp)
    app.register_blueprint(quarter_bp)
    app.register_blueprint(enrichment_bp)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("seed-sla-defaults")
    def seed_sla_defaults_cmd():
        """Insert the default SLA definition for every priority that has none."""
        count = seed_defaults()
        logger.info("Seeded %s default SLA definitions.", count)

    @app.cli.command("prune-audit-log")
    def prune_audit_log_cmd():
        """Delete terminal enrichment jobs and provenance older than the retention horizon."""
        from app.services.provenance_service import prune_audit_log
        result = prune_audit_log()
        logger.info(
            "Pruned %s jobs and %s provenance rows older than %s.",
            result["jobs_deleted"], result["provenance_deleted"], result["before"],
        )

    # ── Error handlers ───────────────────────────────────────────────────
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

    @app.errorhandler(413)
    def payload_too_large(e):
        return {"error": "Request body too large"}, 413

    @app.errorhandler(415)
    def unsupported_media_type(e):
        return {"error": "Content-Type must be application/json"}, 415

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    return app
