"""
CaseBridge — learner transfer coordination between institutions.
Flask Application Factory.

Usage:
    from casebridge import create_app
    app = create_app()           # defaults to APP_ENV or "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

from flask import Flask, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event

from casebridge.config import basedir, config
from casebridge.middleware.identity_context import init_identity_middleware
from casebridge.middleware.logging_config import configure_logging
from casebridge.middleware.rate_limiter import init_rate_limits
from casebridge.middleware.timing import init_request_timing
from casebridge.models import db
from casebridge.utils.errors import E, api_error

logger = logging.getLogger(__name__)


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
    default_limits=[],  # no global limit, applied per blueprint
)


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: One of "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    # Instantiate so ProductionConfig can refuse to start without its env vars
    app.config.from_object(config[config_name]())

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    db_uri = app.config.get("SQLALCHEMY_DATABASE_URI") or ""
    if db_uri.startswith("sqlite:///") and ":memory:" not in db_uri:
        os.makedirs(os.path.join(basedir, "instance"), exist_ok=True)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Request middleware ───────────────────────────────────────────────
    init_request_timing(app)
    init_identity_middleware(app)
    # After identity so limits can key on the caller's institution
    limiter.init_app(app)

    # ── Import all models so Alembic can detect them ─────────────────────
    from casebridge.models import audit as _audit_models              # noqa: F401
    from casebridge.models import institution as _institution_models  # noqa: F401
    from casebridge.models import learner as _learner_models          # noqa: F401
    from casebridge.models import transfer as _transfer_models        # noqa: F401

    # ── Auto-create tables outside production (migrations own prod schema) ──
    if config_name != "production":
        with app.app_context():
            db.create_all()

    # ── Blueprints ───────────────────────────────────────────────────────
    from casebridge.blueprints.transfer_bp import transfer_bp

    app.register_blueprint(transfer_bp)

    @app.route("/api/v1/health")
    def health():
        return {"status": "ok", "app": "CaseBridge"}

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        return api_error(E.NOT_FOUND, "Not found", details={"path": request.path})

    @app.errorhandler(405)
    def method_not_allowed(e):
        return api_error(E.VALIDATION_INVALID, "Method not allowed", status=405)

    @app.errorhandler(413)
    def too_large(e):
        return api_error(E.VALIDATION_INVALID, "Request body too large", status=413)

    @app.errorhandler(429)
    def rate_limited(e):
        return api_error(E.RATE_LIMITED, "Too many requests", details={"limit": e.description})

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return api_error(E.INTERNAL, "Internal server error")

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    return app
