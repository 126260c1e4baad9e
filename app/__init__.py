"""
Programme Governance Engine: Flask application factory.

    from app import create_app
    app = create_app()           # APP_ENV or "development"
    app = create_app("testing")
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
from sqlalchemy.exc import SQLAlchemyError

from app.config import config
from app.middleware.identity_context import init_identity_context
from app.middleware.logging_config import configure_logging
from app.middleware.rate_limiter import init_rate_limits
from app.middleware.timing import init_request_timing
from app.models import db
from app.services.notification import InAppNotificationDispatcher, install_dispatcher

logger = logging.getLogger(__name__)

# Modules imported for their mapped classes so create_all / Alembic see them
_MODEL_MODULES = (
    "auth",
    "project",
    "stakeholder",
    "phase_gate",
    "workshop",
    "security_assessment",
    "variation",
    "notification",
)


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _sqlite_foreign_keys(dbapi_conn, connection_record):
    """SQLite ships with FK checks off; ondelete rules depend on them."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],  # limits are attached per blueprint in init_rate_limits
    storage_uri=os.getenv("REDIS_URL", "memory://"),
)


def _blueprints():
    from app.blueprints.health_bp import health_bp
    from app.blueprints.permission_bp import permission_bp
    from app.blueprints.phase_gate_bp import phase_gate_bp
    from app.blueprints.security_assessment_bp import security_assessment_bp
    from app.blueprints.stakeholder_bp import stakeholder_bp
    from app.blueprints.variation_bp import variation_bp
    from app.blueprints.workshop_bp import workshop_bp

    return (
        health_bp,
        permission_bp,
        stakeholder_bp,
        phase_gate_bp,
        workshop_bp,
        security_assessment_bp,
        variation_bp,
    )


def _register_http_errors(app):
    @app.errorhandler(404)
    def not_found(e):
        return {"error": "Not found", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed", "method": request.method}, 405

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    @app.errorhandler(500)
    def server_error(e):
        logger.error("Unhandled error on %s %s", request.method, request.path, exc_info=True)
        return {"error": "Internal server error"}, 500


def _init_cors(app):
    origins = app.config.get("CORS_ORIGINS", "*")
    if origins and origins != "*":
        CORS(app, origins=[o.strip() for o in origins.split(",") if o.strip()])
    else:
        CORS(app)


def create_app(config_name=None):
    """
    Build a configured application.

    ``config_name`` is one of "development", "testing" or "production"; when
    omitted the APP_ENV environment variable decides.
    """
    config_name = config_name or os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name])
    os.makedirs(app.instance_path, exist_ok=True)

    configure_logging(app)

    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    _init_cors(app)

    init_request_timing(app)
    init_identity_context(app)

    for name in _MODEL_MODULES:
        __import__(f"app.models.{name}")

    with app.app_context():
        try:
            db.create_all()
        except SQLAlchemyError as e:
            # Schema may be owned by migrations; the app still starts
            app.logger.warning("db.create_all() failed: %s", e)

    for bp in _blueprints():
        app.register_blueprint(bp)

    install_dispatcher(app, InAppNotificationDispatcher())
    _register_http_errors(app)
    init_rate_limits(app, limiter)

    logger.debug("app created", extra={"details": {"config": config_name}})
    return app
