"""
Programme Governance Engine
Configuration classes for Flask App Factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

# Default SQLite path for local dev when PostgreSQL is not running
_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'governance_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"

# Generate a random key for development; production MUST use a stable env var
_DEV_SECRET = secrets.token_hex(32)


def _database_url(default=None):
    """DATABASE_URL with the legacy postgres:// scheme normalised for SQLAlchemy 2."""
    raw = os.getenv("DATABASE_URL", "")
    if not raw:
        return default
    return raw.replace("postgres://", "postgresql://", 1)


class Config:
    """Base configuration shared across all environments."""

    SECRET_KEY = os.getenv("SECRET_KEY", _DEV_SECRET)
    DEBUG = False
    TESTING = False

    # SQLAlchemy
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,   # recycle connections every 5 min
    }

    # Rate limiter storage (Redis in production, memory for dev)
    REDIS_URL = os.getenv("REDIS_URL", "memory://")

    # CORS
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # Logging (see app/middleware/logging_config.py); empty picks per-environment default
    LOG_LEVEL = os.getenv("LOG_LEVEL", "")

    # ── Governance engine ────────────────────────────────────────────────
    # Attempts for an optimistic read-modify-write before ConcurrencyError surfaces
    GOVERNANCE_MAX_RETRIES = int(os.getenv("GOVERNANCE_MAX_RETRIES", "3"))
    # Stakeholder-area weights should sum to 1.0 within this tolerance (advisory)
    AREA_WEIGHT_TOLERANCE = float(os.getenv("AREA_WEIGHT_TOLERANCE", "0.01"))
    # Role granted by the system-admin and organisation-admin flags
    FULL_CAPABILITY_ROLE = os.getenv("FULL_CAPABILITY_ROLE", "supplier_pm")
    # Least-privileged project role for users without an assignment
    DEFAULT_PROJECT_ROLE = os.getenv("DEFAULT_PROJECT_ROLE", "viewer")
    # Domain events are dropped (but still logged) when disabled
    NOTIFICATIONS_ENABLED = os.getenv("NOTIFICATIONS_ENABLED", "true").lower() == "true"
    # Look-ahead window for security review reminders
    REVIEW_REMINDER_DAYS = int(os.getenv("REVIEW_REMINDER_DAYS", "7"))


class DevelopmentConfig(Config):
    """Development environment configuration."""

    DEBUG = True
    SQLALCHEMY_DATABASE_URI = _database_url(_SQLITE_DEV)


class TestingConfig(Config):
    """Testing environment configuration."""

    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", _SQLITE_TEST)
    SQLALCHEMY_ENGINE_OPTIONS = {}
    RATELIMIT_ENABLED = False


class ProductionConfig(Config):
    """Production environment configuration."""

    DEBUG = False
    SQLALCHEMY_DATABASE_URI = _database_url()
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")  # Must be set explicitly in production

    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,
        "pool_timeout": 20,
        "connect_args": {
            "options": "-c statement_timeout=30000",  # 30s query timeout
        },
    }

    def __init__(self):
        if not self.SQLALCHEMY_DATABASE_URI:
            raise RuntimeError("DATABASE_URL environment variable is required in production")
        if not os.getenv("SECRET_KEY"):
            raise RuntimeError("SECRET_KEY environment variable must be set in production")


# Configuration mapping: environment name -> config class
config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
