"""
Change Governance Core
Configuration classes for Flask App Factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])

Governance defaults (quorum, SLA hours, …) live here and can be overridden
per environment variable; at runtime ``AppSetting`` rows take precedence
(see ``change_governance.services.governance_config``).
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

# Default SQLite path for local dev when PostgreSQL is not running
_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'change_governance_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"

# Generate a random key for development; production MUST use a stable env var
_DEV_SECRET = secrets.token_hex(32)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


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

    # Governance defaults (overridable by AppSetting rows at runtime)
    CAB_QUORUM = int(os.getenv("CAB_QUORUM", "3"))
    CAB_EMERGENCY_QUORUM = int(os.getenv("CAB_EMERGENCY_QUORUM", "3"))
    CAB_ALLOW_VOTE_CHANGES = _env_bool("CAB_ALLOW_VOTE_CHANGES", "true")
    CLIENT_APPROVAL_SLA_HOURS = int(os.getenv("CLIENT_APPROVAL_SLA_HOURS", "24"))
    CAB_APPROVAL_SLA_HOURS = int(os.getenv("CAB_APPROVAL_SLA_HOURS", "48"))
    CAB_EMERGENCY_SLA_HOURS = int(os.getenv("CAB_EMERGENCY_SLA_HOURS", "4"))
    REMINDER_THRESHOLD_HOURS = int(os.getenv("REMINDER_THRESHOLD_HOURS", "4"))
    ESCALATION_REPEAT_HOURS = int(os.getenv("ESCALATION_REPEAT_HOURS", "24"))
    BACKOUT_PLAN_REQUIRED_SCORE = int(os.getenv("BACKOUT_PLAN_REQUIRED_SCORE", "60"))
    CAB_DEFAULT_MEETING_TIME = os.getenv("CAB_DEFAULT_MEETING_TIME", "09:00")

    # Background scheduler (approval SLA sweep)
    SCHEDULER_ENABLED = _env_bool("SCHEDULER_ENABLED", "false")


class DevelopmentConfig(Config):
    """Development environment configuration."""

    DEBUG = True
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = (
        _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else _SQLITE_DEV
    )


class TestingConfig(Config):
    """Testing environment configuration."""

    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", _SQLITE_TEST)
    SQLALCHEMY_ENGINE_OPTIONS = {}
    SCHEDULER_ENABLED = False


class ProductionConfig(Config):
    """Production environment configuration."""

    DEBUG = False
    # Railway/Heroku use postgres:// but SQLAlchemy 2.0 requires postgresql://
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else None

    # Override engine options with PostgreSQL statement timeout
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
