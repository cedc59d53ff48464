"""
Clinical Privilege Approvals
Configuration classes for Flask App Factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])

Escalation settings
-------------------
ESCALATION_REMINDER_HOURS / _MANAGER_HOURS / _HR_HOURS
    Hours a single approval may stay pending before each escalation level.
    Must be strictly increasing.
ESCALATION_ENABLED
    Master switch; the sweep job reports "disabled" and touches nothing.
ESCALATION_HR_CONTACTS
    Comma-separated emails, tried in order, for HR-level escalations.
ESCALATION_RUNNER_ENABLED / ESCALATION_INTERVAL_MINUTES
    In-process sweep thread started by ``create_app``.
CRON_SECRET
    Shared secret for the HTTP sweep trigger.
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'privileges_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"

# Random per-process key; production requires SECRET_KEY
_DEV_SECRET = secrets.token_hex(32)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


def _database_url(env_name: str, fallback):
    """Read a database URL, normalising Heroku-style ``postgres://``."""
    raw = os.getenv(env_name, "")
    if not raw:
        return fallback
    return raw.replace("postgres://", "postgresql://", 1)


class Config:
    """Base configuration shared across all environments."""

    SECRET_KEY = os.getenv("SECRET_KEY", _DEV_SECRET)
    DEBUG = False
    TESTING = False

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True, "pool_recycle": 300}

    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")
    RATELIMIT_STORAGE_URI = os.getenv("RATELIMIT_STORAGE_URI", "memory://")

    # None → chosen from the environment (DEBUG in dev, INFO in prod)
    LOG_LEVEL = os.getenv("LOG_LEVEL")
    # "json" | "readable"; None → JSON outside debug/testing
    LOG_FORMAT = os.getenv("LOG_FORMAT")

    # ── Escalation ───────────────────────────────────────────────────────
    ESCALATION_REMINDER_HOURS = int(os.getenv("ESCALATION_REMINDER_HOURS", "24"))
    ESCALATION_MANAGER_HOURS = int(os.getenv("ESCALATION_MANAGER_HOURS", "48"))
    ESCALATION_HR_HOURS = int(os.getenv("ESCALATION_HR_HOURS", "72"))
    ESCALATION_ENABLED = _env_bool("ESCALATION_ENABLED", "true")
    ESCALATION_HR_CONTACTS = os.getenv("ESCALATION_HR_CONTACTS", "")

    ESCALATION_RUNNER_ENABLED = _env_bool("ESCALATION_RUNNER_ENABLED", "false")
    ESCALATION_INTERVAL_MINUTES = float(os.getenv("ESCALATION_INTERVAL_MINUTES", "60"))

    CRON_SECRET = os.getenv("CRON_SECRET")


class DevelopmentConfig(Config):
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = _database_url("DATABASE_URL", _SQLITE_DEV)


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", _SQLITE_TEST)
    SQLALCHEMY_ENGINE_OPTIONS = {}
    RATELIMIT_ENABLED = False

    # Deterministic escalation settings regardless of the caller's env
    ESCALATION_REMINDER_HOURS = 24
    ESCALATION_MANAGER_HOURS = 48
    ESCALATION_HR_HOURS = 72
    ESCALATION_ENABLED = True
    ESCALATION_HR_CONTACTS = ""
    ESCALATION_RUNNER_ENABLED = False
    CRON_SECRET = None


class ProductionConfig(Config):
    """Production configuration; instantiating it validates the environment."""

    SQLALCHEMY_DATABASE_URI = _database_url("DATABASE_URL", None)
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")

    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,
        "pool_timeout": 20,
        # 30s statement cap
        "connect_args": {"options": "-c statement_timeout=30000"},
    }

    _REQUIRED = ("SQLALCHEMY_DATABASE_URI", "CRON_SECRET")

    def __init__(self):
        missing = [name for name in self._REQUIRED if not getattr(self, name)]
        if not os.getenv("SECRET_KEY"):
            missing.append("SECRET_KEY")
        if missing:
            raise RuntimeError(f"Missing required production settings: {', '.join(missing)}")


config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
