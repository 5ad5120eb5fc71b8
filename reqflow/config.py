"""
Reqflow
Configuration classes for the Flask App Factory.

``create_app`` picks a class by name (``APP_ENV``, default development) and
loads an *instance* of it, so ``ProductionConfig`` can refuse to start with
missing settings.
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'reqflow_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes", "on")


def _database_url(default=None):
    """DATABASE_URL with the legacy ``postgres://`` scheme normalised for SQLAlchemy 2."""
    raw = os.getenv("DATABASE_URL", "")
    if not raw:
        return default
    return raw.replace("postgres://", "postgresql://", 1)


class Config:
    """Base configuration shared across all environments."""

    SECRET_KEY = os.getenv("SECRET_KEY") or secrets.token_hex(32)
    DEBUG = False
    TESTING = False
    LOG_LEVEL = os.getenv("LOG_LEVEL", "")

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True}

    # ── AI providers ─────────────────────────────────────────────────────
    AI_DEFAULT_PROVIDER = os.getenv("AI_DEFAULT_PROVIDER", "openai")

    AI_OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
    AI_OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL", "")
    AI_OPENAI_MODEL = os.getenv("OPENAI_MODEL", "")

    AI_GEMINI_API_KEY = os.getenv("GEMINI_API_KEY", "")
    AI_GEMINI_BASE_URL = os.getenv("GEMINI_BASE_URL", "")
    AI_GEMINI_MODEL = os.getenv("GEMINI_MODEL", "")

    AI_CLAUDE_API_KEY = os.getenv("ANTHROPIC_API_KEY", "")
    AI_CLAUDE_BASE_URL = os.getenv("ANTHROPIC_BASE_URL", "")
    AI_CLAUDE_MODEL = os.getenv("ANTHROPIC_MODEL", "")

    # Deterministic offline provider ("local")
    AI_LOCAL_STUB_ENABLED = _env_bool("AI_LOCAL_STUB_ENABLED", "false")

    AI_PROMPTS_DIR = os.getenv("AI_PROMPTS_DIR", "")

    # ── Response cache ───────────────────────────────────────────────────
    AI_CACHE_ENABLED = _env_bool("AI_CACHE_ENABLED", "true")
    AI_CACHE_SWEEP_SECONDS = int(os.getenv("AI_CACHE_SWEEP_SECONDS", "300"))

    # ── UML render server ────────────────────────────────────────────────
    PUML_SERVER_URL = os.getenv("PUML_SERVER_URL", "http://www.plantuml.com/plantuml")
    PUML_TIMEOUT = int(os.getenv("PUML_TIMEOUT", "30"))

    # ── Task engine ──────────────────────────────────────────────────────
    JOB_ORPHAN_MINUTES = int(os.getenv("JOB_ORPHAN_MINUTES", "60"))


class DevelopmentConfig(Config):
    """Local sqlite file and the offline provider by default."""

    DEBUG = True
    SQLALCHEMY_DATABASE_URI = _database_url(_SQLITE_DEV)
    AI_DEFAULT_PROVIDER = os.getenv("AI_DEFAULT_PROVIDER", "local")
    AI_LOCAL_STUB_ENABLED = _env_bool("AI_LOCAL_STUB_ENABLED", "true")


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", _SQLITE_TEST)
    # In-memory SQLite is shared across threads through a single static pool
    SQLALCHEMY_ENGINE_OPTIONS = {}

    AI_DEFAULT_PROVIDER = "local"
    AI_LOCAL_STUB_ENABLED = True
    AI_OPENAI_API_KEY = ""
    AI_GEMINI_API_KEY = ""
    AI_CLAUDE_API_KEY = ""
    AI_PROMPTS_DIR = ""
    # Sweeper thread is not started in tests; expiry is checked inline on get
    AI_CACHE_SWEEP_SECONDS = 0
    PUML_SERVER_URL = "http://plantuml.test/plantuml"


class ProductionConfig(Config):
    """Pooled database connections; refuses to load without its required settings."""

    SQLALCHEMY_DATABASE_URI = _database_url()
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,
        "pool_timeout": 20,
    }

    def __init__(self):
        missing = []
        if not self.SQLALCHEMY_DATABASE_URI:
            missing.append("DATABASE_URL")
        if not os.getenv("AI_DEFAULT_PROVIDER"):
            missing.append("AI_DEFAULT_PROVIDER")
        if not (self.AI_OPENAI_API_KEY or self.AI_GEMINI_API_KEY or self.AI_CLAUDE_API_KEY):
            missing.append("an AI provider API key")
        if missing:
            raise RuntimeError(f"production config is missing: {', '.join(missing)}")


config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
