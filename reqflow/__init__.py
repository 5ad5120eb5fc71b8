"""
Reqflow
Flask Application Factory.

Usage:
    from reqflow import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config

The AI layer lives in ``app.extensions["reqflow"]``:
    services = app.extensions["reqflow"]
    services.orchestrator.analyse_requirement(project_id, text)
    services.tasks.submit(user_id, project_id, "stage_documents", {"stage": 2})
"""

import logging
import os
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING

import click
from flask import Flask, current_app

from reqflow.config import config
from reqflow.models import db
from reqflow.middleware.logging_config import configure_logging

if TYPE_CHECKING:
    from reqflow.ai.cache import ResponseCache
    from reqflow.ai.orchestrator import AIOrchestrator
    from reqflow.ai.prompt_registry import PromptRegistry
    from reqflow.ai.stage_progress import StageProgressTracker
    from reqflow.ai.task_runner import TaskEngine
    from reqflow.persistence import SQLAlchemyRepository
    from reqflow.puml.pipeline import UMLPipeline

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


@dataclass
class ReqflowServices:
    """Process-wide AI services shared by request handlers and job workers."""

    repository: "SQLAlchemyRepository"
    prompts: "PromptRegistry"
    cache: "ResponseCache"
    orchestrator: "AIOrchestrator"
    tracker: "StageProgressTracker"
    tasks: "TaskEngine"
    uml: "UMLPipeline"


def services() -> ReqflowServices:
    """The services bundle of the current app."""
    return current_app.extensions["reqflow"]


def _init_services(app: Flask) -> ReqflowServices:
    from reqflow.ai.cache import ResponseCache
    from reqflow.ai.executors import register_default_executors
    from reqflow.ai.orchestrator import AIOrchestrator
    from reqflow.ai.prompt_registry import PromptRegistry
    from reqflow.ai.providers import build_clients
    from reqflow.ai.stage_progress import StageProgressTracker
    from reqflow.ai.task_runner import TaskEngine
    from reqflow.persistence import SQLAlchemyRepository
    from reqflow.puml.pipeline import UMLPipeline

    prompts = PromptRegistry(app.config.get("AI_PROMPTS_DIR") or None)
    clients = build_clients(app.config, prompts)

    default = app.config.get("AI_DEFAULT_PROVIDER")
    if default not in clients:
        fallback = sorted(clients)[0] if clients else None
        logger.warning("Default AI provider %r is not configured; using %r", default, fallback)
        default = fallback

    cache = ResponseCache()
    sweep_seconds = app.config.get("AI_CACHE_SWEEP_SECONDS", 0)
    if app.config.get("AI_CACHE_ENABLED") and sweep_seconds > 0:
        cache.start_sweeper(sweep_seconds)

    repository = SQLAlchemyRepository()
    orchestrator = AIOrchestrator(
        repository,
        cache=cache,
        clients=clients,
        default_provider=default,
        cache_enabled=app.config.get("AI_CACHE_ENABLED", True),
    )
    tracker = StageProgressTracker(repository)
    tasks = TaskEngine(repository, orchestrator, tracker, app=app)
    register_default_executors(tasks)

    uml = UMLPipeline(
        app.config.get("PUML_SERVER_URL"),
        timeout=app.config.get("PUML_TIMEOUT", 30),
    )

    return ReqflowServices(
        repository=repository,
        prompts=prompts,
        cache=cache,
        orchestrator=orchestrator,
        tracker=tracker,
        tasks=tasks,
        uml=uml,
    )


def _register_cli(app: Flask) -> None:

    @app.cli.command("reap-jobs")
    @click.option("--older-than", "older_than", type=int, default=None,
                  help="Age in minutes after which a pending/running job counts as orphaned.")
    def reap_jobs_cmd(older_than):
        """Fail jobs left pending/running by a previous process."""
        minutes = older_than if older_than is not None else current_app.config["JOB_ORPHAN_MINUTES"]
        reaped = services().tasks.reap_orphans(timedelta(minutes=minutes))
        click.echo(f"Reaped {len(reaped)} orphaned jobs.")

    @app.cli.command("ai-providers")
    def ai_providers_cmd():
        """List registered AI providers and cache statistics."""
        orchestrator = services().orchestrator
        default = orchestrator.default_provider()
        for provider_id in orchestrator.providers():
            marker = "*" if provider_id == default else " "
            click.echo(f"{marker} {provider_id}")
        stats = orchestrator.cache_stats()
        click.echo(f"cache: {stats['entries']} entries, hit rate {stats['hit_rate_pct']}%")


def create_app(config_name=None):
    """
    Build a Flask app with the schema created and the AI services wired.

    Args:
        config_name: "development", "testing" or "production";
                     falls back to APP_ENV, then "development".
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name]())

    # ── Logging before anything that logs ────────────────────────────────
    configure_logging(app)

    # ── Database ─────────────────────────────────────────────────────────
    db_uri = app.config["SQLALCHEMY_DATABASE_URI"]
    if db_uri.startswith("sqlite:///") and ":memory:" not in db_uri:
        os.makedirs(os.path.dirname(db_uri[len("sqlite:///"):]), exist_ok=True)
    db.init_app(app)

    # ── Import all models so create_all sees them ────────────────────────
    from reqflow.models import project as _project_models      # noqa: F401
    from reqflow.models import artifacts as _artifact_models   # noqa: F401
    from reqflow.models import jobs as _job_models             # noqa: F401
    from reqflow.models import chat as _chat_models            # noqa: F401

    with app.app_context():
        db.create_all()
        app.logger.info("reqflow schema ready on %s", db.engine.url.drivername)

    # ── AI services ──────────────────────────────────────────────────────
    app.extensions["reqflow"] = _init_services(app)

    # ── CLI commands ─────────────────────────────────────────────────────
    _register_cli(app)

    return app
