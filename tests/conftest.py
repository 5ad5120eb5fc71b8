"""
Shared pytest fixtures for the Reqflow test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - services: The app's AI services bundle
    - repo: The SQLAlchemy repository
    - project: Pre-created Project entity
    - analysis: Pre-created RequirementAnalysis for ``project``
"""

import pytest

from reqflow import create_app
from reqflow.models import db as _db


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    services = app.extensions["reqflow"]
    with app.app_context():
        services.orchestrator.clear_cache()
        services.uml.clear_cache()
        yield
        services.orchestrator.clear_cache()
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def services(app):
    return app.extensions["reqflow"]


@pytest.fixture()
def repo(services):
    return services.repository


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def project(repo):
    """A persisted project owned by ``user-1``."""
    from reqflow.ai.entities import Project, new_id

    return repo.create_project(Project(id=new_id(), owner_id="user-1", name="Booking portal"))


@pytest.fixture()
def analysis(services, project):
    """An analysis produced through the local stub provider."""
    return services.orchestrator.analyse_requirement(
        project.id, "Users register, then log in and book a room",
    )
