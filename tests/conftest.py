"""
Shared pytest fixtures for the PipeTrak milestone test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - project: Pre-created Project with the default milestone templates
    - templates: name → MilestoneTemplate for that project
    - make_component: factory creating a component and its milestones
"""

import pytest

from pipetrak import create_app
from pipetrak.models import db as _db


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
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def project():
    """Create a Project and seed its default milestone templates."""
    from pipetrak.models.pipetrak import Project
    from pipetrak.services.milestone_persistence_service import seed_default_templates

    p = Project(job_number="J-1001", job_name="Unit 200 Piping")
    _db.session.add(p)
    _db.session.flush()
    seed_default_templates(p.id)
    _db.session.commit()
    return p


@pytest.fixture()
def templates(project):
    """Map template name → MilestoneTemplate for the test project."""
    from pipetrak.models.pipetrak import MilestoneTemplate

    rows = MilestoneTemplate.query.filter_by(project_id=project.id).all()
    return {t.name: t for t in rows}


@pytest.fixture()
def make_component(project, templates):
    """Factory: make_component("SP-001", template="Full Milestone Set", ...)."""
    from pipetrak.services.milestone_persistence_service import create_component_with_milestones

    def _make(code, template="Full Milestone Set", **kwargs):
        kwargs.setdefault("type", "SPOOL")
        component = create_component_with_milestones(
            project.id,
            component_code=code,
            template_id=templates[template].id,
            **kwargs,
        )
        _db.session.commit()
        return component

    return _make
