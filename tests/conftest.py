"""
Shared pytest fixtures for the matter workflow test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - make_user / make_matter / make_template: ORM factories
    - supervisor / paralegal / secretary: pre-created users

Factories commit: services own their unit of work and roll back on error,
so rows a test depends on must already be committed.
"""

import pytest

from matterflow import create_app
from matterflow.integrations.collaborators import EXTENSION_KEY
from matterflow.models import db as _db
from matterflow.models.auth import User
from matterflow.models.matter import Matter
from matterflow.services import template_catalog


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    return create_app("testing")


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
        # Tests may swap collaborators; the next test gets fresh defaults.
        app.extensions.pop(EXTENSION_KEY, None)


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Factories ────────────────────────────────────────────────────────────


def _make_user(email="user@firm.test", role="fee_earner", full_name="Test User", is_active=True):
    u = User(email=email, role=role, full_name=full_name, is_active=is_active)
    _db.session.add(u)
    _db.session.commit()
    return u


_matter_seq = {"n": 0}


def _make_matter(attributes=None, practice_area="conveyancing", sub_type="freehold_purchase",
                 reference=None, opened_at=None):
    _matter_seq["n"] += 1
    m = Matter(
        reference=reference or f"MAT-{_matter_seq['n']:05d}",
        title="Purchase of 1 Test Street",
        practice_area=practice_area,
        sub_type=sub_type,
        attributes=attributes if attributes is not None else {"has_mortgage": True},
        opened_at=opened_at,
    )
    _db.session.add(m)
    _db.session.commit()
    return m


def _make_template(stages, key="test-workflow", version="1.0.0", release=True,
                   practice_area="conveyancing", **extra):
    tpl = template_catalog.create_template(
        key, version, f"Workflow {key}", practice_area, stages=stages, **extra,
    )
    if release:
        tpl = template_catalog.release_template(tpl.id)
    return tpl


@pytest.fixture()
def make_user():
    return _make_user


@pytest.fixture()
def make_matter():
    return _make_matter


@pytest.fixture()
def make_template():
    return _make_template


@pytest.fixture()
def supervisor():
    return _make_user("supervisor@firm.test", "supervisor", "Sam Supervisor")


@pytest.fixture()
def paralegal():
    return _make_user("paralegal@firm.test", "paralegal", "Pat Paralegal")


@pytest.fixture()
def secretary():
    return _make_user("secretary@firm.test", "secretary", "Sid Secretary")


# ── Template shapes ──────────────────────────────────────────────────────


def task_tpl(title, **kwargs):
    data = {"title": title, "is_mandatory": True}
    data.update(kwargs)
    return data


def three_stage_template():
    """A hard/all_mandatory_tasks, B soft/all_tasks (mortgage only), C none."""
    return [
        {
            "name": "A Onboarding",
            "gate_type": "hard",
            "completion_criteria": "all_mandatory_tasks",
            "task_templates": [
                task_tpl("Record instruction"),
                task_tpl("Conflict check"),
                task_tpl("Optional welcome call", is_mandatory=False),
            ],
        },
        {
            "name": "B Lender",
            "gate_type": "soft",
            "completion_criteria": "all_tasks",
            "applicability_conditions": {"has_mortgage": True},
            "task_templates": [task_tpl("Review mortgage offer")],
        },
        {
            "name": "C Exchange",
            "gate_type": "none",
            "task_templates": [task_tpl("Exchange contracts")],
        },
    ]
