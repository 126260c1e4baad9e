"""
Shared pytest fixtures for the Programme Governance Engine test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - organization / project: Pre-created scope entities
    - users: one user per project role, keyed by role
    - auth_headers: callable role -> {"X-User-Id": ...}
    - areas: three stakeholder areas weighted 0.5 / 0.3 / 0.2
    - recording_dispatcher: in-memory NotificationDispatcher capturing events

Fixtures commit (rather than flush) because services commit and roll back
their own units of work, and API requests run in their own app context.
"""

import pytest

from app import create_app
from app.models import db as _db
from app.models.auth import Organization, OrganizationMember, ProjectMember, User
from app.models.project import Project
from app.models.stakeholder import StakeholderArea
from app.services.diagnostics import reset_diagnostics
from app.services.notification import NotificationDispatcher, install_dispatcher
from app.services.permission_matrix import PROJECT_ROLES


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
        reset_diagnostics()
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()
        reset_diagnostics()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Helpers ──────────────────────────────────────────────────────────────


def _make_user(email: str, *, full_name: str = "Test User", is_system_admin: bool = False) -> User:
    u = User(email=email, full_name=full_name, is_system_admin=is_system_admin)
    _db.session.add(u)
    _db.session.commit()
    return u


def _make_area(project_id: int, name: str, weight: float, sort_order: int = 0) -> StakeholderArea:
    area = StakeholderArea(project_id=project_id, name=name, weight=weight, sort_order=sort_order)
    _db.session.add(area)
    _db.session.commit()
    return area


def _assign(project_id: int, user_id: int, role: str) -> ProjectMember:
    member = ProjectMember(project_id=project_id, user_id=user_id, role=role)
    _db.session.add(member)
    _db.session.commit()
    return member


# ── Domain fixtures ──────────────────────────────────────────────────────


@pytest.fixture()
def organization():
    org = Organization(name="Acme Holdings", slug="acme")
    _db.session.add(org)
    _db.session.commit()
    return org


@pytest.fixture()
def project(organization):
    proj = Project(organization_id=organization.id, code="ERP", name="ERP Replacement")
    _db.session.add(proj)
    _db.session.commit()
    return proj


@pytest.fixture()
def users(project):
    """One user per project role, assigned on ``project``."""
    created = {}
    for role in sorted(PROJECT_ROLES):
        user = _make_user(f"{role}@example.com", full_name=role.replace("_", " ").title())
        _assign(project.id, user.id, role)
        created[role] = user
    return created


@pytest.fixture()
def org_admin(organization):
    user = _make_user("org.admin@example.com", full_name="Org Admin")
    _db.session.add(OrganizationMember(organization_id=organization.id, user_id=user.id, org_role="org_admin"))
    _db.session.commit()
    return user


@pytest.fixture()
def auth_headers(users):
    """Return a callable: role -> request headers identifying that role's user."""
    def _headers(role):
        return {"X-User-Id": str(users[role].id)}
    return _headers


@pytest.fixture()
def areas(project):
    """Finance 0.5, Operations 0.3, IT 0.2."""
    return [
        _make_area(project.id, "Finance", 0.5, 1),
        _make_area(project.id, "Operations", 0.3, 2),
        _make_area(project.id, "IT", 0.2, 3),
    ]


class RecordingDispatcher(NotificationDispatcher):
    """Captures dispatched events instead of delivering them."""

    def __init__(self):
        self.events = []
        self.phase_gate_ready = []
        self.review_due = []

    def dispatch(self, event):
        self.events.append(event)
        super().dispatch(event)

    def on_phase_gate_ready(self, project_id, gate, area):
        self.phase_gate_ready.append((project_id, gate, area))

    def on_review_due(self, project_id, assessment, days_left):
        self.review_due.append((project_id, assessment, days_left))


@pytest.fixture()
def recording_dispatcher(app):
    recorder = RecordingDispatcher()
    previous = install_dispatcher(app, recorder)
    yield recorder
    install_dispatcher(app, previous)
