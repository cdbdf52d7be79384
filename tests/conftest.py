"""
Shared pytest fixtures for the Approval Routing Engine test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - clock: Controllable UTC clock injected into the engine
    - recorder: Notifier that keeps every notice it receives
    - engine: ApprovalEngine wired to clock + recorder, registered on the app
    - make_threshold / make_role: registry factories
    - staffed_project: three approver roles on PROJECT_ID, with deputies
    - route: shortcut around engine.route_for_approval
"""

from datetime import datetime, timedelta, timezone

import pytest

from approval_routing import create_app
from approval_routing.models import db as _db
from approval_routing.models.project_role import ProjectRoleAssignment
from approval_routing.services import approval_engine as engine_module
from approval_routing.services import threshold_service
from approval_routing.services.approval_engine import ApprovalEngine

TENANT = "tenant-a"
OTHER_TENANT = "tenant-b"
PROJECT_ID = 101
INITIATOR = 1

# Users holding the approver roles on PROJECT_ID
PACKAGE_MANAGER = 11
COMMERCIAL_MANAGER = 12
PROJECT_MANAGER = 13
PACKAGE_MANAGER_DEPUTY = 21
COMMERCIAL_MANAGER_DEPUTY = 22

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

THREE_STAGE_CHAIN = [
    {"stage": 1, "role": "PACKAGE_MANAGER"},
    {"stage": 2, "role": "COMMERCIAL_MANAGER"},
    {"stage": 3, "role": "PROJECT_MANAGER"},
]


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


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Engine collaborators ─────────────────────────────────────────────────


class Clock:
    def __init__(self, start):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now


class RecordingNotifier:
    """Keeps notices in delivery order; raises on demand."""

    def __init__(self):
        self.notices = []
        self.fail = False

    def notify(self, notice):
        if self.fail:
            raise RuntimeError("notification sink unavailable")
        self.notices.append(notice)

    def kinds(self):
        return [(n.kind.value, n.recipient_user_id) for n in self.notices]


@pytest.fixture()
def clock():
    return Clock(T0)


@pytest.fixture()
def recorder():
    return RecordingNotifier()


@pytest.fixture()
def engine(app, clock, recorder):
    """Engine with injected clock + notifier, swapped onto the app for the test."""
    previous = app.extensions.get(engine_module.EXTENSION_KEY)
    eng = engine_module.init_app(app, ApprovalEngine(notifier=recorder, now_fn=clock))
    yield eng
    app.extensions[engine_module.EXTENSION_KEY] = previous


# ── Registry factories ───────────────────────────────────────────────────


@pytest.fixture()
def make_threshold():
    def _make(tenant_id=TENANT, **overrides):
        data = {
            "entity_type": "PACKAGE",
            "name": "Medium Value Package",
            "min_value": 50000,
            "max_value": 250000,
            "target_approval_days": 6,
            "approval_steps": THREE_STAGE_CHAIN,
        }
        data.update(overrides)
        return threshold_service.create_threshold(tenant_id, data)
    return _make


@pytest.fixture()
def make_role():
    def _make(role, user_id, *, deputy_user_id=None, project_id=PROJECT_ID, tenant_id=TENANT, **flags):
        row = ProjectRoleAssignment(
            tenant_id=tenant_id,
            project_id=project_id,
            role=role,
            user_id=user_id,
            deputy_user_id=deputy_user_id,
            **flags,
        )
        _db.session.add(row)
        _db.session.commit()
        return row
    return _make


@pytest.fixture()
def staffed_project(make_role):
    """PM and CM with deputies, a project manager without one."""
    return {
        "PACKAGE_MANAGER": make_role("PACKAGE_MANAGER", PACKAGE_MANAGER, deputy_user_id=PACKAGE_MANAGER_DEPUTY),
        "COMMERCIAL_MANAGER": make_role(
            "COMMERCIAL_MANAGER", COMMERCIAL_MANAGER, deputy_user_id=COMMERCIAL_MANAGER_DEPUTY,
        ),
        "PROJECT_MANAGER": make_role("PROJECT_MANAGER", PROJECT_MANAGER),
    }


@pytest.fixture()
def route(engine):
    def _route(entity_id="PKG-1", value=75000, entity_type="PACKAGE", **kwargs):
        kwargs.setdefault("project_id", PROJECT_ID)
        kwargs.setdefault("tenant_id", TENANT)
        kwargs.setdefault("initiated_by_user_id", INITIATOR)
        return engine.route_for_approval(entity_type, entity_id, value, **kwargs)
    return _route


@pytest.fixture()
def workflow(make_threshold, staffed_project, route):
    """A freshly routed three-stage PACKAGE workflow."""
    make_threshold()
    return route()
