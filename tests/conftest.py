"""Shared fixtures."""
from datetime import datetime, timedelta

import pytest
from flask_jwt_extended import create_access_token

from rollsync import create_app, db
from rollsync.services.attendance_engine import AttendanceEngine
from rollsync.services.store import MemoryStore


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start=None):
        self.now = start or datetime(2026, 3, 2, 9, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def engine(store, clock):
    """Engine with timers off; tests call rotate()/resync() themselves."""
    engine = AttendanceEngine(
        store=store,
        clock=clock,
        ATTENDANCE_TIMERS_ENABLED=False,
        SUBSCRIPTION_IDLE_TIMEOUT=None,
    )
    yield engine
    engine.shutdown()


@pytest.fixture
def active_session(engine):
    """Session with 40 enrolled, already started."""
    session = engine.create_session(roster_size=40, section='CSE-3A')
    engine.lock(session.id)
    engine.start(session.id)
    return engine.get_session(session.id)


@pytest.fixture
def app(clock):
    """Create test app."""
    app = create_app('testing', clock=clock)
    with app.app_context():
        db.create_all()
        yield app
        app.extensions['attendance'].shutdown()
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture
def auth_headers(app):
    """Build Authorization headers for an identity and role."""
    def make(identity, role, **claims):
        token = create_access_token(identity=identity, additional_claims={'role': role, **claims})
        return {'Authorization': f'Bearer {token}'}
    return make


@pytest.fixture
def instructor(auth_headers):
    return auth_headers('fac-1', 'instructor')
