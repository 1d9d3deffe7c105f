"""Session lifecycle."""
import pytest

from rollsync.services.errors import InvalidTransition, SessionNotActive, ValidationError
from rollsync.services.session_machine import AttendanceSession, Phase, SessionStateMachine
from rollsync.services.store import MemoryStore


@pytest.fixture
def machine(clock):
    session = AttendanceSession(id='s-1', roster_size=30, created_at=clock())
    return SessionStateMachine(session, MemoryStore(), clock)


def test_full_lifecycle_stamps_each_phase(machine, clock):
    """Created -> Locked -> Active -> Ended with timestamps."""
    assert machine.lock_session().phase is Phase.LOCKED
    clock.advance(10)
    session = machine.start()
    assert session.phase is Phase.ACTIVE
    assert session.active_at == clock()
    clock.advance(60)
    session = machine.end()
    assert session.phase is Phase.ENDED
    assert session.ended_at == clock()
    assert session.locked_at is not None


def test_unlock_returns_to_created(machine):
    machine.lock_session()
    session = machine.unlock()
    assert session.phase is Phase.CREATED
    assert session.locked_at is None


@pytest.mark.parametrize('action', ['unlock', 'start'])
def test_invalid_transitions_from_created(machine, action):
    method = {'unlock': machine.unlock, 'start': machine.start}[action]
    with pytest.raises(InvalidTransition):
        method()
    assert machine.phase is Phase.CREATED


def test_cannot_lock_active_session(machine):
    machine.lock_session()
    machine.start()
    with pytest.raises(InvalidTransition):
        machine.lock_session()
    with pytest.raises(InvalidTransition):
        machine.unlock()


def test_ended_is_terminal(machine):
    machine.end()
    for method in (machine.lock_session, machine.unlock, machine.start):
        with pytest.raises(InvalidTransition):
            method()


def test_end_is_idempotent(machine, clock):
    """Ending twice succeeds and keeps the first end time."""
    machine.lock_session()
    machine.start()
    first = machine.end()
    clock.advance(30)
    second = machine.end()
    assert second.phase is Phase.ENDED
    assert second.ended_at == first.ended_at


def test_start_freezes_enrollment(machine):
    """Roster changes after start cannot move the denominator."""
    machine.set_roster_size(42)
    machine.lock_session()
    machine.set_roster_size(40)
    session = machine.start()
    assert session.total_enrolled == 40
    with pytest.raises(InvalidTransition):
        machine.set_roster_size(45)
    assert machine.session.denominator == 40


def test_roster_size_validation(machine):
    with pytest.raises(ValidationError):
        machine.set_roster_size(-1)


def test_require_phase(machine):
    with pytest.raises(SessionNotActive):
        machine.require_phase(Phase.ACTIVE)
    assert machine.require_phase(Phase.CREATED).id == 's-1'


def test_transitions_are_written_through(clock):
    store = MemoryStore()
    machine = SessionStateMachine(AttendanceSession(id='s-2', created_at=clock()), store, clock)
    machine.lock_session()
    assert store.get_session('s-2').phase is Phase.LOCKED


def test_store_failure_leaves_phase_unchanged(clock):
    """A transition either fully applies or not at all."""
    class BrokenStore(MemoryStore):
        def put_session(self, session):
            raise IOError("disk full")

    machine = SessionStateMachine(AttendanceSession(id='s-3', created_at=clock()), BrokenStore(), clock)
    with pytest.raises(IOError):
        machine.lock_session()
    assert machine.phase is Phase.CREATED
