"""End-to-end session flows through the engine."""
from datetime import timedelta

import pytest

from rollsync.services.attendance_engine import AttendanceEngine
from rollsync.services.broadcaster import SNAPSHOT
from rollsync.services.errors import (
    ConcurrentModification,
    CredentialExpired,
    CredentialUnknown,
    SessionNotActive,
    SessionNotFound,
    ValidationError,
)
from rollsync.services.session_machine import Phase


def test_forty_enrolled_ten_joined_seven_present(engine):
    session = engine.create_session(roster_size=40, section='CSE-3A')
    engine.lock(session.id)
    engine.start(session.id)
    subscription = engine.subscribe(session.id)

    for key in range(1, 11):
        engine.join(session.id, key)
    token = engine.current_credential(session.id).token
    for key in range(1, 8):
        engine.scan(session.id, key, token)
    engine.resync(session.id)

    snapshot = [m for m in subscription.drain() if m.type == SNAPSHOT][-1].payload
    assert snapshot.total_enrolled == 40
    assert snapshot.total_joined == 10
    assert snapshot.total_present == 7
    assert snapshot.present_percentage == 18


def test_move_race_on_student_five(engine, active_session):
    """A current client and a stale one both move student 5; one wins."""
    sid = active_session.id
    token = engine.current_credential(sid).token
    engine.join(sid, 5)
    engine.scan(sid, 5, token)
    engine.move(sid, 5, 'absent', expected_seq=2)

    with pytest.raises(ConcurrentModification):
        engine.move(sid, 5, 'present', expected_seq=2)
    entry, snapshot = engine.move(sid, 5, 'present', expected_seq=3)
    assert entry.seq == 4
    assert snapshot.total_present == 1


def test_scan_accepts_qr_payload(engine, active_session):
    credential = engine.current_credential(active_session.id)
    entry, changed = engine.scan(active_session.id, '9', credential.qr_payload())
    assert changed and entry.status.value == 'present'


def test_scan_rejects_payload_of_other_session(engine, active_session):
    other = engine.create_session(roster_size=5)
    engine.lock(other.id)
    engine.start(other.id)
    payload = engine.current_credential(other.id).qr_payload()
    with pytest.raises(CredentialUnknown):
        engine.scan(active_session.id, '9', payload)


def test_scan_requires_credential(engine, active_session):
    with pytest.raises(CredentialUnknown):
        engine.scan(active_session.id, '9', '')


def test_rotation_with_grace(engine, active_session, clock):
    sid = active_session.id
    old = engine.current_credential(sid)
    clock.advance(5)
    new = engine.rotate(sid)
    assert new.sequence == old.sequence + 1
    clock.advance(1)
    engine.scan(sid, '1', old.token)
    clock.advance(1.5)
    with pytest.raises(CredentialExpired):
        engine.scan(sid, '2', old.token)
    engine.scan(sid, '2', new.token)


def test_credential_only_while_active(engine):
    session = engine.create_session(roster_size=5)
    with pytest.raises(SessionNotActive):
        engine.current_credential(session.id)
    assert engine.rotate(session.id) is None


def test_phase_guard(engine):
    """No scans outside Active; no writes at all while Locked or Ended."""
    session = engine.create_session(roster_size=5)
    engine.join(session.id, '1')
    with pytest.raises(SessionNotActive):
        engine.scan(session.id, '1', 'token')
    engine.lock(session.id)
    with pytest.raises(SessionNotActive):
        engine.join(session.id, '2')
    engine.start(session.id)
    engine.end(session.id)
    for call in (
        lambda: engine.join(session.id, '3'),
        lambda: engine.scan(session.id, '3', 'token'),
        lambda: engine.move(session.id, '1', 'present', 1),
    ):
        with pytest.raises(SessionNotActive):
            call()


def test_end_builds_report_and_tears_down(engine, active_session, clock):
    sid = active_session.id
    token = engine.current_credential(sid).token
    for key in ('01', '02', '03'):
        engine.join(sid, key)
    engine.scan(sid, '01', token)
    engine.scan(sid, '03', token)
    subscription = engine.subscribe(sid)
    clock.advance(90)

    session = engine.end(sid)
    assert session.phase is Phase.ENDED
    assert session.credentials_issued == 1

    report = engine.report(sid)
    assert report['present'] == ['01', '03']
    assert report['total_present'] == 2
    assert report['total_enrolled'] == 40
    assert len(report['absent']) == 38
    assert '02' in report['absent']
    assert report['present_percentage'] == 5

    runtime = engine.runtime(sid)
    assert runtime.rotator.active_credentials() == []
    assert not runtime.timers_running
    assert subscription.closed
    messages = subscription.drain()
    assert messages[-1].type == SNAPSHOT
    assert messages[-1].payload.phase is Phase.ENDED


def test_report_partitions_roster_for_numeric_keys(engine, active_session):
    """Keys joined as ints 1-10 and scanned 1-7 land once each in the report."""
    sid = active_session.id
    token = engine.current_credential(sid).token
    for key in range(1, 11):
        engine.join(sid, key)
    for key in range(1, 8):
        engine.scan(sid, key, token)

    report = engine.end(sid).final_report
    assert report['present'] == ['01', '02', '03', '04', '05', '06', '07']
    assert len(report['present']) + len(report['absent']) == 40
    assert '08' in report['absent']
    assert '8' not in report['absent'] and '1' not in report['absent']


@pytest.mark.parametrize('payload', ['', '{"session_id": "x"}', '{"session_id": "other", "token": "t"}', 'bare'])
def test_scan_phase_guard_precedes_payload_checks(engine, payload):
    """Outside Active every scan is SessionNotActive, whatever the payload."""
    session = engine.create_session(roster_size=5)
    with pytest.raises(SessionNotActive):
        engine.scan(session.id, '1', payload)
    engine.lock(session.id)
    with pytest.raises(SessionNotActive):
        engine.scan(session.id, '1', payload)
    engine.end(session.id)
    with pytest.raises(SessionNotActive):
        engine.scan(session.id, '1', payload)
    assert engine.runtime(session.id).ledger.entries() == {}


def test_end_is_idempotent(engine, active_session):
    first = engine.end(active_session.id)
    second = engine.end(active_session.id)
    assert second.ended_at == first.ended_at
    assert second.final_report == first.final_report


def test_end_before_start(engine):
    session = engine.create_session(roster_size=5)
    ended = engine.end(session.id)
    assert ended.phase is Phase.ENDED
    assert ended.final_report['total_present'] == 0


def test_subscribe_after_end_gets_final_snapshot(engine, active_session):
    engine.end(active_session.id)
    subscription = engine.subscribe(active_session.id)
    assert subscription.closed
    [message] = subscription.drain()
    assert message.payload.phase is Phase.ENDED


def test_new_session_supersedes_open_one_in_section(engine, active_session):
    replacement = engine.create_session(roster_size=40, section='CSE-3A')
    assert engine.get_session(active_session.id).phase is Phase.ENDED
    assert engine.get_session(replacement.id).phase is Phase.CREATED


def test_sessions_of_other_sections_untouched(engine, active_session):
    engine.create_session(roster_size=30, section='CSE-3B')
    assert engine.get_session(active_session.id).phase is Phase.ACTIVE


def test_unknown_session(engine):
    with pytest.raises(SessionNotFound):
        engine.get_session('missing')


def test_invalid_roster_size(engine):
    with pytest.raises(ValidationError):
        engine.create_session(roster_size=-3)
    with pytest.raises(ValidationError):
        engine.create_session(roster_size=3, session_type='phone')


def test_stats(engine, active_session):
    sid = active_session.id
    token = engine.current_credential(sid).token
    engine.join(sid, '1')
    engine.join(sid, '1')
    engine.scan(sid, '1', token)
    engine.scan(sid, '1', token)
    stats = engine.stats(sid)
    assert stats['joins'] == 1
    assert stats['duplicate_joins'] == 1
    assert stats['scans_accepted'] == 1
    assert stats['duplicate_scans'] == 1
    assert stats['credentials_issued'] == 1
    assert stats['ledger_version'] == 2


def test_sweep_archives_old_ended_sessions(engine, active_session, clock):
    engine.join(active_session.id, '1')
    engine.end(active_session.id)
    assert engine.sweep(clock() + timedelta(hours=23)) == []
    assert engine.sweep(clock() + timedelta(hours=24)) == [active_session.id]
    with pytest.raises(SessionNotFound):
        engine.get_session(active_session.id)
    assert engine.store.entries(active_session.id) == []
    assert engine.store.get_session(active_session.id).final_report is not None


def test_sweep_keeps_running_sessions(engine, active_session, clock):
    assert engine.sweep(clock() + timedelta(days=3)) == []
    assert engine.get_session(active_session.id).phase is Phase.ACTIVE


def test_rehydrates_from_store_after_restart(store, clock, engine, active_session):
    """A new engine over the same store resumes the session where it was."""
    sid = active_session.id
    token = engine.current_credential(sid).token
    engine.join(sid, '1')
    engine.scan(sid, '2', token)
    engine.shutdown()

    restarted = AttendanceEngine(store=store, clock=clock, ATTENDANCE_TIMERS_ENABLED=False)
    try:
        assert restarted.get_session(sid).phase is Phase.ACTIVE
        snapshot = restarted.snapshot(sid)
        assert snapshot.total_joined == 2
        assert snapshot.total_present == 1
        assert snapshot.version == 2
        # old credentials are gone; a fresh one was issued on restore
        with pytest.raises(CredentialUnknown):
            restarted.scan(sid, '3', token)
        restarted.scan(sid, '3', restarted.current_credential(sid).token)
        assert restarted.join(sid, '1')[1] is False
    finally:
        restarted.shutdown()
