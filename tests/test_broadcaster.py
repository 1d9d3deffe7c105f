"""Delta fan-out, periodic snapshots and dashboard reconciliation."""
import random

import pytest

from rollsync.services.broadcaster import (
    DELTA,
    SNAPSHOT,
    Message,
    Subscription,
    present_percentage,
)
from rollsync.services.dashboard_view import DashboardView


class LossySubscription(Subscription):
    """Drops, duplicates and reorders deltas; snapshots always arrive."""

    def __init__(self, session_id, rng, **kwargs):
        super().__init__(session_id, maxsize=10000, **kwargs)
        self.rng = rng
        self._held = []

    def deliver(self, message):
        if message.type != DELTA:
            return super().deliver(message)
        roll = self.rng.random()
        if roll < 0.3:
            return True
        if roll < 0.45:
            super().deliver(message)
            return super().deliver(message)
        if roll < 0.6:
            self._held.append(message)
            return True
        while self._held:
            super().deliver(self._held.pop())
        return super().deliver(message)


class BrokenSubscription(Subscription):
    def deliver(self, message):
        raise RuntimeError("socket gone")


@pytest.mark.parametrize('present, enrolled, expected', [
    (7, 40, 18),
    (1, 8, 13),
    (1, 200, 1),
    (1, 201, 0),
    (40, 40, 100),
    (0, 40, 0),
    (3, 0, 0),
])
def test_present_percentage_rounds_half_up(present, enrolled, expected):
    assert present_percentage(present, enrolled) == expected


def test_first_message_is_snapshot(engine, active_session):
    engine.join(active_session.id, '1')
    subscription = engine.subscribe(active_session.id)
    message = subscription.get(timeout=0)
    assert message.type == SNAPSHOT
    assert message.payload.total_joined == 1
    assert message.payload.version == 1


def test_writes_are_pushed_as_deltas(engine, active_session):
    subscription = engine.subscribe(active_session.id)
    subscription.drain()
    engine.join(active_session.id, '1', section='CSE-3A')
    [message] = subscription.drain()
    assert message.type == DELTA
    assert message.to_dict() == {
        'type': 'delta',
        'data': {
            'session_id': active_session.id,
            'version': 1,
            'student_key': '1',
            'status': 'joined',
            'seq': 1,
            'joined': True,
        },
    }


def test_snapshot_counts_and_sections(engine, active_session):
    sid = active_session.id
    token = engine.current_credential(sid).token
    engine.join(sid, '1', section='A')
    engine.join(sid, '2', section='B')
    engine.scan(sid, '1', token, section='A')
    engine.scan(sid, '3', token)
    snapshot = engine.snapshot(sid)
    assert snapshot.total_enrolled == 40
    assert snapshot.total_joined == 3
    assert snapshot.total_present == 2
    assert snapshot.present_percentage == 5
    assert snapshot.per_section['A'].to_dict() == {'joined': 1, 'present': 1}
    assert snapshot.per_section['B'].to_dict() == {'joined': 1, 'present': 0}
    assert snapshot.entries['3'] == {'status': 'present', 'seq': 1, 'joined': True}


def test_failing_subscriber_is_isolated(engine, active_session):
    """One broken dashboard must not stop delivery to the others."""
    runtime = engine.runtime(active_session.id)
    runtime.broadcaster.subscribe(BrokenSubscription(active_session.id))
    healthy = engine.subscribe(active_session.id)
    healthy.drain()
    entry, _ = engine.join(active_session.id, '1')
    assert engine.runtime(active_session.id).ledger.get('1') == entry
    assert [m.type for m in healthy.drain()] == [DELTA]


def test_unsubscribe_stops_delivery(engine, active_session):
    subscription = engine.subscribe(active_session.id)
    engine.unsubscribe(active_session.id, subscription.id)
    engine.join(active_session.id, '1')
    assert subscription.closed
    assert [m.type for m in subscription.drain()] == [SNAPSHOT]
    assert engine.stats(active_session.id)['subscribers'] == 0


def test_full_mailbox_drops_oldest(engine, active_session):
    runtime = engine.runtime(active_session.id)
    subscription = runtime.broadcaster.subscribe(Subscription(active_session.id, maxsize=3))
    for key in range(5):
        engine.join(active_session.id, str(key))
    messages = subscription.drain()
    assert len(messages) == 3
    assert subscription.dropped == 3
    assert [m.payload.student_key for m in messages] == ['2', '3', '4']


def test_resync_sends_snapshot(engine, active_session):
    subscription = engine.subscribe(active_session.id)
    subscription.drain()
    engine.join(active_session.id, '1')
    snapshot = engine.resync(active_session.id)
    types = [m.type for m in subscription.drain()]
    assert types == [DELTA, SNAPSHOT]
    assert snapshot.version == 1


def test_idle_subscription_dropped_on_resync(clock, store):
    from rollsync.services.attendance_engine import AttendanceEngine

    engine = AttendanceEngine(store=store, clock=clock, ATTENDANCE_TIMERS_ENABLED=False,
                              SUBSCRIPTION_IDLE_TIMEOUT=30)
    session = engine.create_session(roster_size=5)
    subscription = engine.subscribe(session.id)
    clock.advance(31)
    engine.resync(session.id)
    assert subscription.closed
    assert engine.runtime(session.id).broadcaster.get_subscription(subscription.id) is None
    engine.shutdown()


def test_no_drift_under_loss(engine, active_session):
    """Whatever deltas are lost or reordered, the view matches the ledger after a snapshot."""
    sid = active_session.id
    runtime = engine.runtime(sid)
    rng = random.Random(7)
    subscription = runtime.broadcaster.subscribe(LossySubscription(sid, rng))
    view = DashboardView(sid)
    token = engine.current_credential(sid).token

    for step in range(300):
        key = str(rng.randint(1, 40))
        action = rng.random()
        if action < 0.4:
            engine.join(sid, key)
        elif action < 0.7:
            engine.scan(sid, key, token)
        else:
            entry = runtime.ledger.entry_or_unmarked(key)
            engine.move(sid, key, rng.choice(['present', 'absent']), entry.seq)
        if step % 25 == 0:
            for message in subscription.drain():
                view.apply(message)

    engine.resync(sid)
    for message in subscription.drain():
        view.apply(message)

    snapshot = engine.snapshot(sid)
    assert view.snapshot_version == snapshot.version
    assert view.confirmed_state() == snapshot.entries
    assert view.total_joined == snapshot.total_joined
    assert view.total_present == snapshot.total_present
    assert view.present_percentage == snapshot.present_percentage


def test_view_ignores_stale_and_duplicate_deltas():
    view = DashboardView('s-1')
    view.apply({'type': 'snapshot', 'data': {
        'session_id': 's-1', 'phase': 'active', 'version': 5, 'total_enrolled': 10,
        'entries': {'1': {'status': 'present', 'seq': 2, 'joined': True}},
    }})
    assert not view.apply({'type': 'delta', 'data': {
        'version': 4, 'student_key': '2', 'status': 'joined', 'seq': 1, 'joined': True,
    }})
    delta = {'version': 6, 'student_key': '2', 'status': 'joined', 'seq': 1, 'joined': True}
    assert view.apply({'type': 'delta', 'data': delta})
    assert not view.apply({'type': 'delta', 'data': dict(delta, version=7)})
    assert view.total_joined == 2
    assert view.present_percentage == 10


def test_older_snapshot_is_ignored():
    view = DashboardView('s-1')
    view.apply_snapshot({'version': 3, 'entries': {'1': {'status': 'present', 'seq': 1, 'joined': True}}})
    assert not view.apply_snapshot({'version': 2, 'entries': {}})
    assert view.total_present == 1


def test_message_wire_format(engine, active_session):
    subscription = engine.subscribe(active_session.id)
    wire = subscription.get(timeout=0).to_dict()
    assert wire['type'] == 'snapshot'
    assert wire['data']['phase'] == 'active'
    assert isinstance(Message(SNAPSHOT, engine.snapshot(active_session.id)).to_dict()['data'], dict)
