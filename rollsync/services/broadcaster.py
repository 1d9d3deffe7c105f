"""Push deltas and periodic authoritative snapshots to dashboard subscribers."""
import logging
import math
import threading
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from rollsync.services.presence_ledger import PresenceEntry, PresenceLedger, PresenceStatus
from rollsync.services.session_machine import AttendanceSession, Phase, SessionStateMachine
from rollsync.services.scheduler import Clock, utc_now

logger = logging.getLogger(__name__)

SNAPSHOT = 'snapshot'
DELTA = 'delta'
CREDENTIAL = 'credential'


def present_percentage(present: int, enrolled: int) -> int:
    """Percentage rounded half-up; 0 when nobody is enrolled."""
    if enrolled <= 0:
        return 0
    return int(math.floor(present * 100 / enrolled + 0.5))


@dataclass(frozen=True)
class SectionCounts:
    joined: int = 0
    present: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {'joined': self.joined, 'present': self.present}


@dataclass(frozen=True)
class Snapshot:
    """Full recomputation of a session's counters; supersedes every earlier delta."""
    session_id: str
    phase: Phase
    version: int
    total_enrolled: int
    total_joined: int
    total_present: int
    present_percentage: int
    per_section: Dict[str, SectionCounts]
    entries: Dict[str, Dict[str, Any]]
    taken_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'session_id': self.session_id,
            'phase': self.phase.value,
            'version': self.version,
            'total_enrolled': self.total_enrolled,
            'total_joined': self.total_joined,
            'total_present': self.total_present,
            'present_percentage': self.present_percentage,
            'per_section': {name: counts.to_dict() for name, counts in self.per_section.items()},
            'entries': self.entries,
            'taken_at': self.taken_at.isoformat(),
        }


@dataclass(frozen=True)
class Delta:
    """Advisory single-entry change for low-latency feedback."""
    session_id: str
    version: int
    student_key: str
    status: PresenceStatus
    seq: int
    joined: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'session_id': self.session_id,
            'version': self.version,
            'student_key': self.student_key,
            'status': self.status.value,
            'seq': self.seq,
            'joined': self.joined,
        }


@dataclass(frozen=True)
class Message:
    type: str
    payload: Any

    def to_dict(self) -> Dict[str, Any]:
        return {'type': self.type, 'data': self.payload.to_dict()}


def build_snapshot(
    session: AttendanceSession,
    version: int,
    entries: Dict[str, PresenceEntry],
    taken_at: datetime,
) -> Snapshot:
    """Recompute every counter from ledger entries."""
    joined = 0
    present = 0
    sections: Dict[str, Dict[str, int]] = {}
    for entry in entries.values():
        is_present = entry.status is PresenceStatus.PRESENT
        joined += entry.joined
        present += is_present
        if entry.section:
            counts = sections.setdefault(entry.section, {'joined': 0, 'present': 0})
            counts['joined'] += entry.joined
            counts['present'] += is_present

    enrolled = session.denominator
    return Snapshot(
        session_id=session.id,
        phase=session.phase,
        version=version,
        total_enrolled=enrolled,
        total_joined=joined,
        total_present=present,
        present_percentage=present_percentage(present, enrolled),
        per_section={name: SectionCounts(**counts) for name, counts in sorted(sections.items())},
        entries={
            key: {'status': e.status.value, 'seq': e.seq, 'joined': e.joined}
            for key, e in sorted(entries.items())
        },
        taken_at=taken_at,
    )


class Subscription:
    """
    A dashboard's mailbox.

    Bounded: when full the oldest message is discarded, so a consumer that
    stops reading can never block a ledger write. Anything discarded is
    repaired by the next snapshot.
    """

    def __init__(self, session_id: str, maxsize: int = 100, clock: Clock = utc_now, on_close=None):
        self.id = uuid.uuid4().hex
        self.session_id = session_id
        self.clock = clock
        self.created_at = clock()
        self.last_seen = self.created_at
        self.dropped = 0
        self._messages = deque(maxlen=maxsize)
        self._cond = threading.Condition()
        self._closed = False
        self._on_close = on_close

    @property
    def closed(self) -> bool:
        return self._closed

    def deliver(self, message: Message) -> bool:
        with self._cond:
            if self._closed:
                return False
            if len(self._messages) == self._messages.maxlen:
                self.dropped += 1
            self._messages.append(message)
            self._cond.notify_all()
            return True

    def get(self, timeout: float = None) -> Optional[Message]:
        """Next message, or None on timeout or once closed and drained."""
        with self._cond:
            self.last_seen = self.clock()
            if not self._messages and not self._closed:
                self._cond.wait(timeout)
            if self._messages:
                return self._messages.popleft()
            return None

    def drain(self) -> List[Message]:
        with self._cond:
            self.last_seen = self.clock()
            messages = list(self._messages)
            self._messages.clear()
            return messages

    def pending(self) -> int:
        with self._cond:
            return len(self._messages)

    def close(self) -> None:
        """Unsubscribe: no further deliveries, and the broadcaster forgets it."""
        self.finish()
        if self._on_close is not None:
            self._on_close(self)

    def finish(self) -> None:
        """Stop deliveries but keep queued messages readable (session ended)."""
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def __enter__(self) -> 'Subscription':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def __repr__(self) -> str:
        return f'<Subscription {self.id} session={self.session_id}>'


class ReconciliationBroadcaster:
    """Fan-out of ledger changes for one session."""

    def __init__(
        self,
        machine: SessionStateMachine,
        ledger: PresenceLedger,
        queue_size: int = 100,
        idle_timeout: float = None,
        clock: Clock = utc_now,
    ):
        self.machine = machine
        self.ledger = ledger
        self.queue_size = queue_size
        self.idle_timeout = timedelta(seconds=idle_timeout) if idle_timeout else None
        self.clock = clock
        self.snapshots_sent = 0
        self._subscribers: Dict[str, Subscription] = {}
        self._subscribers_lock = threading.Lock()
        ledger.add_listener(self.publish_delta)

    @property
    def session_id(self) -> str:
        return self.machine.session_id

    @property
    def subscriber_count(self) -> int:
        with self._subscribers_lock:
            return sum(1 for s in self._subscribers.values() if not s.closed)

    def subscriptions(self) -> List[Subscription]:
        with self._subscribers_lock:
            return list(self._subscribers.values())

    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        with self._subscribers_lock:
            return self._subscribers.get(subscription_id)

    def subscribe(self, subscription: Subscription = None) -> Subscription:
        """Register a dashboard; its first message is always a full snapshot."""
        subscription = subscription or Subscription(self.session_id, self.queue_size, self.clock)
        subscription._on_close = self._remove
        with self.ledger.lock:
            with self._subscribers_lock:
                self._subscribers[subscription.id] = subscription
            self._deliver(subscription, Message(SNAPSHOT, self.snapshot()))
            if self.machine.phase is Phase.ENDED:
                subscription.finish()
        logger.debug("Session %s: %s subscribed", self.session_id, subscription.id)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscription.close()

    def snapshot(self) -> Snapshot:
        with self.ledger.lock:
            version, entries = self.ledger.read_view()
            return build_snapshot(self.machine.session, version, entries, self.clock())

    def publish_delta(self, entry: PresenceEntry) -> None:
        delta = Delta(
            session_id=self.session_id,
            version=entry.version,
            student_key=entry.student_key,
            status=entry.status,
            seq=entry.seq,
            joined=entry.joined,
        )
        self._broadcast(Message(DELTA, delta))

    def publish_credential(self, credential) -> None:
        self._broadcast(Message(CREDENTIAL, credential))

    def resync(self) -> Snapshot:
        """Send every subscriber a fresh authoritative snapshot."""
        with self.ledger.lock:
            self._drop_idle()
            snapshot = self.snapshot()
            self._broadcast(Message(SNAPSHOT, snapshot))
            self.snapshots_sent += 1
            return snapshot

    def close_all(self) -> None:
        """Final snapshot, then finish every subscription; readers can still drain it."""
        self.resync()
        for subscription in self.subscriptions():
            subscription.finish()

    def _broadcast(self, message: Message) -> None:
        for subscription in self.subscriptions():
            self._deliver(subscription, message)

    def _deliver(self, subscription: Subscription, message: Message) -> None:
        try:
            subscription.deliver(message)
        except Exception:
            logger.warning(
                "Session %s: delivery to %s failed",
                self.session_id, subscription.id, exc_info=True,
            )

    def _drop_idle(self) -> None:
        if self.idle_timeout is None:
            return
        cutoff = self.clock() - self.idle_timeout
        for subscription in self.subscriptions():
            if subscription.last_seen < cutoff:
                logger.info("Session %s: dropping idle subscription %s", self.session_id, subscription.id)
                subscription.close()

    def _remove(self, subscription: Subscription) -> None:
        with self._subscribers_lock:
            self._subscribers.pop(subscription.id, None)
