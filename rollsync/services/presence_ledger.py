"""Authoritative per-session record of joins and presence."""
import logging
from dataclasses import asdict, dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from rollsync.services.credential_service import CredentialRotator
from rollsync.services.errors import AttendanceError, ConcurrentModification, ValidationError
from rollsync.services.session_machine import Phase, SessionStateMachine
from rollsync.services.scheduler import Clock, utc_now

logger = logging.getLogger(__name__)


class PresenceStatus(Enum):
    """Presence of one student in a session."""
    JOINED = 'joined'
    PRESENT = 'present'
    ABSENT = 'absent'
    UNMARKED = 'unmarked'


class SourceEvent(Enum):
    """What produced the latest write to an entry."""
    JOIN = 'join'
    SCAN = 'scan'
    MANUAL_MOVE = 'manual_move'


MOVE_TARGETS = (PresenceStatus.PRESENT, PresenceStatus.ABSENT)


@dataclass(frozen=True)
class PresenceEntry:
    """One student's presence; ``seq`` grows by one on every write."""
    student_key: str
    status: PresenceStatus = PresenceStatus.UNMARKED
    seq: int = 0
    version: int = 0
    joined_at: Optional[datetime] = None
    marked_at: Optional[datetime] = None
    source_event: Optional[SourceEvent] = None
    section: Optional[str] = None

    @property
    def joined(self) -> bool:
        return self.joined_at is not None

    def to_dict(self) -> Dict:
        """Convert to dictionary."""
        return {
            'student_key': self.student_key,
            'status': self.status.value,
            'seq': self.seq,
            'version': self.version,
            'joined_at': self.joined_at.isoformat() if self.joined_at else None,
            'marked_at': self.marked_at.isoformat() if self.marked_at else None,
            'source_event': self.source_event.value if self.source_event else None,
            'section': self.section,
        }


@dataclass
class SessionStats:
    """Running counters for one session."""
    joins: int = 0
    duplicate_joins: int = 0
    scans_accepted: int = 0
    duplicate_scans: int = 0
    scans_overridden: int = 0
    rejected_scans: int = 0
    moves_applied: int = 0
    moves_rejected: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


def normalize_student_key(student_key) -> str:
    if student_key is None or isinstance(student_key, bool):
        raise ValidationError("Student key is required")
    key = str(student_key).strip()
    if not key:
        raise ValidationError("Student key is required")
    return key


def parse_status(value) -> PresenceStatus:
    if isinstance(value, PresenceStatus):
        return value
    try:
        return PresenceStatus(str(value).lower())
    except ValueError:
        raise ValidationError(f"Unknown presence status: {value}") from None


class PresenceLedger:
    """
    Per-session ledger of presence entries.

    Writes are serialised by the session lock, written through the store
    before they become visible, and announced to listeners while the lock is
    still held so listeners observe them in version order.
    """

    def __init__(
        self,
        machine: SessionStateMachine,
        rotator: CredentialRotator,
        store=None,
        clock: Clock = utc_now,
        entries: Iterable[PresenceEntry] = (),
    ):
        self.machine = machine
        self.rotator = rotator
        self.store = store
        self.clock = clock
        self.lock = machine.lock
        self.stats = SessionStats()
        self._entries: Dict[str, PresenceEntry] = {e.student_key: e for e in entries}
        self.version = max((e.version for e in self._entries.values()), default=0)
        self._listeners: List[Callable[[PresenceEntry], None]] = []

    @property
    def session_id(self) -> str:
        return self.machine.session_id

    def add_listener(self, listener: Callable[[PresenceEntry], None]) -> None:
        self._listeners.append(listener)

    def get(self, student_key) -> Optional[PresenceEntry]:
        with self.lock:
            return self._entries.get(normalize_student_key(student_key))

    def entry_or_unmarked(self, student_key) -> PresenceEntry:
        key = normalize_student_key(student_key)
        with self.lock:
            return self._entries.get(key) or PresenceEntry(student_key=key)

    def entries(self) -> Dict[str, PresenceEntry]:
        """Point-in-time copy of all entries."""
        with self.lock:
            return dict(self._entries)

    def read_view(self) -> Tuple[int, Dict[str, PresenceEntry]]:
        """Consistent (version, entries) pair."""
        with self.lock:
            return self.version, dict(self._entries)

    def record_join(self, session_id: str, student_key, section: str = None) -> Tuple[PresenceEntry, bool]:
        """Create a Joined entry; a repeated join returns the existing entry unchanged."""
        key = normalize_student_key(student_key)
        with self.lock:
            self._check_session(session_id)
            self.machine.require_phase(Phase.CREATED, Phase.ACTIVE, action='joining')
            existing = self._entries.get(key)
            if existing is not None:
                self.stats.duplicate_joins += 1
                return existing, False
            entry = PresenceEntry(
                student_key=key,
                status=PresenceStatus.JOINED,
                seq=1,
                joined_at=self.clock(),
                source_event=SourceEvent.JOIN,
                section=section,
            )
            entry = self._commit(entry)
            self.stats.joins += 1
            return entry, True

    def record_scan(self, session_id: str, student_key, token: str, section: str = None) -> Tuple[PresenceEntry, bool]:
        """
        Validate ``token`` and mark the student Present.

        Re-scans, and entries an instructor moved to Absent, come back unchanged.
        """
        key = normalize_student_key(student_key)
        with self.lock:
            self._check_session(session_id)
            try:
                self.machine.require_phase(Phase.ACTIVE, action='scanning')
                self.rotator.validate(token, session_id=session_id)
            except AttendanceError:
                self.stats.rejected_scans += 1
                raise

            existing = self._entries.get(key)
            if existing is not None and existing.status is PresenceStatus.PRESENT:
                self.stats.duplicate_scans += 1
                return existing, False
            if existing is not None and existing.status is PresenceStatus.ABSENT:
                # Absent is only ever set by an instructor move; a scan does not undo it.
                self.stats.scans_overridden += 1
                return existing, False

            now = self.clock()
            base = existing or PresenceEntry(student_key=key, section=section)
            entry = replace(
                base,
                status=PresenceStatus.PRESENT,
                seq=base.seq + 1,
                joined_at=base.joined_at or now,
                marked_at=now,
                source_event=SourceEvent.SCAN,
            )
            entry = self._commit(entry)
            self.stats.scans_accepted += 1
            return entry, True

    def apply_move(
        self,
        session_id: str,
        student_key,
        from_status: Optional[PresenceStatus],
        to_status: PresenceStatus,
        expected_seq: int,
    ) -> PresenceEntry:
        """Compare-and-swap a manual status change on ``expected_seq``."""
        key = normalize_student_key(student_key)
        to_status = parse_status(to_status)
        if to_status not in MOVE_TARGETS:
            raise ValidationError("Students can only be moved to present or absent")
        if from_status is not None:
            from_status = parse_status(from_status)
        if not isinstance(expected_seq, int) or isinstance(expected_seq, bool) or expected_seq < 0:
            raise ValidationError("expected_seq must be a non-negative integer")

        with self.lock:
            self._check_session(session_id)
            self.machine.require_phase(Phase.ACTIVE, action='moving students')
            current = self._entries.get(key) or PresenceEntry(student_key=key)
            if current.seq != expected_seq or (from_status is not None and current.status is not from_status):
                self.stats.moves_rejected += 1
                raise ConcurrentModification(
                    f"Student {key} changed since sequence {expected_seq}",
                    current=current.to_dict(),
                )
            entry = replace(
                current,
                status=to_status,
                seq=current.seq + 1,
                marked_at=self.clock() if to_status is PresenceStatus.PRESENT else current.marked_at,
                source_event=SourceEvent.MANUAL_MOVE,
            )
            entry = self._commit(entry)
            self.stats.moves_applied += 1
            return entry

    def _commit(self, entry: PresenceEntry) -> PresenceEntry:
        version = self.version + 1
        entry = replace(entry, version=version)
        if self.store is not None:
            self.store.put(self.session_id, entry)
        self._entries[entry.student_key] = entry
        self.version = version
        for listener in self._listeners:
            try:
                listener(entry)
            except Exception:
                logger.exception("Ledger listener failed for session %s", self.session_id)
        return entry

    def _check_session(self, session_id: Optional[str]) -> None:
        if session_id is not None and session_id != self.session_id:
            raise ValidationError("Entry belongs to another session", session_id=session_id)
