"""Dashboard-side view model fed by subscription messages."""
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from rollsync.services.broadcaster import CREDENTIAL, DELTA, SNAPSHOT, present_percentage
from rollsync.services.errors import AttendanceError, MutationInProgress

logger = logging.getLogger(__name__)

UNMARKED = 'unmarked'
PRESENT = 'present'

# Failures that roll an optimistic move back.
MOVE_FAILURES = (AttendanceError, ConnectionError, TimeoutError)


@dataclass
class MoveOutcome:
    ok: bool
    student_key: str
    status: str
    entry: Optional[Dict[str, Any]] = None
    error: Optional[Exception] = None


def _as_dict(value) -> Dict[str, Any]:
    return value.to_dict() if hasattr(value, 'to_dict') else value


class DashboardView:
    """
    What one instructor screen shows.

    Snapshots replace the whole model; deltas are applied only when newer
    than both the last snapshot and the entry's known sequence number;
    counters are always recomputed from the entries, so a duplicated or
    reordered delta cannot double count.
    """

    def __init__(self, session_id: str = None):
        self.session_id = session_id
        self.phase: Optional[str] = None
        self.snapshot_version = -1
        self.total_enrolled = 0
        self.credential: Optional[Dict[str, Any]] = None
        self._confirmed: Dict[str, Dict[str, Any]] = {}
        self._optimistic: Dict[str, str] = {}

    def apply(self, message) -> bool:
        """Apply a subscription message (object or wire dict); False when dropped."""
        message = _as_dict(message)
        kind = message.get('type')
        data = message.get('data') or {}
        if kind == SNAPSHOT:
            return self.apply_snapshot(data)
        if kind == DELTA:
            return self.apply_delta(data)
        if kind == CREDENTIAL:
            self.credential = data
            return True
        logger.debug("Ignoring unknown message type %r", kind)
        return False

    def apply_snapshot(self, data: Dict[str, Any]) -> bool:
        if data['version'] < self.snapshot_version:
            return False
        self.session_id = data.get('session_id', self.session_id)
        self.phase = data.get('phase')
        self.snapshot_version = data['version']
        self.total_enrolled = data.get('total_enrolled', 0)
        self._confirmed = {key: dict(value) for key, value in data.get('entries', {}).items()}
        return True

    def apply_delta(self, data: Dict[str, Any]) -> bool:
        if data['version'] <= self.snapshot_version:
            return False
        key = data['student_key']
        known = self._confirmed.get(key)
        if known is not None and data['seq'] <= known['seq']:
            return False
        self._confirmed[key] = {'status': data['status'], 'seq': data['seq'], 'joined': data.get('joined', False)}
        return True

    def status_of(self, student_key: str) -> str:
        if student_key in self._optimistic:
            return self._optimistic[student_key]
        return self._confirmed.get(student_key, {}).get('status', UNMARKED)

    def seq_of(self, student_key: str) -> int:
        return self._confirmed.get(student_key, {}).get('seq', 0)

    def is_moving(self, student_key: str) -> bool:
        return student_key in self._optimistic

    @property
    def entries(self) -> Dict[str, str]:
        keys = set(self._confirmed) | set(self._optimistic)
        return {key: self.status_of(key) for key in sorted(keys)}

    @property
    def total_joined(self) -> int:
        return sum(1 for value in self._confirmed.values() if value.get('joined'))

    @property
    def total_present(self) -> int:
        return sum(1 for status in self.entries.values() if status == PRESENT)

    @property
    def present_percentage(self) -> int:
        return present_percentage(self.total_present, self.total_enrolled)

    def confirmed_state(self) -> Dict[str, Dict[str, Any]]:
        return {key: dict(value) for key, value in self._confirmed.items()}

    def begin_move(self, student_key: str, to_status: str) -> int:
        """Show ``to_status`` immediately; returns the sequence number to send."""
        if student_key in self._optimistic:
            raise MutationInProgress(f"A move for student {student_key} is already in progress")
        self._optimistic[student_key] = to_status
        return self.seq_of(student_key)

    def confirm_move(self, student_key: str, entry) -> None:
        self._optimistic.pop(student_key, None)
        entry = _as_dict(entry)
        known = self._confirmed.get(student_key)
        if known is None or entry['seq'] > known['seq']:
            self._confirmed[student_key] = {
                'status': entry['status'],
                'seq': entry['seq'],
                'joined': bool(entry.get('joined_at')),
            }

    def rollback_move(self, student_key: str) -> str:
        """Drop the optimistic status; returns the last known-good status."""
        self._optimistic.pop(student_key, None)
        return self.status_of(student_key)

    def perform_move(self, student_key: str, to_status: str, send: Callable[[str, str, int], Any]) -> MoveOutcome:
        """Optimistically move a student and confirm or roll back on the server's answer."""
        try:
            expected_seq = self.begin_move(student_key, to_status)
        except MutationInProgress as exc:
            return MoveOutcome(False, student_key, self.status_of(student_key), error=exc)

        try:
            entry = send(student_key, to_status, expected_seq)
        except MOVE_FAILURES as exc:
            status = self.rollback_move(student_key)
            logger.info("Move of %s to %s rolled back: %s", student_key, to_status, exc)
            return MoveOutcome(False, student_key, status, error=exc)

        self.confirm_move(student_key, entry)
        return MoveOutcome(True, student_key, self.status_of(student_key), entry=_as_dict(entry))
