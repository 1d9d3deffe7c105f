"""Serialise instructor moves with one in-flight slot per student."""
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from rollsync.services.broadcaster import ReconciliationBroadcaster, Snapshot
from rollsync.services.errors import MutationInProgress
from rollsync.services.presence_ledger import (
    PresenceEntry,
    PresenceLedger,
    PresenceStatus,
    normalize_student_key,
    parse_status,
)
from rollsync.services.scheduler import Clock, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PendingMutation:
    student_key: str
    from_status: Optional[PresenceStatus]
    to_status: PresenceStatus
    expected_seq: int
    started_at: datetime

    def to_dict(self) -> Dict:
        return {
            'student_key': self.student_key,
            'from_status': self.from_status.value if self.from_status else None,
            'to_status': self.to_status.value,
            'expected_seq': self.expected_seq,
            'started_at': self.started_at.isoformat(),
        }


class MutationCoordinator:
    """
    Applies instructor moves to the ledger.

    A second move for a student whose previous move has not finished is
    rejected with MutationInProgress rather than queued. Conflicts are never
    retried here; the caller re-reads and decides.
    """

    def __init__(self, ledger: PresenceLedger, broadcaster: ReconciliationBroadcaster, clock: Clock = utc_now):
        self.ledger = ledger
        self.broadcaster = broadcaster
        self.clock = clock
        self._pending: Dict[str, PendingMutation] = {}
        self._pending_lock = threading.Lock()

    def pending(self) -> List[PendingMutation]:
        with self._pending_lock:
            return list(self._pending.values())

    def is_pending(self, student_key) -> bool:
        with self._pending_lock:
            return normalize_student_key(student_key) in self._pending

    def move(
        self,
        session_id: str,
        student_key,
        to_status,
        expected_seq: int,
        from_status=None,
    ) -> Tuple[PresenceEntry, Snapshot]:
        """Move a student; returns the confirmed entry and the recomputed snapshot."""
        key = normalize_student_key(student_key)
        pending = PendingMutation(
            student_key=key,
            from_status=parse_status(from_status) if from_status is not None else None,
            to_status=parse_status(to_status),
            expected_seq=expected_seq,
            started_at=self.clock(),
        )
        self._claim(pending)
        try:
            entry = self.ledger.apply_move(
                session_id, key, pending.from_status, pending.to_status, expected_seq,
            )
        finally:
            self._release(key)

        logger.info(
            "Session %s: moved %s to %s (seq %s)",
            self.ledger.session_id, key, entry.status.value, entry.seq,
        )
        # Aggregates are replayed from the ledger, never patched from the delta.
        snapshot = self.broadcaster.resync()
        return entry, snapshot

    def _claim(self, pending: PendingMutation) -> None:
        with self._pending_lock:
            if pending.student_key in self._pending:
                raise MutationInProgress(
                    f"A move for student {pending.student_key} is already in progress",
                    student_key=pending.student_key,
                )
            self._pending[pending.student_key] = pending

    def _release(self, student_key: str) -> None:
        with self._pending_lock:
            self._pending.pop(student_key, None)
