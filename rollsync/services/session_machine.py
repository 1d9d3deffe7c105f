"""Authoritative lifecycle of one attendance session."""
import logging
import threading
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from rollsync.services.errors import InvalidTransition, SessionNotActive, ValidationError
from rollsync.services.scheduler import Clock, utc_now

logger = logging.getLogger(__name__)


class Phase(Enum):
    """Session lifecycle stage."""
    CREATED = 'created'
    LOCKED = 'locked'
    ACTIVE = 'active'
    ENDED = 'ended'


class SessionType(Enum):
    """How students are identified in the final report."""
    ROLL = 'roll'
    EMAIL = 'email'


@dataclass(frozen=True)
class AttendanceSession:
    """Immutable view of a session; every transition produces a new instance."""
    id: str
    phase: Phase = Phase.CREATED
    roster_size: int = 0
    total_enrolled: Optional[int] = None
    section: Optional[str] = None
    instructor_id: Optional[str] = None
    session_type: SessionType = SessionType.ROLL
    created_at: datetime = field(default_factory=utc_now)
    locked_at: Optional[datetime] = None
    active_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    archived: bool = False
    credentials_issued: int = 0
    final_report: Optional[Dict[str, Any]] = None

    @staticmethod
    def new_id() -> str:
        return str(uuid.uuid4())

    @property
    def denominator(self) -> int:
        """Enrollment used for percentages: frozen once Active, live before."""
        return self.total_enrolled if self.total_enrolled is not None else self.roster_size

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        def stamp(value):
            return value.isoformat() if value else None

        return {
            'id': self.id,
            'phase': self.phase.value,
            'roster_size': self.roster_size,
            'total_enrolled': self.total_enrolled,
            'section': self.section,
            'instructor_id': self.instructor_id,
            'session_type': self.session_type.value,
            'created_at': stamp(self.created_at),
            'locked_at': stamp(self.locked_at),
            'active_at': stamp(self.active_at),
            'ended_at': stamp(self.ended_at),
            'archived': self.archived,
            'credentials_issued': self.credentials_issued,
        }


class SessionStateMachine:
    """
    Owns the phase of one session.

    Created -(lock)-> Locked -(start)-> Active -(end)-> Ended, and
    Locked -(unlock)-> Created. ``end`` is also accepted before Active and
    is a no-op on an Ended session.
    """

    TRANSITIONS = {
        ('lock', Phase.CREATED): (Phase.LOCKED, 'locked_at'),
        ('unlock', Phase.LOCKED): (Phase.CREATED, None),
        ('start', Phase.LOCKED): (Phase.ACTIVE, 'active_at'),
        ('end', Phase.CREATED): (Phase.ENDED, 'ended_at'),
        ('end', Phase.LOCKED): (Phase.ENDED, 'ended_at'),
        ('end', Phase.ACTIVE): (Phase.ENDED, 'ended_at'),
    }

    def __init__(self, session: AttendanceSession, store=None, clock: Clock = utc_now, lock=None):
        self._session = session
        self.store = store
        self.clock = clock
        self.lock = lock or threading.RLock()

    @property
    def session(self) -> AttendanceSession:
        return self._session

    @property
    def session_id(self) -> str:
        return self._session.id

    @property
    def phase(self) -> Phase:
        return self._session.phase

    def is_active(self) -> bool:
        return self._session.phase is Phase.ACTIVE

    def require_phase(self, *phases: Phase, action: str = 'this operation') -> AttendanceSession:
        """Raise SessionNotActive unless the session is in one of ``phases``."""
        session = self._session
        if session.phase not in phases:
            raise SessionNotActive(
                f"Session is {session.phase.value}; {action} is not allowed",
                session_id=session.id,
                phase=session.phase.value,
            )
        return session

    def lock_session(self) -> AttendanceSession:
        return self._transition('lock')

    def unlock(self) -> AttendanceSession:
        return self._transition('unlock', locked_at=None)

    def start(self) -> AttendanceSession:
        # The denominator is frozen here so later roster changes cannot move it.
        return self._transition('start', total_enrolled=self._session.roster_size)

    def end(self, **changes: Any) -> AttendanceSession:
        with self.lock:
            if self._session.phase is Phase.ENDED:
                return self._session
            return self._transition('end', **changes)

    def set_roster_size(self, roster_size: int) -> AttendanceSession:
        """Update enrollment supplied by the roster import; frozen once attendance starts."""
        if not isinstance(roster_size, int) or roster_size < 0:
            raise ValidationError("Roster size must be a non-negative integer")
        with self.lock:
            if self._session.phase not in (Phase.CREATED, Phase.LOCKED):
                raise InvalidTransition(
                    f"Roster is frozen in phase {self._session.phase.value}",
                    session_id=self.session_id,
                )
            return self._commit(replace(self._session, roster_size=roster_size))

    def update(self, **changes: Any) -> AttendanceSession:
        """Commit non-phase bookkeeping fields (counters, archive flag)."""
        with self.lock:
            return self._commit(replace(self._session, **changes))

    def _transition(self, action: str, **changes: Any) -> AttendanceSession:
        with self.lock:
            current = self._session.phase
            target = self.TRANSITIONS.get((action, current))
            if target is None:
                raise InvalidTransition(
                    f"Cannot {action} a session in phase {current.value}",
                    session_id=self.session_id,
                    phase=current.value,
                    action=action,
                )
            phase, stamp_field = target
            if stamp_field:
                changes[stamp_field] = self.clock()
            session = self._commit(replace(self._session, phase=phase, **changes))
            logger.info("Session %s: %s -> %s", self.session_id, current.value, phase.value)
            return session

    def _commit(self, session: AttendanceSession) -> AttendanceSession:
        # Write-through first so a failing store leaves the phase untouched.
        if self.store is not None:
            self.store.put_session(session)
        self._session = session
        return session
