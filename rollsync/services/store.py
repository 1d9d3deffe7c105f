"""Durable storage of sessions and presence entries."""
import threading
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Dict, List, Optional, Tuple

from rollsync.services.presence_ledger import PresenceEntry, PresenceStatus, SourceEvent
from rollsync.services.session_machine import AttendanceSession, Phase, SessionType


class PresenceStore(ABC):
    """Get/put storage keyed by session id and (session id, student key)."""

    @abstractmethod
    def get_session(self, session_id: str) -> Optional[AttendanceSession]:
        """Load a session or return None."""

    @abstractmethod
    def put_session(self, session: AttendanceSession) -> None:
        """Insert or replace a session."""

    @abstractmethod
    def get(self, session_id: str, student_key: str) -> Optional[PresenceEntry]:
        """Load one entry or return None."""

    @abstractmethod
    def put(self, session_id: str, entry: PresenceEntry) -> None:
        """Insert or replace one entry."""

    @abstractmethod
    def entries(self, session_id: str) -> List[PresenceEntry]:
        """All entries of a session."""

    @abstractmethod
    def open_sessions(self) -> List[AttendanceSession]:
        """Sessions not yet archived."""

    @abstractmethod
    def archive_session(self, session_id: str) -> None:
        """Drop a session's entries and flag it archived; the final report stays."""


class MemoryStore(PresenceStore):
    """Process-local store for tests and single-process deployments."""

    def __init__(self):
        self._lock = threading.Lock()
        self._sessions: Dict[str, AttendanceSession] = {}
        self._entries: Dict[Tuple[str, str], PresenceEntry] = {}

    def get_session(self, session_id):
        with self._lock:
            return self._sessions.get(session_id)

    def put_session(self, session):
        with self._lock:
            self._sessions[session.id] = session

    def get(self, session_id, student_key):
        with self._lock:
            return self._entries.get((session_id, student_key))

    def put(self, session_id, entry):
        with self._lock:
            self._entries[(session_id, entry.student_key)] = entry

    def entries(self, session_id):
        with self._lock:
            return [e for (sid, _), e in self._entries.items() if sid == session_id]

    def open_sessions(self):
        with self._lock:
            return [s for s in self._sessions.values() if not s.archived]

    def archive_session(self, session_id):
        with self._lock:
            for key in [k for k in self._entries if k[0] == session_id]:
                del self._entries[key]
            session = self._sessions.get(session_id)
            if session is not None:
                self._sessions[session_id] = replace(session, archived=True)


class SqlAlchemyStore(PresenceStore):
    """Store backed by the Flask-SQLAlchemy models; needs an application context."""

    def __init__(self, db):
        self.db = db

    def get_session(self, session_id):
        from rollsync.models import AttendanceSessionModel

        row = AttendanceSessionModel.query.filter_by(session_id=session_id).first()
        return self._session_from_row(row) if row else None

    def put_session(self, session):
        from rollsync.models import AttendanceSessionModel

        row = AttendanceSessionModel.query.filter_by(session_id=session.id).first()
        if row is None:
            row = AttendanceSessionModel(session_id=session.id)
        row.phase = session.phase.value
        row.session_type = session.session_type.value
        row.section = session.section
        row.instructor_id = session.instructor_id
        row.roster_size = session.roster_size
        row.total_enrolled = session.total_enrolled
        row.opened_at = session.created_at
        row.locked_at = session.locked_at
        row.active_at = session.active_at
        row.ended_at = session.ended_at
        row.archived = session.archived
        row.credentials_issued = session.credentials_issued
        row.final_report = session.final_report
        self._commit(row)

    def get(self, session_id, student_key):
        from rollsync.models import PresenceEntryModel

        row = PresenceEntryModel.query.filter_by(session_id=session_id, student_key=student_key).first()
        return self._entry_from_row(row) if row else None

    def put(self, session_id, entry):
        from rollsync.models import PresenceEntryModel

        row = PresenceEntryModel.query.filter_by(session_id=session_id, student_key=entry.student_key).first()
        if row is None:
            row = PresenceEntryModel(session_id=session_id, student_key=entry.student_key)
        row.status = entry.status.value
        row.seq = entry.seq
        row.version = entry.version
        row.section = entry.section
        row.joined_at = entry.joined_at
        row.marked_at = entry.marked_at
        row.source_event = entry.source_event.value if entry.source_event else None
        self._commit(row)

    def entries(self, session_id):
        from rollsync.models import PresenceEntryModel

        rows = PresenceEntryModel.query.filter_by(session_id=session_id).all()
        return [self._entry_from_row(row) for row in rows]

    def open_sessions(self):
        from rollsync.models import AttendanceSessionModel

        rows = AttendanceSessionModel.query.filter_by(archived=False).all()
        return [self._session_from_row(row) for row in rows]

    def archive_session(self, session_id):
        from rollsync.models import AttendanceSessionModel, PresenceEntryModel

        try:
            PresenceEntryModel.query.filter_by(session_id=session_id).delete()
            row = AttendanceSessionModel.query.filter_by(session_id=session_id).first()
            if row is not None:
                row.archived = True
            self.db.session.commit()
        except Exception:
            self.db.session.rollback()
            raise

    def _commit(self, row) -> None:
        try:
            self.db.session.add(row)
            self.db.session.commit()
        except Exception:
            self.db.session.rollback()
            raise

    @staticmethod
    def _session_from_row(row) -> AttendanceSession:
        return AttendanceSession(
            id=row.session_id,
            phase=Phase(row.phase),
            roster_size=row.roster_size,
            total_enrolled=row.total_enrolled,
            section=row.section,
            instructor_id=row.instructor_id,
            session_type=SessionType(row.session_type),
            created_at=row.opened_at,
            locked_at=row.locked_at,
            active_at=row.active_at,
            ended_at=row.ended_at,
            archived=row.archived,
            credentials_issued=row.credentials_issued,
            final_report=row.final_report,
        )

    @staticmethod
    def _entry_from_row(row) -> PresenceEntry:
        return PresenceEntry(
            student_key=row.student_key,
            status=PresenceStatus(row.status),
            seq=row.seq,
            version=row.version,
            joined_at=row.joined_at,
            marked_at=row.marked_at,
            source_event=SourceEvent(row.source_event) if row.source_event else None,
            section=row.section,
        )
