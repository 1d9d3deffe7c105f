"""Persisted attendance session."""
from rollsync import db
from rollsync.models.base import BaseModel


class AttendanceSessionModel(BaseModel):
    """Durable copy of a session's lifecycle and final report."""

    __tablename__ = 'attendance_sessions'

    session_id = db.Column(db.String(36), unique=True, nullable=False, index=True)
    phase = db.Column(db.String(16), nullable=False, default='created', index=True)
    session_type = db.Column(db.String(16), nullable=False, default='roll')
    section = db.Column(db.String(64), nullable=True, index=True)
    instructor_id = db.Column(db.String(64), nullable=True, index=True)

    # Enrollment
    roster_size = db.Column(db.Integer, nullable=False, default=0)
    total_enrolled = db.Column(db.Integer, nullable=True)  # frozen on start

    # Lifecycle timestamps
    opened_at = db.Column(db.DateTime, nullable=False)
    locked_at = db.Column(db.DateTime, nullable=True)
    active_at = db.Column(db.DateTime, nullable=True)
    ended_at = db.Column(db.DateTime, nullable=True, index=True)

    archived = db.Column(db.Boolean, nullable=False, default=False)
    credentials_issued = db.Column(db.Integer, nullable=False, default=0)
    final_report = db.Column(db.JSON, nullable=True)

    entries = db.relationship(
        'PresenceEntryModel',
        backref='session',
        lazy='dynamic',
        cascade='all, delete-orphan',
    )

    def __repr__(self) -> str:
        return f'<AttendanceSession {self.session_id} {self.phase}>'
