"""Persisted presence entry."""
from rollsync import db
from rollsync.models.base import BaseModel


class PresenceEntryModel(BaseModel):
    """One student's presence in one session."""

    __tablename__ = 'presence_entries'
    __table_args__ = (
        db.UniqueConstraint('session_id', 'student_key', name='uq_presence_session_student'),
    )

    session_id = db.Column(
        db.String(36),
        db.ForeignKey('attendance_sessions.session_id'),
        nullable=False,
        index=True,
    )
    student_key = db.Column(db.String(64), nullable=False)
    status = db.Column(db.String(16), nullable=False, default='unmarked')
    seq = db.Column(db.Integer, nullable=False, default=0)
    version = db.Column(db.Integer, nullable=False, default=0)
    section = db.Column(db.String(64), nullable=True)

    joined_at = db.Column(db.DateTime, nullable=True)
    marked_at = db.Column(db.DateTime, nullable=True)
    source_event = db.Column(db.String(16), nullable=True)  # join, scan, manual_move

    def __repr__(self) -> str:
        return f'<PresenceEntry {self.session_id}-{self.student_key}>'
