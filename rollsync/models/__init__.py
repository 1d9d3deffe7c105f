"""Models package with all models."""
from .base import BaseModel
from .attendance_session import AttendanceSessionModel
from .presence_entry import PresenceEntryModel

__all__ = [
    'BaseModel', 'AttendanceSessionModel', 'PresenceEntryModel'
]
