"""Error taxonomy for the attendance engine."""
from typing import Any, Dict, Optional


class AttendanceError(Exception):
    """Base class for every engine error surfaced to callers."""

    code = 'ATTENDANCE_ERROR'
    status_code = 400

    def __init__(self, message: str = None, **details: Any):
        self.message = message or self.__class__.__doc__.strip().rstrip('.')
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        result = {'code': self.code, 'message': self.message}
        if self.details:
            result['details'] = self.details
        return result


class ValidationError(AttendanceError):
    """Invalid request data."""

    code = 'VALIDATION_ERROR'
    status_code = 400


class SessionNotFound(AttendanceError):
    """Session not found."""

    code = 'SESSION_NOT_FOUND'
    status_code = 404


class SessionNotActive(AttendanceError):
    """Session is not accepting this operation in its current phase."""

    code = 'SESSION_NOT_ACTIVE'
    status_code = 409


class InvalidTransition(AttendanceError):
    """Phase transition not allowed."""

    code = 'INVALID_TRANSITION'
    status_code = 409


class CredentialExpired(AttendanceError):
    """QR code expired."""

    code = 'CREDENTIAL_EXPIRED'
    status_code = 410


class CredentialUnknown(AttendanceError):
    """QR code not recognised for this session."""

    code = 'CREDENTIAL_UNKNOWN'
    status_code = 400


class ConcurrentModification(AttendanceError):
    """Entry changed since it was last read."""

    code = 'CONCURRENT_MODIFICATION'
    status_code = 409

    def __init__(self, message: str = None, current: Optional[Dict] = None, **details: Any):
        if current is not None:
            details['current'] = current
        super().__init__(message, **details)
        self.current = current


class MutationInProgress(AttendanceError):
    """Another move for this student is still in flight."""

    code = 'MUTATION_IN_PROGRESS'
    status_code = 423
