"""Student attendance API endpoints."""
from flask import Blueprint, current_app, request
from flask_jwt_extended import jwt_required, get_jwt, get_jwt_identity
from rollsync import limiter
from rollsync.services.presence_ledger import PresenceStatus
from rollsync.utils.decorators import json_body, student_required
from rollsync.utils.helpers import get_engine, success_response

attendance_bp = Blueprint('attendance', __name__)


def _scan_limit():
    return current_app.config.get('SCAN_RATE_LIMIT', '120 per minute')


@attendance_bp.route('/health', methods=['GET'])
def health_check():
    """Health check endpoint."""
    return success_response(message='Attendance service is running')


@attendance_bp.route('/<session_id>/join', methods=['POST'])
@jwt_required()
@student_required
def join_session(session_id):
    """Join a session; repeated joins return the existing entry."""
    entry, created = get_engine().join(session_id, get_jwt_identity(), section=get_jwt().get('section'))
    message = 'Successfully joined the session' if created else 'You have already joined this session'
    return success_response(
        data={'entry': entry.to_dict(), 'already_joined': not created},
        message=message,
        status_code=201 if created else 200
    )


@attendance_bp.route('/<session_id>/scan', methods=['POST'])
@jwt_required()
@student_required
@limiter.limit(_scan_limit)
@json_body('qr_data')
def scan(session_id):
    """Mark presence with a scanned credential."""
    data = request.get_json()
    entry, marked = get_engine().scan(
        session_id,
        get_jwt_identity(),
        data['qr_data'],
        section=get_jwt().get('section'),
    )
    if marked:
        message = 'Attendance marked successfully!'
    elif entry.status is PresenceStatus.ABSENT:
        message = 'Marked absent by the instructor'
    else:
        message = 'Attendance already marked'
    return success_response(
        data={'entry': entry.to_dict(), 'already_marked': entry.status is PresenceStatus.PRESENT and not marked},
        message=message
    )
