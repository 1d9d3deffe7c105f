"""Instructor session API endpoints."""
from flask import Blueprint, current_app, request
from flask_jwt_extended import jwt_required, get_jwt_identity
from rollsync.services.credential_service import render_qr_image
from rollsync.services.report_service import ReportService
from rollsync.utils.decorators import instructor_required, json_body
from rollsync.utils.helpers import error_response, get_engine, success_response

sessions_bp = Blueprint('sessions', __name__)


def _session_payload(session_id):
    engine = get_engine()
    data = engine.get_session(session_id).to_dict()
    data['stats'] = engine.stats(session_id)
    return data


@sessions_bp.route('/health', methods=['GET'])
def health_check():
    """Health check endpoint."""
    return success_response(message='Session service is running')


@sessions_bp.route('', methods=['POST'])
@jwt_required()
@instructor_required
def create_session():
    """Open a new attendance session."""
    data = request.get_json(silent=True) or {}
    session = get_engine().create_session(
        roster_size=data.get('roster_size', 0),
        section=data.get('section'),
        instructor_id=str(get_jwt_identity()),
        session_type=data.get('session_type', 'roll'),
    )
    return success_response(
        data=session.to_dict(),
        message='Session created. Students can now join.',
        status_code=201
    )


@sessions_bp.route('/<session_id>', methods=['GET'])
@jwt_required()
def get_session(session_id):
    """Session phase and counters."""
    return success_response(data=_session_payload(session_id))


@sessions_bp.route('/<session_id>/roster', methods=['PUT'])
@jwt_required()
@instructor_required
@json_body('roster_size')
def set_roster(session_id):
    """Update enrollment from the roster import."""
    session = get_engine().set_roster_size(session_id, request.get_json()['roster_size'])
    return success_response(data=session.to_dict(), message='Roster updated')


@sessions_bp.route('/<session_id>/lock', methods=['POST'])
@jwt_required()
@instructor_required
def lock_session(session_id):
    """Close the session to new joins."""
    session = get_engine().lock(session_id)
    return success_response(data=session.to_dict(), message='Session locked. Students can no longer join.')


@sessions_bp.route('/<session_id>/unlock', methods=['POST'])
@jwt_required()
@instructor_required
def unlock_session(session_id):
    """Reopen a locked session to joins."""
    session = get_engine().unlock(session_id)
    return success_response(data=session.to_dict(), message='Session unlocked')


@sessions_bp.route('/<session_id>/start', methods=['POST'])
@jwt_required()
@instructor_required
def start_session(session_id):
    """Start attendance; credentials begin rotating."""
    engine = get_engine()
    session = engine.start(session_id)
    credential = engine.current_credential(session_id)
    data = session.to_dict()
    data['credential'] = credential.to_dict() if credential else None
    return success_response(data=data, message='Attendance started. QR codes are now active.')


@sessions_bp.route('/<session_id>/end', methods=['POST'])
@jwt_required()
@instructor_required
def end_session(session_id):
    """End the session; repeated calls succeed."""
    session = get_engine().end(session_id)
    data = session.to_dict()
    data['report'] = session.final_report
    return success_response(data=data, message='Session ended')


@sessions_bp.route('/<session_id>/credential', methods=['GET'])
@jwt_required()
@instructor_required
def current_credential(session_id):
    """Credential students should scan right now."""
    credential = get_engine().current_credential(session_id)
    if credential is None:
        return error_response("No valid credential yet", 503, code='CREDENTIAL_PENDING')

    data = credential.to_dict()
    data['qr_data'] = credential.qr_payload()
    if current_app.config.get('CREDENTIAL_QR_ENABLED'):
        data['qr_image'] = render_qr_image(data['qr_data'])
    return success_response(data=data)


@sessions_bp.route('/<session_id>/snapshot', methods=['GET'])
@jwt_required()
@instructor_required
def get_snapshot(session_id):
    """Authoritative counters computed from the ledger."""
    return success_response(data=get_engine().snapshot(session_id).to_dict())


@sessions_bp.route('/<session_id>/moves', methods=['POST'])
@jwt_required()
@instructor_required
@json_body('student_key', 'to_status', 'expected_seq')
def move_student(session_id):
    """Move a student between present and absent."""
    data = request.get_json()
    entry, snapshot = get_engine().move(
        session_id,
        data['student_key'],
        data['to_status'],
        data['expected_seq'],
        from_status=data.get('from_status'),
    )
    return success_response(
        data={'entry': entry.to_dict(), 'snapshot': snapshot.to_dict()},
        message='Student moved'
    )


@sessions_bp.route('/<session_id>/moves/pending', methods=['GET'])
@jwt_required()
@instructor_required
def pending_moves(session_id):
    """Moves currently in flight."""
    pending = get_engine().pending_moves(session_id)
    return success_response(data=[p.to_dict() for p in pending])


@sessions_bp.route('/<session_id>/report.csv', methods=['GET'])
@jwt_required()
@instructor_required
def export_report(session_id):
    """Final attendance as CSV."""
    report = get_engine().report(session_id)
    if report is None:
        return error_response("Report is available once the session has ended", 409, code='REPORT_NOT_READY')

    return ReportService.report_to_csv(report), 200, {
        'Content-Type': 'text/csv; charset=utf-8',
        'Content-Disposition': f'attachment; filename=attendance_{session_id}.csv'
    }
