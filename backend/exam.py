"""
Student-facing routes: join, answer, proctoring signals and the second camera.

None of these require an instructor token. Attempt ids act as the session handle; the
second-camera routes additionally require the signed token handed out at start.
"""
import logging

from flask import Blueprint, jsonify, request

from attempts import client_settings, find_quiz
from errors import ApiError
from governor import is_joinable
from models import QuizStatus, db, isoformat
from rate_limits import limit_resends
from schemas import (
    EmailInput,
    EventInput,
    FinishInput,
    SecondCamConnectInput,
    SecondCamSnapshotInput,
    SnapshotInput,
    StartAttemptInput,
)
from services import current_services

logger = logging.getLogger(__name__)

exam_bp = Blueprint('exam', __name__, url_prefix='/api')


# --- JOIN ---
@exam_bp.route('/quizzes/<quiz_ref>/public', methods=['GET'])
def public_quiz(quiz_ref: str):
    quiz = find_quiz(db.session, quiz_ref)
    return jsonify({
        'success': True,
        'id': quiz.id,
        'title': quiz.title,
        'description': quiz.description,
        'status': QuizStatus(quiz.status).value,
        'joinable': is_joinable(quiz),
        'startAt': isoformat(quiz.start_at),
        'endAt': isoformat(quiz.end_at),
        'settings': client_settings(quiz),
    })


@exam_bp.route('/quizzes/<quiz_ref>/invitations/resend-otp', methods=['POST'])
@limit_resends
def resend_otp(quiz_ref: str):
    data = EmailInput.from_payload(request.get_json(silent=True))
    quiz = find_quiz(db.session, quiz_ref)
    current_services().invitations.resend(quiz, data.email)
    return jsonify({'success': True, 'status': 'sent'})


@exam_bp.route('/quizzes/<quiz_ref>/verify-otp', methods=['POST'])
def start_attempt(quiz_ref: str):
    data = StartAttemptInput.from_payload(request.get_json(silent=True))
    payload = current_services().attempts.start(quiz_ref, data.email, data.otp, name=data.name)
    return jsonify({'success': True, **payload})


# --- ATTEMPT ---
@exam_bp.route('/attempts/<int:attempt_id>/status', methods=['GET'])
def attempt_status(attempt_id: int):
    return jsonify({'success': True, **current_services().attempts.status(attempt_id)})


@exam_bp.route('/attempts/<int:attempt_id>/events', methods=['POST'])
def record_event(attempt_id: int):
    data = EventInput.from_payload(request.get_json(silent=True))
    result = current_services().attempts.record_event(attempt_id, data.type, data.message, data.extra)
    return jsonify({'success': True, **result})


@exam_bp.route('/attempts/<int:attempt_id>/snapshots', methods=['POST'])
def submit_snapshot(attempt_id: int):
    data = SnapshotInput.from_payload(request.get_json(silent=True))
    outcome = current_services().attempts.admit_snapshot(
        attempt_id, data.phase, data.mime, data.data, data.width, data.height
    )
    return jsonify({'success': True, 'status': outcome}), 201 if outcome == 'saved' else 200


@exam_bp.route('/attempts/<int:attempt_id>/finish', methods=['POST'])
def finish_attempt(attempt_id: int):
    data = FinishInput.from_payload(request.get_json(silent=True))
    result = current_services().attempts.finish(attempt_id, data.answers)
    return jsonify({'success': True, **result.to_dict(include_details=False)})


# --- SECOND CAMERA ---
@exam_bp.route('/attempts/<int:attempt_id>/second-cam/connect', methods=['POST'])
def second_cam_connect(attempt_id: int):
    data = SecondCamConnectInput.from_payload(request.get_json(silent=True))
    return jsonify({'success': True, **current_services().second_cam.connect(attempt_id, data.token)})


@exam_bp.route('/attempts/<int:attempt_id>/second-cam/status', methods=['GET'])
def second_cam_status(attempt_id: int):
    return jsonify({'success': True, **current_services().second_cam.status(attempt_id)})


@exam_bp.route('/attempts/<int:attempt_id>/second-cam/snapshots', methods=['POST'])
def second_cam_snapshot(attempt_id: int):
    data = SecondCamSnapshotInput.from_payload(request.get_json(silent=True))
    result = current_services().second_cam.heartbeat_snapshot(
        attempt_id, data.token, data.mime, data.data, data.width, data.height
    )
    return jsonify({'success': True, **result}), 201


# --- Socket.IO fire-and-forget channel ---

def _attempt_id(data):
    try:
        return int((data or {}).get('attemptId'))
    except (TypeError, ValueError):
        return None


def register_socket_handlers(socketio):
    """Best-effort delivery from pages that are closing; replies only through the ack."""

    @socketio.on('finish_attempt')
    def handle_finish(data):
        attempt_id = _attempt_id(data)
        if attempt_id is None:
            return {'success': False, 'code': 'InvalidInput'}
        try:
            answers = FinishInput.from_payload({'answers': (data or {}).get('answers') or []}).answers
            result = current_services().attempts.finish(attempt_id, answers)
        except ApiError as e:
            db.session.rollback()
            logger.info('Socket finish for attempt=%s not applied: %s', attempt_id, e.code)
            return {'success': False, 'code': e.code}
        return {'success': True, **result.to_dict(include_details=False)}

    @socketio.on('suspicious_event')
    def handle_suspicious_event(data):
        attempt_id = _attempt_id(data)
        if attempt_id is None:
            return {'success': False, 'code': 'InvalidInput'}
        payload = {k: v for k, v in (data or {}).items() if k != 'attemptId'}
        try:
            event = EventInput.from_payload(payload)
            result = current_services().attempts.record_event(attempt_id, event.type, event.message, event.extra)
        except ApiError as e:
            db.session.rollback()
            logger.info('Socket event for attempt=%s not applied: %s', attempt_id, e.code)
            return {'success': False, 'code': e.code}
        return {'success': True, **result}
