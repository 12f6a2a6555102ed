import logging

from flask import Blueprint, g, jsonify, make_response, request

from auth import require_instructor
from errors import InvalidInput
from importer import decode_upload
from models import db
from rate_limits import limit_resends
from reports import attempt_report_pdf, export_csv
from schemas import (
    EmailInput,
    ExtendInput,
    QuestionUpdateInput,
    QuizInput,
    StatusInput,
    StudentUpdateInput,
    TerminateInput,
)
from services import current_services

logger = logging.getLogger(__name__)

admin_bp = Blueprint('admin', __name__, url_prefix='/api')


def _owned_quiz(quiz_id):
    return current_services().quizzes.assert_ownership(g.instructor_id, quiz_id)


def _owned_attempt(attempt_id):
    services = current_services()
    attempt = services.attempts.get(attempt_id)
    services.quizzes.assert_ownership(g.instructor_id, attempt.quiz_id)
    return attempt


def _uploaded_csv() -> str:
    f = request.files.get('file') or request.files.get('csv_file')
    if f is not None:
        if not f.filename:
            raise InvalidInput('CSV file is required', 'MissingFile')
        return decode_upload(f.read())
    body = request.get_json(silent=True)
    if isinstance(body, dict) and isinstance(body.get('csv'), str):
        return body['csv']
    raw = request.get_data()
    if not raw:
        raise InvalidInput('CSV file is required', 'MissingFile')
    return decode_upload(raw)


# --- QUIZ ROUTES ---
@admin_bp.route('/quizzes', methods=['GET'])
@require_instructor
def list_quizzes():
    quizzes = current_services().quizzes.list_quizzes(g.instructor_id)
    return jsonify({'success': True, 'quizzes': [q.to_dict() for q in quizzes]})


@admin_bp.route('/quizzes', methods=['POST'])
@require_instructor
def create_quiz():
    data = QuizInput.from_payload(request.get_json(silent=True), require_title=True)
    quiz = current_services().quizzes.create(g.instructor_id, data)
    return jsonify({'success': True, 'quiz': quiz.to_dict()}), 201


@admin_bp.route('/quizzes/<int:quiz_id>', methods=['GET'])
@require_instructor
def get_quiz(quiz_id: int):
    quiz = _owned_quiz(quiz_id)
    return jsonify({'success': True, 'quiz': quiz.to_dict()})


@admin_bp.route('/quizzes/<int:quiz_id>', methods=['PATCH'])
@require_instructor
def update_quiz(quiz_id: int):
    data = QuizInput.from_payload(request.get_json(silent=True))
    quiz = current_services().quizzes.update(g.instructor_id, quiz_id, data)
    return jsonify({'success': True, 'quiz': quiz.to_dict()})


@admin_bp.route('/quizzes/<int:quiz_id>', methods=['DELETE'])
@require_instructor
def delete_quiz(quiz_id: int):
    current_services().quizzes.delete(_owned_quiz(quiz_id))
    return jsonify({'success': True, 'message': 'Quiz deleted'})


@admin_bp.route('/quizzes/<int:quiz_id>/status', methods=['PATCH'])
@require_instructor
def set_quiz_status(quiz_id: int):
    data = StatusInput.from_payload(request.get_json(silent=True))
    quiz = current_services().quizzes.set_status(_owned_quiz(quiz_id), data.status)
    return jsonify({'success': True, 'quiz': quiz.to_dict()})


@admin_bp.route('/quizzes/<int:quiz_id>/extend', methods=['PATCH'])
@require_instructor
def extend_quiz(quiz_id: int):
    data = ExtendInput.from_payload(request.get_json(silent=True))
    quiz = current_services().governor.extend(_owned_quiz(quiz_id), data.minutes)
    return jsonify({'success': True, 'quiz': quiz.to_dict()})


@admin_bp.route('/quizzes/<int:quiz_id>/terminate', methods=['PATCH'])
@require_instructor
def terminate_quiz(quiz_id: int):
    quiz = _owned_quiz(quiz_id)
    ended = current_services().governor.close(quiz)
    return jsonify({'success': True, 'endedAttempts': ended, 'quiz': quiz.to_dict()})


# --- MONITORING ROUTES ---
@admin_bp.route('/quizzes/<int:quiz_id>/dashboard', methods=['GET'])
@require_instructor
def quiz_dashboard(quiz_id: int):
    metrics = current_services().dashboard.metrics(_owned_quiz(quiz_id))
    return jsonify({'success': True, **metrics})


@admin_bp.route('/quizzes/<int:quiz_id>/audit', methods=['GET'])
@require_instructor
def quiz_audit(quiz_id: int):
    rows = current_services().dashboard.audit_trail(_owned_quiz(quiz_id))
    return jsonify({'success': True, 'entries': rows})


@admin_bp.route('/quizzes/<int:quiz_id>/attempts', methods=['GET'])
@require_instructor
def quiz_attempts(quiz_id: int):
    rows = current_services().dashboard.attempt_rows(_owned_quiz(quiz_id))
    return jsonify({'success': True, 'attempts': rows})


@admin_bp.route('/quizzes/<int:quiz_id>/export', methods=['GET'])
@require_instructor
def export_results(quiz_id: int):
    quiz = _owned_quiz(quiz_id)
    resp = make_response(export_csv(db.session, quiz))
    resp.headers['Content-Type'] = 'text/csv; charset=utf-8'
    resp.headers['Content-Disposition'] = f'attachment; filename=quiz_{quiz.id}_results.csv'
    return resp


# --- QUESTION ROUTES ---
@admin_bp.route('/quizzes/<int:quiz_id>/questions', methods=['GET'])
@require_instructor
def list_questions(quiz_id: int):
    questions = current_services().quizzes.questions(_owned_quiz(quiz_id))
    return jsonify({'success': True, 'questions': [q.to_dict() for q in questions]})


@admin_bp.route('/quizzes/<int:quiz_id>/questions/upload', methods=['POST'])
@require_instructor
def upload_questions(quiz_id: int):
    quiz = _owned_quiz(quiz_id)
    created = current_services().quizzes.upload_questions(quiz, _uploaded_csv())
    return jsonify({'success': True, 'count': len(created), 'questions': [q.to_dict() for q in created]}), 201


@admin_bp.route('/quizzes/<int:quiz_id>/questions/<int:question_id>', methods=['PATCH'])
@require_instructor
def update_question(quiz_id: int, question_id: int):
    data = QuestionUpdateInput.from_payload(request.get_json(silent=True))
    question = current_services().quizzes.update_question(_owned_quiz(quiz_id), question_id, data)
    return jsonify({'success': True, 'question': question.to_dict()})


@admin_bp.route('/quizzes/<int:quiz_id>/questions/<int:question_id>', methods=['DELETE'])
@require_instructor
def delete_question(quiz_id: int, question_id: int):
    current_services().quizzes.delete_question(_owned_quiz(quiz_id), question_id)
    return jsonify({'success': True, 'message': 'Question deleted'})


@admin_bp.route('/quizzes/<int:quiz_id>/questions', methods=['DELETE'])
@require_instructor
def delete_all_questions(quiz_id: int):
    deleted = current_services().quizzes.delete_all_questions(_owned_quiz(quiz_id))
    return jsonify({'success': True, 'deleted': deleted})


# --- STUDENT ROUTES ---
@admin_bp.route('/quizzes/<int:quiz_id>/students', methods=['GET'])
@require_instructor
def list_students(quiz_id: int):
    students = current_services().quizzes.students(_owned_quiz(quiz_id))
    return jsonify({'success': True, 'students': [s.to_dict() for s in students]})


@admin_bp.route('/quizzes/<int:quiz_id>/students/upload', methods=['POST'])
@require_instructor
def upload_students(quiz_id: int):
    quiz = _owned_quiz(quiz_id)
    students = current_services().quizzes.upload_students(quiz, _uploaded_csv())
    return jsonify({'success': True, 'students': [s.to_dict() for s in students]}), 201


@admin_bp.route('/quizzes/<int:quiz_id>/students/<int:student_id>', methods=['PATCH'])
@require_instructor
def update_student(quiz_id: int, student_id: int):
    data = StudentUpdateInput.from_payload(request.get_json(silent=True))
    student = current_services().quizzes.update_student(_owned_quiz(quiz_id), student_id, data)
    return jsonify({'success': True, 'student': student.to_dict()})


@admin_bp.route('/quizzes/<int:quiz_id>/students/<int:student_id>', methods=['DELETE'])
@require_instructor
def delete_student(quiz_id: int, student_id: int):
    current_services().quizzes.delete_student(_owned_quiz(quiz_id), student_id)
    return jsonify({'success': True, 'message': 'Student deleted'})


@admin_bp.route('/quizzes/<int:quiz_id>/students', methods=['DELETE'])
@require_instructor
def delete_all_students(quiz_id: int):
    deleted = current_services().quizzes.delete_all_students(_owned_quiz(quiz_id))
    return jsonify({'success': True, 'deleted': deleted})


# --- INVITATION ROUTES ---
@admin_bp.route('/quizzes/<int:quiz_id>/invitations/send', methods=['POST'])
@require_instructor
def send_invitations(quiz_id: int):
    sent = current_services().invitations.send_all(_owned_quiz(quiz_id))
    return jsonify({'success': True, 'sent': sent})


@admin_bp.route('/quizzes/<int:quiz_id>/invitations/send-one', methods=['POST'])
@require_instructor
def send_one_invitation(quiz_id: int):
    data = EmailInput.from_payload(request.get_json(silent=True))
    current_services().invitations.send_one(_owned_quiz(quiz_id), data.email)
    return jsonify({'success': True, 'sent': 1})


@admin_bp.route('/quizzes/<int:quiz_id>/invitations/resend', methods=['POST'])
@limit_resends
@require_instructor
def resend_invitation(quiz_id: int):
    data = EmailInput.from_payload(request.get_json(silent=True))
    current_services().invitations.resend(_owned_quiz(quiz_id), data.email)
    return jsonify({'success': True, 'sent': 1})


# --- ATTEMPT ROUTES ---
@admin_bp.route('/attempts/<int:attempt_id>/detail', methods=['GET'])
@require_instructor
def attempt_detail(attempt_id: int):
    attempt = _owned_attempt(attempt_id)
    return jsonify({'success': True, 'attempt': current_services().dashboard.attempt_detail(attempt)})


@admin_bp.route('/attempts/<int:attempt_id>/report.pdf', methods=['GET'])
@require_instructor
def attempt_report(attempt_id: int):
    attempt = _owned_attempt(attempt_id)
    quiz = _owned_quiz(attempt.quiz_id)
    resp = make_response(attempt_report_pdf(db.session, quiz, attempt))
    resp.headers['Content-Type'] = 'application/pdf'
    resp.headers['Content-Disposition'] = f'attachment; filename=attempt_report_{attempt.id}.pdf'
    return resp


@admin_bp.route('/attempts/<int:attempt_id>/terminate', methods=['PATCH'])
@require_instructor
def terminate_attempt(attempt_id: int):
    _owned_attempt(attempt_id)
    data = TerminateInput.from_payload(request.get_json(silent=True))
    attempt = current_services().attempts.terminate(attempt_id, data.reason)
    return jsonify({'success': True, 'status': 'ended', 'attempt': attempt.to_dict()})


@admin_bp.route('/attempts/<int:attempt_id>', methods=['DELETE'])
@require_instructor
def delete_attempt(attempt_id: int):
    _owned_attempt(attempt_id)
    current_services().attempts.delete(attempt_id)
    return jsonify({'success': True, 'status': 'deleted'})
