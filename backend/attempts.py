"""
Attempt lifecycle.

    in_progress --finish--------> completed
    in_progress --terminate-----> forcibly_ended   (terminate also overwrites a finished attempt)
    in_progress --expire sweep--> expired

Every transition out of in_progress is a single conditional UPDATE guarded by
`status = 'in_progress'`, so concurrent finish/terminate/event requests never double
apply. Timers live in the client; their expiry arrives here as ordinary finish or event
calls.
"""
import logging
import random
from datetime import timedelta
from typing import Iterable, List

from sqlalchemy.exc import IntegrityError

from errors import ApiError, Conflict, Forbidden, InvalidInput, NotFound
from governor import check_joinable
from models import (
    Attempt,
    AttemptSnapshot,
    AttemptStatus,
    AuditLog,
    Event,
    Invitation,
    Question,
    Quiz,
    SecondCamSnapshot,
    SNAPSHOT_PHASES,
    Student,
    is_terminal,
    utcnow,
)
from schemas import clean_image_data
from scoring import ScoreResult, score

logger = logging.getLogger(__name__)


def find_quiz(session, quiz_ref):
    """Look a quiz up by numeric id or by its join code."""
    ref = str(quiz_ref).strip()
    quiz = None
    if ref.isdigit():
        quiz = session.get(Quiz, int(ref))
    if quiz is None:
        quiz = session.query(Quiz).filter_by(quiz_code=ref).first()
    if quiz is None:
        raise NotFound('Quiz not found', 'QuizNotFound')
    return quiz


def active_key_for(quiz, email: str):
    if quiz.allow_multiple_attempts:
        return None
    return f'{quiz.id}:{email}'


def client_settings(quiz):
    return {
        'questionTimeSeconds': quiz.question_time_seconds,
        'totalTimeSeconds': quiz.total_time_seconds or None,
        'showScoreToStudent': bool(quiz.show_score_to_student),
        'requireFullscreen': bool(quiz.require_fullscreen),
        'logSuspiciousActivity': bool(quiz.log_suspicious_activity),
        'enableWebcamSnapshots': bool(quiz.enable_webcam_snapshots),
        'enableFaceCentering': bool(quiz.enable_face_centering),
        'enableSecondCam': bool(quiz.enable_second_cam),
        'mobileAllowed': bool(quiz.mobile_allowed),
    }


def present_questions(quiz, questions, rng=random):
    """Student view: no answers, order and options shuffled per request when enabled."""
    ordered = list(questions)
    if quiz.shuffle_questions:
        rng.shuffle(ordered)
    presented = []
    for question in ordered:
        options = [{'index': idx, 'text': text} for idx, text in enumerate(question.options or [])]
        if quiz.shuffle_options:
            rng.shuffle(options)
        presented.append({'id': question.id, 'text': question.text, 'options': options})
    return presented


class AttemptStateMachine:
    def __init__(self, session, otp_store, second_cam, *, rng=None) -> None:
        self.session = session
        self.otp_store = otp_store
        self.second_cam = second_cam
        self.rng = rng or random.Random()

    def get(self, attempt_id) -> Attempt:
        attempt = self.session.get(Attempt, attempt_id)
        if attempt is None:
            raise NotFound('Attempt not found', 'AttemptNotFound')
        return attempt

    def questions_for(self, quiz_id) -> List[Question]:
        return (
            self.session.query(Question)
            .filter_by(quiz_id=quiz_id)
            .order_by(Question.order_index.asc(), Question.id.asc())
            .all()
        )

    # --- start ---

    def start(self, quiz_ref, email: str, otp: str, name=None, now=None) -> dict:
        now = now or utcnow()
        quiz = find_quiz(self.session, quiz_ref)
        check_joinable(quiz, now)

        invitation = self.session.query(Invitation).filter_by(quiz_id=quiz.id, email=email).first()
        if invitation is None:
            raise NotFound('Invitation not found', 'InvitationNotFound')

        # The code is consumed in the same transaction as the attempt insert; any failure
        # below rolls both back. Wrong guesses are committed inside verify().
        self.otp_store.verify(invitation, otp, now=now, commit=False)
        try:
            attempt, resumed = self._open_attempt(quiz, invitation, email, name, now)
            questions = self.questions_for(quiz.id)
            if not questions:
                raise InvalidInput('No questions uploaded for this quiz', 'NoQuestions')
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            raise Conflict('An attempt is already in progress', 'AttemptInProgress')
        except ApiError:
            self.session.rollback()
            raise

        if resumed:
            logger.info('Resumed attempt=%s for quiz=%s email=%s', attempt.id, quiz.id, email)
        else:
            logger.info('Started attempt=%s for quiz=%s email=%s', attempt.id, quiz.id, email)

        payload = {
            'attemptId': attempt.id,
            'title': quiz.title,
            'resumed': resumed,
            'settings': client_settings(quiz),
            'questions': present_questions(quiz, questions, self.rng),
        }
        if quiz.enable_second_cam:
            payload['secondCamToken'] = self.second_cam.issue_token(attempt.id)
        return payload

    def _open_attempt(self, quiz, invitation, email, name, now):
        student = self.session.query(Student).filter_by(quiz_id=quiz.id, email=email).first()
        if student is None and quiz.require_student_list_match:
            raise Forbidden('Student is not on the list for this quiz', 'StudentNotListed')

        if not quiz.allow_multiple_attempts:
            completed = (
                self.session.query(Attempt.id)
                .filter_by(quiz_id=quiz.id, student_email=email, status=AttemptStatus.COMPLETED)
                .first()
            )
            if completed:
                raise Conflict('Attempt already completed', 'AlreadyCompleted')
            running = (
                self.session.query(Attempt)
                .filter_by(quiz_id=quiz.id, student_email=email, status=AttemptStatus.IN_PROGRESS)
                .order_by(Attempt.started_at.desc())
                .first()
            )
            if running is not None:
                return running, True

        attempt = Attempt(
            quiz_id=quiz.id,
            student_id=student.id if student else None,
            invitation_id=invitation.id,
            student_name=(student.name if student else None) or name or email,
            student_email=email,
            status=AttemptStatus.IN_PROGRESS,
            started_at=now,
            correct_count=0,
            total_questions=0,
            score_details=[],
            suspicious_events_count=0,
            active_key=active_key_for(quiz, email),
        )
        self.session.add(attempt)
        self.session.flush()
        return attempt, False

    # --- in-progress operations ---

    def status(self, attempt_id) -> dict:
        attempt = self.get(attempt_id)
        return {
            'status': AttemptStatus(attempt.status).value,
            'forcedEndReason': attempt.forced_end_reason,
        }

    def record_event(self, attempt_id, type: str, message=None, extra=None, now=None) -> dict:
        now = now or utcnow()
        attempt = self.get(attempt_id)
        if is_terminal(attempt.status):
            return {'status': 'ignored'}

        matched = (
            self.session.query(Attempt)
            .filter(Attempt.id == attempt.id, Attempt.status == AttemptStatus.IN_PROGRESS)
            .update(
                {Attempt.suspicious_events_count: Attempt.suspicious_events_count + 1},
                synchronize_session=False,
            )
        )
        if matched != 1:
            self.session.rollback()
            return {'status': 'ignored'}

        self.session.add(Event(
            quiz_id=attempt.quiz_id,
            attempt_id=attempt.id,
            type=type,
            message=message,
            timestamp=now,
            extra=extra or {},
        ))
        self.session.commit()
        self.session.refresh(attempt)
        return {'status': 'logged'}

    def admit_snapshot(self, attempt_id, phase: str, mime: str, data: str,
                       width: int = 320, height: int = 240, now=None) -> str:
        """Store the single snapshot for (attempt, phase). Returns 'saved' or 'exists'."""
        now = now or utcnow()
        attempt = self.get(attempt_id)
        quiz = self.session.get(Quiz, attempt.quiz_id)
        if quiz is None or not quiz.snapshots_enabled:
            raise Forbidden('Webcam snapshots disabled', 'SnapshotsDisabled')
        if phase not in SNAPSHOT_PHASES:
            raise InvalidInput('Invalid snapshot phase', 'InvalidPhase')
        payload = clean_image_data(mime, data)

        existing = self.session.query(AttemptSnapshot.id).filter_by(attempt_id=attempt.id, phase=phase).first()
        if existing:
            return 'exists'
        self.session.add(AttemptSnapshot(
            attempt_id=attempt.id,
            quiz_id=attempt.quiz_id,
            student_id=attempt.student_id,
            phase=phase,
            mime=mime,
            data=payload,
            width=width or 320,
            height=height or 240,
            created_at=now,
        ))
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            return 'exists'
        return 'saved'

    # --- terminal transitions ---

    def finish(self, attempt_id, answers: Iterable, now=None) -> ScoreResult:
        now = now or utcnow()
        attempt = self.get(attempt_id)
        if is_terminal(attempt.status):
            raise Conflict('Attempt already ended', 'AttemptAlreadyEnded')

        result = score(self.questions_for(attempt.quiz_id), answers)
        matched = (
            self.session.query(Attempt)
            .filter(Attempt.id == attempt.id, Attempt.status == AttemptStatus.IN_PROGRESS)
            .update({
                Attempt.status: AttemptStatus.COMPLETED,
                Attempt.submitted_at: now,
                Attempt.correct_count: result.correct_count,
                Attempt.total_questions: result.total_questions,
                Attempt.score_details: [d.to_dict() for d in result.details],
                Attempt.active_key: None,
            }, synchronize_session=False)
        )
        if matched != 1:
            self.session.rollback()
            raise Conflict('Attempt already ended', 'AttemptAlreadyEnded')
        self.second_cam.purge(attempt.id)
        self.session.commit()
        self.session.refresh(attempt)
        logger.info('Attempt %s finished: %s/%s', attempt.id, result.correct_count, result.total_questions)
        return result

    def terminate(self, attempt_id, reason: str = 'ended_by_instructor', now=None) -> Attempt:
        now = now or utcnow()
        attempt = self.get(attempt_id)
        attempt.status = AttemptStatus.FORCIBLY_ENDED
        attempt.submitted_at = now
        attempt.forced_end_reason = reason
        attempt.active_key = None
        self.session.add(AuditLog(
            quiz_id=attempt.quiz_id,
            type='attempt_ended',
            message=f'Attempt ended for {attempt.student_email}',
            meta={'attemptId': attempt.id, 'reason': reason, 'email': attempt.student_email},
            created_at=now,
        ))
        self.second_cam.purge(attempt.id)
        self.session.commit()
        logger.info('Attempt %s forcibly ended (%s)', attempt.id, reason)
        return attempt

    def delete(self, attempt_id, now=None) -> None:
        now = now or utcnow()
        attempt = self.get(attempt_id)
        quiz_id, email = attempt.quiz_id, attempt.student_email
        for model in (Event, AttemptSnapshot, SecondCamSnapshot):
            self.session.query(model).filter_by(attempt_id=attempt.id).delete(synchronize_session=False)
        self.second_cam.purge(attempt.id)
        self.session.delete(attempt)
        self.session.add(AuditLog(
            quiz_id=quiz_id,
            type='attempt_removed',
            message=f'Attempt removed for {email}',
            meta={'attemptId': attempt_id, 'email': email},
            created_at=now,
        ))
        self.session.commit()
        logger.info('Attempt %s removed', attempt_id)

    def expire_overdue(self, now=None, grace_seconds: int = 120) -> int:
        """Mark running attempts past their total time limit (plus grace) as expired."""
        now = now or utcnow()
        candidates = (
            self.session.query(Attempt.id, Attempt.started_at, Quiz.total_time_seconds)
            .join(Quiz, Quiz.id == Attempt.quiz_id)
            .filter(Attempt.status == AttemptStatus.IN_PROGRESS, Quiz.total_time_seconds.isnot(None))
            .all()
        )
        expired = []
        for attempt_id, started_at, total_seconds in candidates:
            if started_at + timedelta(seconds=total_seconds + grace_seconds) > now:
                continue
            matched = (
                self.session.query(Attempt)
                .filter(Attempt.id == attempt_id, Attempt.status == AttemptStatus.IN_PROGRESS)
                .update({
                    Attempt.status: AttemptStatus.EXPIRED,
                    Attempt.submitted_at: now,
                    Attempt.active_key: None,
                }, synchronize_session=False)
            )
            if matched == 1:
                self.second_cam.purge(attempt_id)
                expired.append(attempt_id)
        self.session.commit()
        if expired:
            logger.info('Expired %s overdue attempt(s): %s', len(expired), expired)
        return len(expired)
