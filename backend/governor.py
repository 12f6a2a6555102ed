"""
Quiz window and status rules.

A quiz is joinable only while published and inside its [start_at, end_at] window.
Nothing runs on a timer: published quizzes whose end has passed are flipped to closed
the next time a list or dashboard read goes through `close_expired`.
"""
import logging
from datetime import timedelta

from errors import Forbidden
from models import Attempt, AttemptStatus, AuditLog, Quiz, QuizStatus, utcnow

logger = logging.getLogger(__name__)


def check_joinable(quiz, now=None) -> None:
    now = now or utcnow()
    status = QuizStatus(quiz.status)
    if status == QuizStatus.CLOSED:
        raise Forbidden('Quiz is closed', 'QuizClosed')
    if status != QuizStatus.PUBLISHED:
        raise Forbidden('Quiz is not published', 'QuizNotPublished')
    if quiz.start_at and now < quiz.start_at:
        raise Forbidden('Quiz has not started yet', 'QuizNotStarted')
    if quiz.end_at and now > quiz.end_at:
        raise Forbidden('Quiz has ended', 'QuizEnded')


def is_joinable(quiz, now=None) -> bool:
    try:
        check_joinable(quiz, now)
    except Forbidden:
        return False
    return True


def remaining_seconds(quiz, now=None):
    if not quiz.end_at:
        return None
    now = now or utcnow()
    return max(0, int((quiz.end_at - now).total_seconds()))


class QuizWindowGovernor:
    def __init__(self, session) -> None:
        self.session = session

    def close_expired(self, instructor_id=None, quiz_id=None, now=None) -> int:
        """Close published quizzes past their end. Returns how many this call closed."""
        now = now or utcnow()
        query = self.session.query(Quiz.id).filter(
            Quiz.status == QuizStatus.PUBLISHED,
            Quiz.end_at.isnot(None),
            Quiz.end_at < now,
        )
        if instructor_id is not None:
            query = query.filter(Quiz.instructor_id == instructor_id)
        if quiz_id is not None:
            query = query.filter(Quiz.id == quiz_id)

        closed = 0
        for (candidate_id,) in query.all():
            # Only the reader whose update matched writes the audit entry.
            matched = (
                self.session.query(Quiz)
                .filter(Quiz.id == candidate_id, Quiz.status == QuizStatus.PUBLISHED)
                .update({Quiz.status: QuizStatus.CLOSED, Quiz.updated_at: now}, synchronize_session='fetch')
            )
            if matched == 1:
                self.session.add(AuditLog(
                    quiz_id=candidate_id,
                    type='quiz_closed',
                    message='Quiz closed after end time',
                    meta={'auto': True},
                    created_at=now,
                ))
                closed += 1
        if closed:
            self.session.commit()
            logger.info('Auto-closed %s quiz(zes) past end time', closed)
        return closed

    def apply_end_at_republish(self, quiz, now=None) -> None:
        """A closed quiz whose end moved into the future is published again."""
        now = now or utcnow()
        if QuizStatus(quiz.status) == QuizStatus.CLOSED and quiz.end_at and quiz.end_at > now:
            quiz.status = QuizStatus.PUBLISHED

    def extend(self, quiz, minutes: int, now=None):
        now = now or utcnow()
        base = quiz.end_at or now
        quiz.end_at = base + timedelta(minutes=minutes)
        self.apply_end_at_republish(quiz, now)
        quiz.updated_at = now
        self.session.commit()
        logger.info('Quiz %s extended by %s minutes to %s', quiz.id, minutes, quiz.end_at)
        return quiz

    def close(self, quiz, now=None):
        """Instructor close: quiz closed and every running attempt force-ended."""
        now = now or utcnow()
        quiz.status = QuizStatus.CLOSED
        quiz.updated_at = now
        ended = (
            self.session.query(Attempt)
            .filter(Attempt.quiz_id == quiz.id, Attempt.status == AttemptStatus.IN_PROGRESS)
            .update({
                Attempt.status: AttemptStatus.FORCIBLY_ENDED,
                Attempt.forced_end_reason: 'quiz_closed',
                Attempt.submitted_at: now,
                Attempt.active_key: None,
            }, synchronize_session='fetch')
        )
        self.session.add(AuditLog(
            quiz_id=quiz.id,
            type='quiz_closed',
            message='Quiz terminated by instructor',
            meta={'endedAttempts': ended},
            created_at=now,
        ))
        self.session.commit()
        logger.info('Quiz %s closed by instructor, %s attempt(s) force-ended', quiz.id, ended)
        return ended
