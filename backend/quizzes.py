import logging

from sqlalchemy.exc import IntegrityError

from errors import Conflict, InvalidInput, NotFound
from importer import import_questions, import_students
from models import (
    Attempt,
    AttemptSnapshot,
    AuditLog,
    Event,
    Invitation,
    Question,
    Quiz,
    QuizStatus,
    SecondCamSession,
    SecondCamSnapshot,
    Student,
    utcnow,
)

logger = logging.getLogger(__name__)


def column_defaults(model):
    """Scalar column defaults, so settings rules see real values before the first flush."""
    return {
        column.key: column.default.arg
        for column in model.__table__.columns
        if column.default is not None and column.default.is_scalar
    }


class QuizService:
    """Instructor-side quiz administration, always scoped to the owning instructor."""

    def __init__(self, session, governor) -> None:
        self.session = session
        self.governor = governor

    # --- quizzes ---

    def assert_ownership(self, instructor_id, quiz_id) -> Quiz:
        quiz = self.session.query(Quiz).filter_by(id=quiz_id, instructor_id=instructor_id).first()
        if quiz is None:
            raise NotFound('Quiz not found', 'QuizNotFound')
        return quiz

    get = assert_ownership

    def list_quizzes(self, instructor_id, now=None):
        self.governor.close_expired(instructor_id=instructor_id, now=now)
        return (
            self.session.query(Quiz)
            .filter_by(instructor_id=instructor_id)
            .order_by(Quiz.created_at.desc(), Quiz.id.desc())
            .all()
        )

    def create(self, instructor_id, data, now=None) -> Quiz:
        now = now or utcnow()
        fields = column_defaults(Quiz)
        fields.update(
            instructor_id=instructor_id,
            title=data.title,
            description=data.description,
            quiz_code=data.quiz_code,
            status=QuizStatus.DRAFT,
            created_at=now,
            updated_at=now,
        )
        quiz = Quiz(**fields)
        self._apply_settings(quiz, data.settings)
        self.session.add(quiz)
        self._commit_unique_code()
        logger.info('Quiz %s created by instructor=%s', quiz.id, instructor_id)
        return quiz

    def update(self, instructor_id, quiz_id, data, now=None) -> Quiz:
        now = now or utcnow()
        quiz = self.assert_ownership(instructor_id, quiz_id)
        if 'title' in data.provided:
            if not data.title:
                raise InvalidInput('title is required', 'MissingField')
            quiz.title = data.title
        if 'description' in data.provided:
            quiz.description = data.description
        if 'quizCode' in data.provided:
            quiz.quiz_code = data.quiz_code
        self._apply_settings(quiz, data.settings)
        if 'end_at' in data.settings:
            self.governor.apply_end_at_republish(quiz, now)
        quiz.updated_at = now
        self._commit_unique_code()
        return quiz

    def _apply_settings(self, quiz, settings) -> None:
        for column, value in settings.items():
            setattr(quiz, column, value)

        camera_required = bool(quiz.enable_face_centering or quiz.enable_second_cam)
        if camera_required and quiz.mobile_allowed:
            if settings.get('mobile_allowed'):
                raise InvalidInput(
                    'Face centering and second camera cannot be combined with mobile access',
                    'CameraRequiresDesktop',
                )
            quiz.mobile_allowed = False
        if quiz.start_at and quiz.end_at and quiz.start_at >= quiz.end_at:
            raise InvalidInput('startAt must be before endAt', 'InvalidWindow')

    def _commit_unique_code(self) -> None:
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            raise Conflict('Quiz code already in use', 'QuizCodeTaken')

    def set_status(self, quiz, status, now=None) -> Quiz:
        quiz.status = QuizStatus(status)
        quiz.updated_at = now or utcnow()
        self.session.commit()
        logger.info('Quiz %s status set to %s', quiz.id, quiz.status.value)
        return quiz

    def delete(self, quiz) -> None:
        quiz_id = quiz.id
        attempt_ids = [row.id for row in self.session.query(Attempt.id).filter_by(quiz_id=quiz_id)]
        if attempt_ids:
            for model in (Event, AttemptSnapshot, SecondCamSnapshot, SecondCamSession):
                (self.session.query(model)
                 .filter(model.attempt_id.in_(attempt_ids))
                 .delete(synchronize_session=False))
        for model in (Attempt, Invitation, Student, Question, AuditLog):
            self.session.query(model).filter_by(quiz_id=quiz_id).delete(synchronize_session=False)
        self.session.delete(quiz)
        self.session.commit()
        logger.info('Quiz %s deleted', quiz_id)

    # --- questions ---

    def questions(self, quiz):
        return (
            self.session.query(Question)
            .filter_by(quiz_id=quiz.id)
            .order_by(Question.order_index.asc(), Question.id.asc())
            .all()
        )

    def _assert_questions_unlocked(self, quiz) -> None:
        if self.session.query(Attempt.id).filter_by(quiz_id=quiz.id).first():
            raise Conflict('Questions cannot change once attempts exist', 'QuestionsLocked')

    def _question(self, quiz, question_id) -> Question:
        question = self.session.query(Question).filter_by(id=question_id, quiz_id=quiz.id).first()
        if question is None:
            raise NotFound('Question not found', 'QuestionNotFound')
        return question

    def upload_questions(self, quiz, content: str):
        self._assert_questions_unlocked(quiz)
        return import_questions(self.session, quiz, content)

    def update_question(self, quiz, question_id, data) -> Question:
        self._assert_questions_unlocked(quiz)
        question = self._question(quiz, question_id)
        if data.text:
            question.text = data.text
        if data.options is not None:
            question.options = data.options
        if data.correct_index is not None:
            question.correct_index = data.correct_index
        if data.order is not None:
            question.order_index = data.order
        if not 0 <= question.correct_index < len(question.options or []):
            raise InvalidInput('correctIndex must point at an option', 'InvalidField')
        self.session.commit()
        return question

    def delete_question(self, quiz, question_id) -> None:
        self._assert_questions_unlocked(quiz)
        self.session.delete(self._question(quiz, question_id))
        self.session.commit()

    def delete_all_questions(self, quiz) -> int:
        self._assert_questions_unlocked(quiz)
        deleted = self.session.query(Question).filter_by(quiz_id=quiz.id).delete(synchronize_session=False)
        self.session.commit()
        return deleted

    # --- students ---

    def students(self, quiz):
        return self.session.query(Student).filter_by(quiz_id=quiz.id).order_by(Student.id.asc()).all()

    def _student(self, quiz, student_id) -> Student:
        student = self.session.query(Student).filter_by(id=student_id, quiz_id=quiz.id).first()
        if student is None:
            raise NotFound('Student not found', 'StudentNotFound')
        return student

    def upload_students(self, quiz, content: str):
        import_students(self.session, quiz, content)
        return self.students(quiz)

    def update_student(self, quiz, student_id, data) -> Student:
        student = self._student(quiz, student_id)
        if data.name:
            student.name = data.name
        if data.email and data.email != student.email:
            # The mailed code belongs to the old address; the new one must be invited again
            self.session.query(Invitation).filter_by(quiz_id=quiz.id, student_id=student.id).delete(
                synchronize_session=False
            )
            student.email = data.email
        if data.external_id:
            student.external_id = data.external_id
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            raise Conflict('Email or student id already used in this quiz', 'DuplicateStudent')
        return student

    def delete_student(self, quiz, student_id) -> None:
        student = self._student(quiz, student_id)
        self.session.query(Invitation).filter_by(quiz_id=quiz.id, student_id=student.id).delete(
            synchronize_session=False
        )
        self.session.delete(student)
        self.session.commit()

    def delete_all_students(self, quiz) -> int:
        self.session.query(Invitation).filter_by(quiz_id=quiz.id).delete(synchronize_session=False)
        deleted = self.session.query(Student).filter_by(quiz_id=quiz.id).delete(synchronize_session=False)
        self.session.commit()
        return deleted
