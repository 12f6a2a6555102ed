"""
Pytest configuration: one application per test on in-memory SQLite.
"""
import re
from datetime import timedelta

import pytest
from werkzeug.security import generate_password_hash

from app import create_app
from auth import create_access_token
from models import Instructor, Question, Quiz, QuizStatus, Student, db, utcnow
from rate_limits import limiter
from schemas import SubmittedAnswer
from services import current_services

TEST_CONFIG = {
    'TESTING': True,
    'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
    'SECRET_KEY': 'test-secret-key',
    'JWT_SECRET': 'test-jwt-secret-key-32-chars-min',
    'DEV_EMAIL_MODE': True,
    'LOG_DIR': None,
    'LOG_LEVEL': 'WARNING',
}

OTP_RE = re.compile(r'OTP: (\d{6})')


@pytest.fixture
def app():
    """Create application for testing"""
    app = create_app(dict(TEST_CONFIG))
    limiter.reset()
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def services(app):
    return current_services()


@pytest.fixture
def instructor(app):
    user = Instructor(
        name='Ada Instructor',
        email='ada@example.com',
        password_hash=generate_password_hash('secret123', method='pbkdf2:sha256'),
    )
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture
def auth_headers(app, instructor):
    return {'Authorization': f'Bearer {create_access_token(instructor)}'}


@pytest.fixture
def make_quiz(app, instructor):
    """Factory: a published quiz open for the next hour, deterministic order by default."""

    def _make(questions=3, students=('alice@example.com',), **overrides):
        now = utcnow()
        fields = dict(
            instructor_id=instructor.id,
            title='Networks 101',
            status=QuizStatus.PUBLISHED,
            start_at=now - timedelta(hours=1),
            end_at=now + timedelta(hours=1),
            shuffle_questions=False,
            shuffle_options=False,
        )
        fields.update(overrides)
        quiz = Quiz(**fields)
        db.session.add(quiz)
        db.session.flush()
        for i in range(questions):
            db.session.add(Question(
                quiz_id=quiz.id,
                text=f'Question {i + 1}',
                options=['A', 'B', 'C', 'D'],
                correct_index=i % 4,
                order_index=i + 1,
            ))
        for n, email in enumerate(students, start=1):
            db.session.add(Student(
                quiz_id=quiz.id,
                name=email.split('@')[0].title(),
                email=email,
                external_id=f'SID-{n:04d}',
            ))
        db.session.commit()
        return quiz

    return _make


@pytest.fixture
def student_of():
    def _student(quiz, email='alice@example.com'):
        return Student.query.filter_by(quiz_id=quiz.id, email=email).one()

    return _student


@pytest.fixture
def start_attempt(services, student_of):
    """Issue a fresh OTP for the student and start (or resume) an attempt with it."""

    def _start(quiz, email='alice@example.com', **kwargs):
        _, otp = services.otp.issue(quiz, student_of(quiz, email))
        return services.attempts.start(quiz.id, email, otp, **kwargs)

    return _start


def _answers_for(quiz, correct=True):
    """Answer objects for every question of `quiz`, all right or all wrong."""
    result = []
    for q in Question.query.filter_by(quiz_id=quiz.id).order_by(Question.order_index).all():
        index = q.correct_index if correct else (q.correct_index + 1) % len(q.options)
        result.append(SubmittedAnswer(question_id=str(q.id), selected_index=index))
    return result


@pytest.fixture
def answers_for(app):
    return _answers_for


@pytest.fixture
def outbox_otp(services):
    """Latest OTP mailed to `email` in dev-email mode."""

    def _otp(email):
        for message in reversed(services.mailer.outbox):
            if message['to'] == email:
                return OTP_RE.search(message['text']).group(1)
        raise AssertionError(f'no mail sent to {email}')

    return _otp
