"""
Bootstrap script: create tables and seed a demo instructor with one published quiz.

    python run_setup.py            # create missing tables, seed if absent
    python run_setup.py --reset    # drop everything first
"""
import argparse
import logging
from datetime import timedelta

from werkzeug.security import check_password_hash, generate_password_hash

from app import create_app
from models import Instructor, Question, Quiz, QuizStatus, Student, db, utcnow

logger = logging.getLogger('run_setup')

DEMO_EMAIL = 'instructor@test.com'
DEMO_PASSWORD = 'password123'

DEMO_QUESTIONS = [
    ('What does CPU stand for?',
     ['Central Processing Unit', 'Computer Personal Unit', 'Central Program Utility', 'Core Power Unit'], 0),
    ('Which data structure is FIFO?', ['Stack', 'Queue', 'Tree', 'Graph'], 1),
    ('What is 2 ** 5?', ['10', '25', '32', '64'], 2),
]


def initialize_database(app, reset: bool = False):
    db_uri = app.config.get('SQLALCHEMY_DATABASE_URI', '')
    logger.info('Database: %s', db_uri)

    with app.app_context():
        if reset:
            db.drop_all()
            logger.info('Old tables dropped')
        db.create_all()
        logger.info('Tables created')

        instructor = Instructor.query.filter_by(email=DEMO_EMAIL).first()
        if instructor is None:
            instructor = Instructor(
                name='Demo Instructor',
                email=DEMO_EMAIL,
                password_hash=generate_password_hash(DEMO_PASSWORD, method='pbkdf2:sha256'),
            )
            db.session.add(instructor)
            db.session.flush()
            logger.info('Added instructor %s', DEMO_EMAIL)

        quiz = Quiz.query.filter_by(quiz_code='DEMO-QUIZ').first()
        if quiz is None:
            now = utcnow()
            quiz = Quiz(
                instructor_id=instructor.id,
                title='Demo Quiz',
                description='Seeded by run_setup.py',
                quiz_code='DEMO-QUIZ',
                status=QuizStatus.PUBLISHED,
                start_at=now,
                end_at=now + timedelta(days=7),
            )
            db.session.add(quiz)
            db.session.flush()
            for order, (text, options, correct) in enumerate(DEMO_QUESTIONS, start=1):
                db.session.add(Question(
                    quiz_id=quiz.id, text=text, options=options, correct_index=correct, order_index=order
                ))
            db.session.add(Student(
                quiz_id=quiz.id, name='Test Student', email='student@test.com', external_id='SID-0001'
            ))
            logger.info('Added demo quiz %s with %s questions', quiz.quiz_code, len(DEMO_QUESTIONS))

        db.session.commit()

        # Login check
        stored = Instructor.query.filter_by(email=DEMO_EMAIL).first()
        if stored and check_password_hash(stored.password_hash, DEMO_PASSWORD):
            logger.info('Login check passed for %s', DEMO_EMAIL)
        else:
            logger.error('Login check failed for %s', DEMO_EMAIL)

        return {'instructor_id': instructor.id, 'quiz_id': quiz.id}


def main(argv=None):
    parser = argparse.ArgumentParser(description='Create tables and seed demo data.')
    parser.add_argument('--reset', action='store_true', help='drop all tables before seeding')
    args = parser.parse_args(argv)

    app = create_app()
    initialize_database(app, reset=args.reset)
    logger.info('Setup complete. Run `python app.py`, then log in with %s / %s', DEMO_EMAIL, DEMO_PASSWORD)


if __name__ == '__main__':
    main()
