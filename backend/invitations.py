import logging
from urllib.parse import quote

from errors import InvalidInput, NotFound
from mailer import MailerNotConfigured
from models import AuditLog, Student

logger = logging.getLogger(__name__)

OTP_SUBJECT = 'Quiz access code'


class InvitationService:
    """Sends OTP invitations for a quiz and records them in the audit log."""

    def __init__(self, session, otp_store, mailer, *, app_base_url: str = '') -> None:
        self.session = session
        self.otp_store = otp_store
        self.mailer = mailer
        self.app_base_url = app_base_url.rstrip('/')

    def _check_delivery_config(self) -> None:
        self.mailer.ensure_configured()
        if not self.mailer.dev_mode and not self.app_base_url:
            raise MailerNotConfigured('APP_BASE_URL is not set', 'MailerNotConfigured')

    def join_link(self, quiz, student) -> str:
        return f'{self.app_base_url}/q/{quiz.id}?email={quote(student.email)}&name={quote(student.name)}'

    def _deliver(self, quiz, student, audit_type: str, verb: str) -> None:
        # The new code is only staged until the mail is out; a failed send keeps the old one
        _, otp = self.otp_store.issue(quiz, student, commit=False)
        body = '\n'.join([
            f'Hello {student.name},',
            '',
            f'Quiz: {quiz.title}',
            f'Quiz link: {self.join_link(quiz, student)}',
            f'OTP: {otp}',
            f'Expires in {int(self.otp_store.ttl.total_seconds() // 60)} minutes.',
            '',
            'If you did not request this, please ignore this email.',
        ])
        try:
            self.mailer.send(student.email, OTP_SUBJECT, body)
        except Exception:
            self.session.rollback()
            raise
        self.session.add(AuditLog(
            quiz_id=quiz.id,
            type=audit_type,
            message=f'OTP {verb} to {student.email}',
            meta={'email': student.email},
        ))
        self.session.commit()

    def _student(self, quiz, email: str) -> Student:
        student = self.session.query(Student).filter_by(quiz_id=quiz.id, email=email).first()
        if student is None:
            raise NotFound('Student not found', 'StudentNotFound')
        return student

    def send_all(self, quiz) -> int:
        students = self.session.query(Student).filter_by(quiz_id=quiz.id).order_by(Student.id).all()
        if not students:
            raise InvalidInput('No students found', 'NoStudents')
        self._check_delivery_config()
        for student in students:
            self._deliver(quiz, student, 'otp_sent', 'sent')
        logger.info('Sent %s invitations for quiz=%s', len(students), quiz.id)
        return len(students)

    def send_one(self, quiz, email: str) -> None:
        student = self._student(quiz, email)
        self._check_delivery_config()
        self._deliver(quiz, student, 'otp_sent', 'sent')

    def resend(self, quiz, email: str) -> None:
        student = self._student(quiz, email)
        self._check_delivery_config()
        self._deliver(quiz, student, 'otp_resend', 'resent')
