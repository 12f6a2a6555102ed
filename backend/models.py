import enum
from datetime import datetime, timezone

from flask_sqlalchemy import SQLAlchemy

# Initialize SQLAlchemy
db = SQLAlchemy()


def utcnow() -> datetime:
    """Naive UTC timestamp; every datetime column stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def isoformat(value):
    return value.isoformat() + 'Z' if value else None


class QuizStatus(str, enum.Enum):
    DRAFT = 'draft'
    PUBLISHED = 'published'
    CLOSED = 'closed'


class AttemptStatus(str, enum.Enum):
    IN_PROGRESS = 'in_progress'
    COMPLETED = 'completed'
    FORCIBLY_ENDED = 'forcibly_ended'
    EXPIRED = 'expired'


# Every status must appear here; a new status without an entry fails at import.
ATTEMPT_TERMINAL = {
    AttemptStatus.IN_PROGRESS: False,
    AttemptStatus.COMPLETED: True,
    AttemptStatus.FORCIBLY_ENDED: True,
    AttemptStatus.EXPIRED: True,
}
if set(ATTEMPT_TERMINAL) != set(AttemptStatus):
    raise RuntimeError('ATTEMPT_TERMINAL is missing an attempt status')


def is_terminal(status) -> bool:
    return ATTEMPT_TERMINAL[AttemptStatus(status)]


def _enum_column(enum_cls, default):
    return db.Column(
        db.Enum(
            enum_cls,
            native_enum=False,
            length=20,
            values_callable=lambda members: [m.value for m in members],
            validate_strings=True,
        ),
        nullable=False,
        default=default,
    )


SNAPSHOT_PHASES = ('start', 'middle', 'end')


# --- INSTRUCTOR MODEL ---
class Instructor(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(150), nullable=False)
    email = db.Column(db.String(200), unique=True, nullable=False)
    password_hash = db.Column(db.String(256), nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    def to_dict(self):
        return {'id': self.id, 'name': self.name, 'email': self.email}


# --- QUIZ MODELS ---
class Quiz(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    instructor_id = db.Column(db.Integer, db.ForeignKey('instructor.id'), nullable=False, index=True)
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    quiz_code = db.Column(db.String(64), unique=True, nullable=True)
    status = _enum_column(QuizStatus, QuizStatus.DRAFT)

    # settings bundle
    question_time_seconds = db.Column(db.Integer, nullable=False, default=35)
    total_time_seconds = db.Column(db.Integer, nullable=True)
    start_at = db.Column(db.DateTime, nullable=True)
    end_at = db.Column(db.DateTime, nullable=True)
    shuffle_questions = db.Column(db.Boolean, nullable=False, default=True)
    shuffle_options = db.Column(db.Boolean, nullable=False, default=True)
    require_fullscreen = db.Column(db.Boolean, nullable=False, default=False)
    log_suspicious_activity = db.Column(db.Boolean, nullable=False, default=True)
    enable_webcam_snapshots = db.Column(db.Boolean, nullable=False, default=False)
    enable_face_centering = db.Column(db.Boolean, nullable=False, default=False)
    enable_second_cam = db.Column(db.Boolean, nullable=False, default=False)
    allow_multiple_attempts = db.Column(db.Boolean, nullable=False, default=False)
    show_score_to_student = db.Column(db.Boolean, nullable=False, default=False)
    mobile_allowed = db.Column(db.Boolean, nullable=False, default=True)
    require_student_list_match = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    instructor = db.relationship('Instructor', backref='quizzes')

    @property
    def snapshots_enabled(self) -> bool:
        return bool(self.enable_webcam_snapshots or self.enable_face_centering)

    def settings_dict(self):
        return {
            'questionTimeSeconds': self.question_time_seconds,
            'totalTimeSeconds': self.total_time_seconds,
            'startAt': isoformat(self.start_at),
            'endAt': isoformat(self.end_at),
            'shuffleQuestions': bool(self.shuffle_questions),
            'shuffleOptions': bool(self.shuffle_options),
            'requireFullscreen': bool(self.require_fullscreen),
            'logSuspiciousActivity': bool(self.log_suspicious_activity),
            'enableWebcamSnapshots': bool(self.enable_webcam_snapshots),
            'enableFaceCentering': bool(self.enable_face_centering),
            'enableSecondCam': bool(self.enable_second_cam),
            'allowMultipleAttempts': bool(self.allow_multiple_attempts),
            'showScoreToStudent': bool(self.show_score_to_student),
            'mobileAllowed': bool(self.mobile_allowed),
            'requireStudentListMatch': bool(self.require_student_list_match),
        }

    def to_dict(self):
        return {
            'id': self.id,
            'title': self.title,
            'description': self.description,
            'quizCode': self.quiz_code,
            'status': QuizStatus(self.status).value,
            'settings': self.settings_dict(),
            'createdAt': isoformat(self.created_at),
            'updatedAt': isoformat(self.updated_at),
        }


class Question(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    quiz_id = db.Column(db.Integer, db.ForeignKey('quiz.id'), nullable=False, index=True)
    text = db.Column(db.Text, nullable=False)
    options = db.Column(db.JSON, nullable=False, default=list)
    correct_index = db.Column(db.Integer, nullable=False, default=0)
    order_index = db.Column(db.Integer, nullable=False, default=0)

    def to_dict(self, include_answer: bool = True):
        data = {
            'id': self.id,
            'text': self.text,
            'options': list(self.options or []),
            'order': self.order_index,
        }
        if include_answer:
            data['correctIndex'] = self.correct_index
        return data


class Student(db.Model):
    __table_args__ = (
        db.UniqueConstraint('quiz_id', 'email', name='uq_student_quiz_email'),
        db.UniqueConstraint('quiz_id', 'external_id', name='uq_student_quiz_external_id'),
    )

    id = db.Column(db.Integer, primary_key=True)
    quiz_id = db.Column(db.Integer, db.ForeignKey('quiz.id'), nullable=False, index=True)
    name = db.Column(db.String(150), nullable=False)
    email = db.Column(db.String(200), nullable=False)
    external_id = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'email': self.email,
            'externalId': self.external_id,
        }


# --- INVITATION / OTP MODEL ---
class Invitation(db.Model):
    __table_args__ = (
        db.UniqueConstraint('quiz_id', 'student_id', name='uq_invitation_quiz_student'),
    )

    id = db.Column(db.Integer, primary_key=True)
    quiz_id = db.Column(db.Integer, db.ForeignKey('quiz.id'), nullable=False, index=True)
    student_id = db.Column(db.Integer, db.ForeignKey('student.id'), nullable=False)
    email = db.Column(db.String(200), nullable=False, index=True)
    otp_hash = db.Column(db.String(64), nullable=False)
    otp_expires_at = db.Column(db.DateTime, nullable=False)
    last_otp_sent_at = db.Column(db.DateTime, nullable=True)
    otp_attempts = db.Column(db.Integer, nullable=False, default=0)
    max_otp_attempts = db.Column(db.Integer, nullable=False, default=5)
    verified_at = db.Column(db.DateTime, nullable=True)


# --- ATTEMPT MODELS ---
class Attempt(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    quiz_id = db.Column(db.Integer, db.ForeignKey('quiz.id'), nullable=False, index=True)
    student_id = db.Column(db.Integer, nullable=True)
    invitation_id = db.Column(db.Integer, nullable=True)
    student_name = db.Column(db.String(150), nullable=False)
    student_email = db.Column(db.String(200), nullable=False, index=True)
    status = _enum_column(AttemptStatus, AttemptStatus.IN_PROGRESS)
    started_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    submitted_at = db.Column(db.DateTime, nullable=True)

    # score block
    correct_count = db.Column(db.Integer, nullable=False, default=0)
    total_questions = db.Column(db.Integer, nullable=False, default=0)
    score_details = db.Column(db.JSON, nullable=False, default=list)

    # flags block
    suspicious_events_count = db.Column(db.Integer, nullable=False, default=0)
    forced_end_reason = db.Column(db.String(200), nullable=True)

    # "<quiz_id>:<email>" while a single-attempt quiz has this attempt in progress
    active_key = db.Column(db.String(255), unique=True, nullable=True)

    def to_dict(self):
        return {
            'id': self.id,
            'quizId': self.quiz_id,
            'studentId': self.student_id,
            'studentName': self.student_name,
            'studentEmail': self.student_email,
            'status': AttemptStatus(self.status).value,
            'startedAt': isoformat(self.started_at),
            'submittedAt': isoformat(self.submitted_at),
            'score': {
                'correctCount': self.correct_count,
                'totalQuestions': self.total_questions,
                'details': list(self.score_details or []),
            },
            'flags': {
                'suspiciousEventsCount': self.suspicious_events_count,
                'forcedEndReason': self.forced_end_reason,
            },
        }


class Event(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    quiz_id = db.Column(db.Integer, nullable=False, index=True)
    attempt_id = db.Column(db.Integer, db.ForeignKey('attempt.id'), nullable=False, index=True)
    type = db.Column(db.String(64), nullable=False)
    message = db.Column(db.Text, nullable=True)
    timestamp = db.Column(db.DateTime, default=utcnow, nullable=False)
    extra = db.Column(db.JSON, nullable=False, default=dict)


class AttemptSnapshot(db.Model):
    __table_args__ = (
        db.UniqueConstraint('attempt_id', 'phase', name='uq_snapshot_attempt_phase'),
    )

    id = db.Column(db.Integer, primary_key=True)
    attempt_id = db.Column(db.Integer, db.ForeignKey('attempt.id'), nullable=False, index=True)
    quiz_id = db.Column(db.Integer, nullable=False, index=True)
    student_id = db.Column(db.Integer, nullable=True)
    phase = db.Column(db.String(10), nullable=False)
    mime = db.Column(db.String(50), nullable=False)
    data = db.Column(db.Text, nullable=False)
    width = db.Column(db.Integer, nullable=False, default=320)
    height = db.Column(db.Integer, nullable=False, default=240)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)


class SecondCamSession(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    attempt_id = db.Column(db.Integer, db.ForeignKey('attempt.id'), unique=True, nullable=False)
    quiz_id = db.Column(db.Integer, nullable=False, index=True)
    student_id = db.Column(db.Integer, nullable=True)
    connected_at = db.Column(db.DateTime, nullable=False)
    last_seen_at = db.Column(db.DateTime, nullable=False, index=True)


class SecondCamSnapshot(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    attempt_id = db.Column(db.Integer, db.ForeignKey('attempt.id'), nullable=False, index=True)
    quiz_id = db.Column(db.Integer, nullable=False, index=True)
    student_id = db.Column(db.Integer, nullable=True)
    mime = db.Column(db.String(50), nullable=False)
    data = db.Column(db.Text, nullable=False)
    width = db.Column(db.Integer, nullable=False, default=320)
    height = db.Column(db.Integer, nullable=False, default=240)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)


# --- AUDIT LOG MODEL ---
class AuditLog(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    quiz_id = db.Column(db.Integer, nullable=False, index=True)
    type = db.Column(db.String(64), nullable=False)
    message = db.Column(db.Text, nullable=False)
    meta = db.Column(db.JSON, nullable=False, default=dict)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
