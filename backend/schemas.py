"""
Request body parsing.

Each operation gets a small dataclass with its required/optional fields and typed
defaults. `from_payload` rejects unknown fields and wrong types with InvalidInput before
any component sees the data.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from errors import InvalidInput

_MISSING = object()


def _payload(data) -> Dict[str, Any]:
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise InvalidInput('Request body must be a JSON object', 'InvalidBody')
    return data


def _reject_unknown(data: Dict[str, Any], allowed) -> None:
    unknown = sorted(set(data) - set(allowed))
    if unknown:
        raise InvalidInput(f"Unknown fields: {', '.join(unknown)}", 'UnknownFields')


def _str(data, key, required=True, default=None, max_length=None) -> Optional[str]:
    value = data.get(key, _MISSING)
    if value is _MISSING or value is None:
        if required:
            raise InvalidInput(f'{key} is required', 'MissingField')
        return default
    if not isinstance(value, str):
        raise InvalidInput(f'{key} must be a string', 'InvalidField')
    value = value.strip()
    if required and not value:
        raise InvalidInput(f'{key} is required', 'MissingField')
    if max_length and len(value) > max_length:
        raise InvalidInput(f'{key} is too long', 'InvalidField')
    return value


def _int(data, key, required=True, default=None, minimum=None) -> Optional[int]:
    value = data.get(key, _MISSING)
    if value is _MISSING or value is None:
        if required:
            raise InvalidInput(f'{key} is required', 'MissingField')
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidInput(f'{key} must be an integer', 'InvalidField')
    if minimum is not None and value < minimum:
        raise InvalidInput(f'{key} must be >= {minimum}', 'InvalidField')
    return value


def _bool(data, key, default=None) -> Optional[bool]:
    value = data.get(key, _MISSING)
    if value is _MISSING or value is None:
        return default
    if not isinstance(value, bool):
        raise InvalidInput(f'{key} must be a boolean', 'InvalidField')
    return value


def _dimension(data, key, default) -> int:
    # Snapshot sizes are advisory; anything non-numeric falls back to the default.
    value = data.get(key)
    if isinstance(value, bool):
        return default
    try:
        number = int(float(value))
    except (TypeError, ValueError):
        return default
    return number if number > 0 else default


def parse_datetime(value, key='datetime') -> Optional[datetime]:
    """ISO-8601 string -> naive UTC datetime."""
    if value is None or value == '':
        return None
    if not isinstance(value, str):
        raise InvalidInput(f'{key} must be an ISO-8601 string', 'InvalidField')
    raw = value.strip()
    if raw.endswith('Z'):
        raw = raw[:-1] + '+00:00'
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        raise InvalidInput(f'{key} must be an ISO-8601 string', 'InvalidField')
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def normalize_email(value: str) -> str:
    return (value or '').strip().lower()


# --- Student exam operations ---

@dataclass
class StartAttemptInput:
    email: str
    otp: str
    name: Optional[str] = None

    @classmethod
    def from_payload(cls, data):
        data = _payload(data)
        _reject_unknown(data, ('email', 'otp', 'name'))
        return cls(
            email=normalize_email(_str(data, 'email', max_length=200)),
            otp=_str(data, 'otp', max_length=12),
            name=_str(data, 'name', required=False, max_length=150),
        )


@dataclass
class EventInput:
    type: str
    message: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, data):
        data = _payload(data)
        _reject_unknown(data, ('type', 'message', 'extra'))
        extra = data.get('extra') or {}
        if not isinstance(extra, dict):
            raise InvalidInput('extra must be an object', 'InvalidField')
        return cls(
            type=_str(data, 'type', max_length=64),
            message=_str(data, 'message', required=False, max_length=2000),
            extra=extra,
        )


@dataclass
class SnapshotInput:
    phase: str
    mime: str
    data: str
    width: int = 320
    height: int = 240

    @classmethod
    def from_payload(cls, data):
        data = _payload(data)
        _reject_unknown(data, ('phase', 'mime', 'data', 'width', 'height'))
        return cls(
            phase=_str(data, 'phase', required=False, default=''),
            mime=_str(data, 'mime', required=False, default=''),
            data=_str(data, 'data', required=False, default=''),
            width=_dimension(data, 'width', 320),
            height=_dimension(data, 'height', 240),
        )


@dataclass
class SubmittedAnswer:
    question_id: str
    selected_index: Optional[int] = None


@dataclass
class FinishInput:
    answers: List[SubmittedAnswer] = field(default_factory=list)

    @classmethod
    def from_payload(cls, data):
        data = _payload(data)
        _reject_unknown(data, ('answers',))
        raw_answers = data.get('answers') or []
        if not isinstance(raw_answers, list):
            raise InvalidInput('answers must be a list', 'InvalidField')
        answers = []
        for idx, raw in enumerate(raw_answers):
            if not isinstance(raw, dict):
                raise InvalidInput(f'answers[{idx}] must be an object', 'InvalidField')
            _reject_unknown(raw, ('questionId', 'selectedIndex'))
            question_id = raw.get('questionId')
            if isinstance(question_id, bool) or not isinstance(question_id, (str, int)) or question_id == '':
                raise InvalidInput(f'answers[{idx}].questionId is required', 'MissingField')
            selected = _int(raw, 'selectedIndex', required=False, minimum=0)
            answers.append(SubmittedAnswer(question_id=str(question_id), selected_index=selected))
        return cls(answers=answers)


@dataclass
class SecondCamConnectInput:
    token: str

    @classmethod
    def from_payload(cls, data):
        data = _payload(data)
        _reject_unknown(data, ('token',))
        return cls(token=_str(data, 'token', required=False, default=''))


@dataclass
class SecondCamSnapshotInput:
    token: str
    mime: str
    data: str
    width: int = 320
    height: int = 240

    @classmethod
    def from_payload(cls, data):
        data = _payload(data)
        _reject_unknown(data, ('token', 'mime', 'data', 'width', 'height'))
        return cls(
            token=_str(data, 'token', required=False, default=''),
            mime=_str(data, 'mime', required=False, default=''),
            data=_str(data, 'data', required=False, default=''),
            width=_dimension(data, 'width', 320),
            height=_dimension(data, 'height', 240),
        )


@dataclass
class EmailInput:
    email: str

    @classmethod
    def from_payload(cls, data):
        data = _payload(data)
        _reject_unknown(data, ('email',))
        return cls(email=normalize_email(_str(data, 'email', max_length=200)))


# --- Instructor operations ---

@dataclass
class RegisterInput:
    name: str
    email: str
    password: str

    @classmethod
    def from_payload(cls, data):
        data = _payload(data)
        _reject_unknown(data, ('name', 'email', 'password'))
        password = _str(data, 'password')
        if len(password) < 6:
            raise InvalidInput('Password must be at least 6 characters', 'WeakPassword')
        return cls(
            name=_str(data, 'name', max_length=150),
            email=normalize_email(_str(data, 'email', max_length=200)),
            password=password,
        )


@dataclass
class LoginInput:
    email: str
    password: str

    @classmethod
    def from_payload(cls, data):
        data = _payload(data)
        _reject_unknown(data, ('email', 'password'))
        return cls(email=normalize_email(_str(data, 'email')), password=_str(data, 'password'))


SETTINGS_FIELDS = {
    # payload key: (column, kind)
    'questionTimeSeconds': ('question_time_seconds', 'positive_int'),
    'totalTimeSeconds': ('total_time_seconds', 'optional_positive_int'),
    'startAt': ('start_at', 'datetime'),
    'endAt': ('end_at', 'datetime'),
    'shuffleQuestions': ('shuffle_questions', 'bool'),
    'shuffleOptions': ('shuffle_options', 'bool'),
    'requireFullscreen': ('require_fullscreen', 'bool'),
    'logSuspiciousActivity': ('log_suspicious_activity', 'bool'),
    'enableWebcamSnapshots': ('enable_webcam_snapshots', 'bool'),
    'enableFaceCentering': ('enable_face_centering', 'bool'),
    'enableSecondCam': ('enable_second_cam', 'bool'),
    'allowMultipleAttempts': ('allow_multiple_attempts', 'bool'),
    'showScoreToStudent': ('show_score_to_student', 'bool'),
    'mobileAllowed': ('mobile_allowed', 'bool'),
    'requireStudentListMatch': ('require_student_list_match', 'bool'),
}


@dataclass
class QuizInput:
    """Create/update body. Only keys present in the payload end up in `settings`."""

    title: Optional[str] = None
    description: Optional[str] = None
    quiz_code: Optional[str] = None
    settings: Dict[str, Any] = field(default_factory=dict)
    provided: List[str] = field(default_factory=list)

    @classmethod
    def from_payload(cls, data, require_title=False):
        data = _payload(data)
        _reject_unknown(data, ('title', 'description', 'quizCode', 'settings'))
        raw_settings = data.get('settings') or {}
        if not isinstance(raw_settings, dict):
            raise InvalidInput('settings must be an object', 'InvalidField')
        _reject_unknown(raw_settings, SETTINGS_FIELDS)

        settings = {}
        for key, (column, kind) in SETTINGS_FIELDS.items():
            if key not in raw_settings:
                continue
            if kind == 'bool':
                value = _bool(raw_settings, key)
                if value is None:
                    raise InvalidInput(f'{key} must be a boolean', 'InvalidField')
            elif kind == 'positive_int':
                value = _int(raw_settings, key, minimum=1)
            elif kind == 'optional_positive_int':
                value = _int(raw_settings, key, required=False, minimum=1)
            else:
                value = parse_datetime(raw_settings.get(key), key)
            settings[column] = value

        provided = [k for k in ('title', 'description', 'quizCode') if k in data]
        return cls(
            title=_str(data, 'title', required=require_title, max_length=200),
            description=_str(data, 'description', required=False, max_length=5000),
            quiz_code=_str(data, 'quizCode', required=False, max_length=64) or None,
            settings=settings,
            provided=provided,
        )


@dataclass
class StatusInput:
    status: str

    @classmethod
    def from_payload(cls, data):
        data = _payload(data)
        _reject_unknown(data, ('status',))
        status = _str(data, 'status')
        if status not in ('draft', 'published', 'closed'):
            raise InvalidInput('status must be draft, published or closed', 'InvalidStatus')
        return cls(status=status)


@dataclass
class ExtendInput:
    minutes: int

    @classmethod
    def from_payload(cls, data):
        data = _payload(data)
        _reject_unknown(data, ('minutes',))
        minutes = _int(data, 'minutes', minimum=1)
        return cls(minutes=minutes)


@dataclass
class TerminateInput:
    reason: str = 'ended_by_instructor'

    @classmethod
    def from_payload(cls, data):
        data = _payload(data)
        _reject_unknown(data, ('reason',))
        return cls(reason=_str(data, 'reason', required=False, default='ended_by_instructor', max_length=200))


@dataclass
class QuestionUpdateInput:
    text: Optional[str] = None
    options: Optional[List[str]] = None
    correct_index: Optional[int] = None
    order: Optional[int] = None

    @classmethod
    def from_payload(cls, data):
        data = _payload(data)
        _reject_unknown(data, ('text', 'options', 'correctIndex', 'order'))
        options = data.get('options')
        if options is not None:
            if not isinstance(options, list) or not all(isinstance(o, str) and o.strip() for o in options):
                raise InvalidInput('options must be a list of non-empty strings', 'InvalidField')
            if len(options) < 2:
                raise InvalidInput('A question needs at least 2 options', 'InvalidField')
            options = [o.strip() for o in options]
        return cls(
            text=_str(data, 'text', required=False),
            options=options,
            correct_index=_int(data, 'correctIndex', required=False, minimum=0),
            order=_int(data, 'order', required=False, minimum=0),
        )


@dataclass
class StudentUpdateInput:
    name: Optional[str] = None
    email: Optional[str] = None
    external_id: Optional[str] = None

    @classmethod
    def from_payload(cls, data):
        data = _payload(data)
        _reject_unknown(data, ('name', 'email', 'externalId'))
        email = _str(data, 'email', required=False, max_length=200)
        return cls(
            name=_str(data, 'name', required=False, max_length=150),
            email=normalize_email(email) if email else None,
            external_id=_str(data, 'externalId', required=False, max_length=64),
        )


MAX_IMAGE_BASE64_LENGTH = 800000


def clean_image_data(mime: str, data: str) -> str:
    """Validate a base64 image and strip any data-URL prefix from it."""
    if not mime or not mime.startswith('image/'):
        raise InvalidInput('Invalid snapshot mime', 'InvalidData')
    payload = data.split(',')[-1] if data and ',' in data else (data or '')
    if not payload:
        raise InvalidInput('Missing snapshot data', 'InvalidData')
    if len(payload) > MAX_IMAGE_BASE64_LENGTH:
        raise InvalidInput('Snapshot too large', 'InvalidData')
    return payload
