import logging
from datetime import datetime, timedelta, timezone
from functools import wraps

import jwt
from flask import Blueprint, current_app, g, jsonify, request
from sqlalchemy.exc import IntegrityError
from werkzeug.security import check_password_hash, generate_password_hash

from errors import Conflict, Internal, Unauthenticated
from models import Instructor, db
from schemas import LoginInput, RegisterInput

logger = logging.getLogger(__name__)

auth_bp = Blueprint('auth', __name__, url_prefix='/api/auth')

JWT_ALGORITHM = 'HS256'


def _secret() -> str:
    secret = current_app.config.get('JWT_SECRET')
    if not secret:
        raise Internal('JWT_SECRET is not configured', 'JwtSecretMissing')
    return secret


def create_access_token(instructor) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        'sub': str(instructor.id),
        'email': instructor.email,
        'type': 'access',
        'iat': now,
        'exp': now + timedelta(hours=current_app.config.get('JWT_EXPIRATION_HOURS', 24 * 7)),
    }
    return jwt.encode(payload, _secret(), algorithm=JWT_ALGORITHM)


def decode_access_token(token: str) -> dict:
    try:
        payload = jwt.decode(token, _secret(), algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise Unauthenticated('Token expired', 'TokenExpired')
    except jwt.PyJWTError:
        raise Unauthenticated('Invalid token', 'InvalidToken')
    if payload.get('type') != 'access':
        raise Unauthenticated('Invalid token type', 'InvalidToken')
    return payload


def require_instructor(view):
    """Bearer-token guard; sets g.instructor_id for the wrapped view."""

    @wraps(view)
    def wrapper(*args, **kwargs):
        header = request.headers.get('Authorization', '')
        if not header.startswith('Bearer '):
            raise Unauthenticated('Missing bearer token', 'MissingToken')
        payload = decode_access_token(header[len('Bearer '):].strip())
        try:
            g.instructor_id = int(payload.get('sub'))
        except (TypeError, ValueError):
            raise Unauthenticated('Invalid token subject', 'InvalidToken')
        return view(*args, **kwargs)

    return wrapper


# --- REGISTER ROUTE ---
@auth_bp.route('/register', methods=['POST'])
def register():
    data = RegisterInput.from_payload(request.get_json(silent=True))

    if Instructor.query.filter_by(email=data.email).first():
        raise Conflict('Email already registered', 'EmailTaken')

    instructor = Instructor(
        name=data.name,
        email=data.email,
        password_hash=generate_password_hash(data.password, method='pbkdf2:sha256'),
    )
    db.session.add(instructor)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise Conflict('Email already registered', 'EmailTaken')

    logger.info('Instructor registered: %s', instructor.email)
    return jsonify({'success': True, 'message': 'Registration successful!', 'user': instructor.to_dict()}), 201


# --- LOGIN ROUTE ---
@auth_bp.route('/login', methods=['POST'])
def login():
    data = LoginInput.from_payload(request.get_json(silent=True))

    instructor = Instructor.query.filter_by(email=data.email).first()
    if not instructor or not check_password_hash(instructor.password_hash, data.password):
        raise Unauthenticated('Invalid email or password', 'InvalidCredentials')

    return jsonify({
        'success': True,
        'message': 'Login successful',
        'token': create_access_token(instructor),
        'user': instructor.to_dict(),
    }), 200


@auth_bp.route('/me', methods=['GET'])
@require_instructor
def me():
    instructor = db.session.get(Instructor, g.instructor_id)
    if instructor is None:
        raise Unauthenticated('Account no longer exists', 'InvalidToken')
    return jsonify({'success': True, 'user': instructor.to_dict()})
