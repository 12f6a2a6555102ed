"""
Request rate limits, backed by Flask-Limiter.

The OTP resend limit is shared by the student and instructor resend routes and is
counted per (quiz, normalized email), so switching routes does not reset the window.
Counters live in the storage named by RATELIMIT_STORAGE_URI; point it at Redis when
running more than one worker.
"""
from flask import current_app, request
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

from schemas import normalize_email

RESEND_SCOPE = 'otp-resend'

limiter = Limiter(get_remote_address)


def resend_limit() -> str:
    return current_app.config['OTP_RESEND_RATE_LIMIT']


def resend_key() -> str:
    view_args = request.view_args or {}
    quiz_ref = str(view_args.get('quiz_ref', view_args.get('quiz_id', ''))).strip()
    data = request.get_json(silent=True)
    email = data.get('email') if isinstance(data, dict) else None
    return f'{quiz_ref}:{normalize_email(email if isinstance(email, str) else "")}'


def limit_resends(view):
    """Apply the shared OTP resend limit to a route."""
    return limiter.shared_limit(resend_limit, scope=RESEND_SCOPE, key_func=resend_key)(view)
