import logging

from flask import jsonify, request
from flask_limiter.errors import RateLimitExceeded
from werkzeug.exceptions import HTTPException

logger = logging.getLogger(__name__)

STUDENT_FACING_BLUEPRINTS = {'exam'}
GENERIC_STUDENT_MESSAGE = 'This exam session cannot continue.'


class ApiError(Exception):
    """A tagged failure: `kind` is the taxonomy bucket, `code` the specific reason."""

    kind = 'Internal'
    status = 500

    def __init__(self, message: str, code: str = None, details=None):
        super().__init__(message)
        self.message = message
        self.code = code or self.kind
        self.details = details

    def to_dict(self):
        body = {
            'success': False,
            'error': self.kind,
            'code': self.code,
            'message': self.message,
        }
        if self.details is not None:
            body['details'] = self.details
        return body


class NotFound(ApiError):
    kind = 'NotFound'
    status = 404


class Forbidden(ApiError):
    kind = 'Forbidden'
    status = 403


class InvalidInput(ApiError):
    kind = 'InvalidInput'
    status = 400


class RateLimited(ApiError):
    kind = 'RateLimited'
    status = 429


class Conflict(ApiError):
    kind = 'Conflict'
    status = 409


class Unauthenticated(ApiError):
    kind = 'Unauthenticated'
    status = 401


class Internal(ApiError):
    kind = 'Internal'
    status = 500


def register_error_handlers(app, db=None):
    @app.errorhandler(ApiError)
    def handle_api_error(error: ApiError):
        if db is not None:
            db.session.rollback()
        if error.status >= 500:
            logger.error('%s %s failed: %s (%s)', request.method, request.path, error.message, error.code)
        body = error.to_dict()
        if error.status >= 500 and request.blueprint in STUDENT_FACING_BLUEPRINTS:
            body['message'] = GENERIC_STUDENT_MESSAGE
        return jsonify(body), error.status

    @app.errorhandler(RateLimitExceeded)
    def handle_rate_limit(error: RateLimitExceeded):
        logger.warning('Rate limit %s hit on %s %s', error.description, request.method, request.path)
        return jsonify({
            'success': False,
            'error': 'RateLimited',
            'code': 'ResendRateLimited',
            'message': f'OTP resend rate limit exceeded ({error.description})',
        }), 429

    @app.errorhandler(HTTPException)
    def handle_http_error(error: HTTPException):
        return jsonify({
            'success': False,
            'error': _kind_for_status(error.code),
            'code': error.name.replace(' ', ''),
            'message': error.description,
        }), error.code

    @app.errorhandler(Exception)
    def handle_unexpected(error: Exception):
        if db is not None:
            db.session.rollback()
        logger.exception('Unhandled error on %s %s', request.method, request.path)
        message = 'Internal server error'
        if request.blueprint in STUDENT_FACING_BLUEPRINTS:
            message = GENERIC_STUDENT_MESSAGE
        return jsonify({'success': False, 'error': 'Internal', 'code': 'Internal', 'message': message}), 500


def _kind_for_status(status: int) -> str:
    return {
        400: 'InvalidInput',
        401: 'Unauthenticated',
        403: 'Forbidden',
        404: 'NotFound',
        405: 'InvalidInput',
        409: 'Conflict',
        413: 'InvalidInput',
        429: 'RateLimited',
    }.get(status, 'Internal')
