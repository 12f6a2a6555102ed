import os


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ('1', 'true', 'yes', 'on')


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if not raw:
        return default
    return int(raw)


class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY', 'dev-secret-key')
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL', 'sqlite:///database.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    MAX_CONTENT_LENGTH = 16 * 1024 * 1024

    # Bearer tokens for instructors and second-camera devices
    JWT_SECRET = os.environ.get('JWT_SECRET', '')
    JWT_EXPIRATION_HOURS = _env_int('JWT_EXPIRATION_HOURS', 24 * 7)

    # Outbound mail
    APP_BASE_URL = os.environ.get('APP_BASE_URL', '')
    SMTP_HOST = os.environ.get('SMTP_HOST', '')
    SMTP_PORT = _env_int('SMTP_PORT', 0)
    SMTP_USER = os.environ.get('SMTP_USER', '')
    SMTP_PASS = os.environ.get('SMTP_PASS', '')
    SMTP_FROM = os.environ.get('SMTP_FROM', '')
    DEV_EMAIL_MODE = _env_bool('DEV_EMAIL_MODE')

    # OTP policy
    OTP_TTL_MINUTES = _env_int('OTP_TTL_MINUTES', 15)
    OTP_MAX_ATTEMPTS = _env_int('OTP_MAX_ATTEMPTS', 5)
    OTP_RESEND_RATE_LIMIT = os.environ.get('OTP_RESEND_RATE_LIMIT', '3 per 10 minutes')

    # Flask-Limiter counters; use a shared store such as redis:// with several workers
    RATELIMIT_STORAGE_URI = os.environ.get('RATELIMIT_STORAGE_URI', 'memory://')

    # Second camera
    SECOND_CAM_TOKEN_HOURS = _env_int('SECOND_CAM_TOKEN_HOURS', 6)
    SECOND_CAM_STALE_SECONDS = _env_int('SECOND_CAM_STALE_SECONDS', 20)

    # Grace added to the total time limit by the expire-attempts sweep
    EXPIRY_GRACE_SECONDS = _env_int('EXPIRY_GRACE_SECONDS', 120)

    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')
    LOG_DIR = os.environ.get('LOG_DIR') or None

    SOCKETIO_ASYNC_MODE = os.environ.get('SOCKETIO_ASYNC_MODE', 'threading')
    CORS_ORIGINS = os.environ.get('CORS_ORIGINS', '*')
