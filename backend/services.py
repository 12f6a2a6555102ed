from dataclasses import dataclass
from datetime import timedelta

from flask import current_app

from attempts import AttemptStateMachine
from dashboard import DashboardAggregator
from governor import QuizWindowGovernor
from invitations import InvitationService
from mailer import Mailer
from otp import OtpStore
from quizzes import QuizService
from second_cam import SecondCamTracker

EXTENSION_KEY = 'quiz_services'


@dataclass
class Services:
    mailer: Mailer
    otp: OtpStore
    invitations: InvitationService
    governor: QuizWindowGovernor
    second_cam: SecondCamTracker
    attempts: AttemptStateMachine
    dashboard: DashboardAggregator
    quizzes: QuizService


def build_services(session, config) -> Services:
    """Wire every component around one storage session (Flask-SQLAlchemy's scoped session)."""
    mailer = Mailer.from_config(config)
    otp = OtpStore(
        session,
        ttl=timedelta(minutes=config.get('OTP_TTL_MINUTES', 15)),
        max_attempts=config.get('OTP_MAX_ATTEMPTS', 5),
    )
    governor = QuizWindowGovernor(session)
    second_cam = SecondCamTracker(
        session,
        secret=config.get('JWT_SECRET', ''),
        token_ttl=timedelta(hours=config.get('SECOND_CAM_TOKEN_HOURS', 6)),
        stale_after=timedelta(seconds=config.get('SECOND_CAM_STALE_SECONDS', 20)),
    )
    return Services(
        mailer=mailer,
        otp=otp,
        invitations=InvitationService(session, otp, mailer, app_base_url=config.get('APP_BASE_URL', '')),
        governor=governor,
        second_cam=second_cam,
        attempts=AttemptStateMachine(session, otp, second_cam),
        dashboard=DashboardAggregator(session, governor, second_cam),
        quizzes=QuizService(session, governor),
    )


def current_services() -> Services:
    return current_app.extensions[EXTENSION_KEY]
