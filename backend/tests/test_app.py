"""
Tests for the application factory, logging setup and CLI commands
"""
import logging
from datetime import timedelta

from logging_config import setup_logging
from models import Attempt, AttemptStatus, db


class TestFactory:
    def test_health(self, client):
        resp = client.get('/health')
        assert resp.status_code == 200
        assert resp.get_json()['status'] == 'healthy'

    def test_unknown_route_is_json(self, client):
        resp = client.get('/api/nowhere')
        assert resp.status_code == 404
        assert resp.get_json()['error'] == 'NotFound'

    def test_test_config_overrides_environment(self, app):
        assert app.config['TESTING'] is True
        assert app.config['DEV_EMAIL_MODE'] is True


class TestLogging:
    def test_file_handlers_only_with_log_dir(self, tmp_path):
        setup_logging(level='DEBUG')
        assert len(logging.getLogger().handlers) == 1

        setup_logging(level='INFO', log_dir=str(tmp_path))
        root = logging.getLogger()
        assert len(root.handlers) == 3
        assert root.level == logging.INFO
        assert (tmp_path / 'proctorquiz.log').exists()
        setup_logging(level='WARNING')


class TestCli:
    def test_expire_attempts(self, app, make_quiz, start_attempt):
        quiz = make_quiz(total_time_seconds=60)
        attempt_id = start_attempt(quiz)['attemptId']
        attempt = db.session.get(Attempt, attempt_id)
        attempt.started_at = attempt.started_at - timedelta(hours=1)
        db.session.commit()

        result = app.test_cli_runner().invoke(args=['expire-attempts', '--grace', '0'])

        assert 'Expired 1 attempt(s).' in result.output
        db.session.expire_all()
        assert db.session.get(Attempt, attempt_id).status == AttemptStatus.EXPIRED

    def test_purge_second_cam(self, app):
        result = app.test_cli_runner().invoke(args=['purge-second-cam'])
        assert 'Removed 0 session(s) and 0 snapshot(s).' in result.output
