import logging
import os

import click
from flask import Flask, jsonify
from flask_cors import CORS
from flask_socketio import SocketIO

from admin import admin_bp
from auth import auth_bp
from config import Config
from errors import register_error_handlers
from exam import exam_bp, register_socket_handlers
from logging_config import setup_logging
from models import db, utcnow
from rate_limits import limiter
from services import EXTENSION_KEY, build_services, current_services

logger = logging.getLogger(__name__)

socketio = SocketIO()
register_socket_handlers(socketio)


def create_app(test_config=None):
    """Application factory. `test_config` overrides values loaded from the environment."""
    app = Flask(__name__)
    app.config.from_object(Config)
    if test_config:
        app.config.update(test_config)

    setup_logging(level=app.config['LOG_LEVEL'], log_dir=app.config.get('LOG_DIR'))

    # Enable CORS with credentials support
    CORS(app, origins=app.config['CORS_ORIGINS'], supports_credentials=True)
    db.init_app(app)
    limiter.init_app(app)
    socketio.init_app(
        app,
        cors_allowed_origins=app.config['CORS_ORIGINS'],
        async_mode=app.config['SOCKETIO_ASYNC_MODE'],
    )

    register_error_handlers(app, db)
    app.register_blueprint(auth_bp)
    app.register_blueprint(admin_bp)
    app.register_blueprint(exam_bp)

    with app.app_context():
        db.create_all()
        app.extensions[EXTENSION_KEY] = build_services(db.session, app.config)

    if not app.config.get('JWT_SECRET'):
        logger.warning('JWT_SECRET is not set: instructor login and second-camera links are disabled')
    error = app.extensions[EXTENSION_KEY].mailer.config_error()
    if error:
        logger.warning('%s; invitations cannot be sent', error)

    @app.route('/health')
    def health():
        return jsonify({'status': 'healthy', 'timestamp': utcnow().isoformat() + 'Z'})

    register_cli(app)
    return app


def register_cli(app):
    @app.cli.command('init-db')
    def init_db():
        """Create all tables."""
        db.create_all()
        click.echo('Database tables created.')

    @app.cli.command('expire-attempts')
    @click.option('--grace', type=int, default=None, help='Seconds added to the total time limit.')
    def expire_attempts(grace):
        """Mark in-progress attempts past their total time limit as expired."""
        if grace is None:
            grace = app.config['EXPIRY_GRACE_SECONDS']
        count = current_services().attempts.expire_overdue(grace_seconds=grace)
        click.echo(f'Expired {count} attempt(s).')

    @app.cli.command('purge-second-cam')
    def purge_second_cam():
        """Drop idle second-camera sessions and snapshots past retention."""
        result = current_services().second_cam.purge_stale()
        click.echo(f"Removed {result['sessions']} session(s) and {result['snapshots']} snapshot(s).")


if __name__ == '__main__':
    app = create_app()
    socketio.run(
        app,
        host=os.environ.get('HOST', '0.0.0.0'),
        port=int(os.environ.get('PORT', 5000)),
        debug=os.environ.get('FLASK_DEBUG') == '1',
        allow_unsafe_werkzeug=True,
    )
