# app.py
"""
Flask Application Factory for Firewatch

This application factory wires the whole service together:
- Configuration and 32-byte key validation (fails before anything starts)
- Database, default report schema, settings and first admin seeding
- Mailer with the in-process outbound queue in front of it
- Blueprints, rate limiting, CORS and security headers
- JSON error handling for the API
- Graceful shutdown: stop accepting, finish in-flight, drain the queue
"""

import logging
import os
import signal
import sys
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional

from flask import Flask, jsonify, request
from flask_cors import CORS
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.serving import make_server

from api.admin_report import admin_report_bp
from api.admin_settings import admin_settings_bp
from api.admin_users import admin_users_bp
from api.auth import auth_bp
from api.report import report_bp
from config.security import get_config, load_secret_key, validate_config
from core.crypto import Crypter
from core.database import init_database
from core.errors import (
    ConfigurationError, FirewatchError, NotFoundError, StorageError, ValidationError
)
from core.schema_store import SchemaStore
from core.security_manager import SecurityManager
from core.session_store import SessionStore
from core.settings_store import SettingsStore
from core.user_store import UserStore
from middleware.security import limiter, security_headers
from routes.public import public_bp
from services.mailer import Mailer
from services.settings_service import SettingsService
from tasks.email_sender import EmailQueue

logger = logging.getLogger(__name__)

_HANDLER_NAME = 'firewatch'


def setup_logging(app: Flask) -> None:
    """
    Configure logging for systemd journal collection

    One stream handler on the root logger; journald adds its own timestamps.
    """
    journal_formatter = logging.Formatter(
        fmt='%(name)s[%(process)d]: %(levelname)s %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    log_level = getattr(logging, str(app.config.get('LOG_LEVEL', 'INFO')).upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(log_level)

    if not any(h.get_name() == _HANDLER_NAME for h in root.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.set_name(_HANDLER_NAME)
        handler.setFormatter(journal_formatter)
        root.addHandler(handler)

    # Suppress verbose third-party logs
    if not app.debug:
        logging.getLogger('werkzeug').setLevel(logging.WARNING)


def _error(status: int, error: str, message: str):
    return jsonify({
        'error': error,
        'message': message,
        'status_code': status
    }), status


def configure_error_handlers(app: Flask) -> None:
    """
    JSON error bodies for every status the API produces

    Client addresses are never logged; reporters must stay unlinkable.
    """
    @app.errorhandler(400)
    def bad_request(error):
        return _error(400, 'Bad Request', 'Invalid request format or parameters')

    @app.errorhandler(401)
    def unauthorized(error):
        return _error(401, 'Unauthorized', 'Authentication required')

    @app.errorhandler(403)
    def forbidden(error):
        return _error(403, 'Forbidden', 'Insufficient permissions')

    @app.errorhandler(404)
    def not_found(error):
        return _error(404, 'Not Found', 'The requested resource was not found')

    @app.errorhandler(405)
    def method_not_allowed(error):
        return _error(405, 'Method Not Allowed', 'The method is not allowed for this resource')

    @app.errorhandler(413)
    def payload_too_large(error):
        return _error(413, 'Payload Too Large', 'Request body is too large')

    @app.errorhandler(429)
    def rate_limit_exceeded(error):
        logger.warning(f"Rate limit exceeded on {request.path}")
        return _error(429, 'Rate Limit Exceeded', 'Too many requests. Please try again later.')

    @app.errorhandler(500)
    def internal_error(error):
        logger.error(f"Internal server error: {error}")
        return _error(500, 'Internal Server Error', 'An unexpected error occurred')

    @app.errorhandler(FirewatchError)
    def handle_firewatch_error(e):
        if isinstance(e, NotFoundError):
            return _error(404, 'Not Found', str(e))
        if isinstance(e, ValidationError):
            return _error(400, 'Bad Request', str(e))
        if isinstance(e, ConfigurationError):
            return _error(502, 'Bad Gateway', str(e))
        if isinstance(e, StorageError):
            logger.error(f"Storage failure on {request.endpoint}: {e}")
        else:
            logger.error(f"Unhandled application error on {request.endpoint}: {e}")
        return _error(500, 'Internal Server Error', 'An unexpected error occurred')

    @app.errorhandler(Exception)
    def handle_exception(e):
        """Handle unexpected exceptions"""
        if isinstance(e, HTTPException):
            return e

        logger.error(f"Unhandled exception: {e}", exc_info=True)
        return _error(500, 'Internal Server Error', 'An unexpected error occurred')


def configure_health_checks(app: Flask) -> None:
    @app.route('/api/health')
    def health_check():
        """Basic health check endpoint with a database round trip"""
        body = {
            'status': 'healthy',
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'version': app.config.get('VERSION', '1.0.0')
        }
        try:
            app.db.ping()
        except Exception as e:
            logger.error(f"Health check database ping failed: {e}")
            body['status'] = 'unhealthy'
            return jsonify(body), 503
        return jsonify(body)


def register_blueprints(app: Flask) -> None:
    app.register_blueprint(public_bp)
    app.register_blueprint(report_bp)
    app.register_blueprint(auth_bp)
    app.register_blueprint(admin_report_bp)
    app.register_blueprint(admin_settings_bp)
    app.register_blueprint(admin_users_bp)

    logger.debug("Application blueprints registered")


def _load_keys(app: Flask) -> None:
    for name in ('SETTINGS_ENCRYPTION_KEY', 'EMAIL_HMAC_KEY'):
        if not app.config.get(name):
            app.config[name] = load_secret_key(name)


def create_app(config_name: str = None,
               overrides: Optional[Mapping[str, Any]] = None,
               mailer=None,
               mailer_factory: Optional[Callable] = None) -> Flask:
    """
    Flask application factory

    Args:
        config_name: 'development', 'testing' or 'production' (default: ENV)
        overrides: config values applied after the config class
        mailer: live mailer to use instead of the queued SMTP mailer
        mailer_factory: builds the throwaway mailer used for verification

    Raises:
        ConfigurationError: a key, the session secret or the seed admin is invalid
    """
    app = Flask(__name__,
                static_folder='static',
                template_folder='templates')

    config = get_config(config_name)
    app.config.from_object(config)
    if overrides:
        app.config.update(overrides)

    setup_logging(app)

    problems = validate_config(app.config)
    if problems:
        raise ConfigurationError("; ".join(problems))
    _load_keys(app)

    logger.info(f"Starting Firewatch in {app.config['ENV']} mode")

    # Storage
    crypter = Crypter(app.config['SETTINGS_ENCRYPTION_KEY'])
    db = init_database(app.config['DATABASE_URL'])
    security_manager = SecurityManager(db, bcrypt_rounds=app.config['BCRYPT_ROUNDS'])
    schema_store = SchemaStore(db)
    settings_store = SettingsStore(db, crypter, app.config.get('SETTINGS_ENVIRON'))
    session_store = SessionStore(db, app.config['PERMANENT_SESSION_LIFETIME'])
    user_store = UserStore(db, crypter, app.config['EMAIL_HMAC_KEY'], security_manager)

    # Seeding
    schema_store.seed_default()
    settings = settings_store.load()
    try:
        user_store.seed_first_admin(app.config['SEED_ADMIN_EMAIL'], app.config['SEED_ADMIN_PASSWORD'])
    except ValidationError as e:
        raise ConfigurationError(f"seed admin: {e}") from e
    session_store.delete_expired()

    # Mail: built from stored settings, verified only on update/apply
    timeout = app.config['SMTP_TIMEOUT_SECONDS']
    if mailer is None:
        mailer = EmailQueue(
            Mailer.from_settings(settings, timeout=timeout),
            size=app.config['MAIL_QUEUE_SIZE'],
            rate=app.config['MAIL_QUEUE_RATE_SECONDS'],
            max_retries=app.config['MAIL_QUEUE_MAX_RETRIES'],
            backoff=app.config['MAIL_QUEUE_BACKOFF_SECONDS'],
        )
        if not app.testing:
            mailer.start()

    app.db = db
    app.crypter = crypter
    app.security_manager = security_manager
    app.schema_store = schema_store
    app.settings_store = settings_store
    app.session_store = session_store
    app.user_store = user_store
    app.mailer = mailer
    app.settings_service = SettingsService(settings_store, mailer,
                                           mailer_factory=mailer_factory, timeout=timeout)

    if not settings.verified:
        logger.warning("Settings are not verified; public form stays in maintenance until an admin applies them")

    # HTTP
    limiter.init_app(app)

    origins = app.config.get('CORS_TRUSTED_ORIGINS') or []
    if origins:
        CORS(app,
             resources={r"/api/*": {"origins": origins}},
             supports_credentials=True,
             allow_headers=['Content-Type'])

    # Configure proxy handling for production deployment behind nginx
    if app.config['ENV'] == 'production':
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)

    register_blueprints(app)
    configure_error_handlers(app)
    configure_health_checks(app)
    app.after_request(security_headers)

    logger.info("Flask application factory completed successfully")
    return app


class InFlightTracker:
    """WSGI middleware counting requests that are still being handled"""

    def __init__(self, wsgi_app):
        self.wsgi_app = wsgi_app
        self._count = 0
        self._cond = threading.Condition()

    def __call__(self, environ, start_response):
        with self._cond:
            self._count += 1
        try:
            return self.wsgi_app(environ, start_response)
        finally:
            with self._cond:
                self._count -= 1
                self._cond.notify_all()

    def wait_idle(self, timeout: float) -> bool:
        with self._cond:
            return self._cond.wait_for(lambda: self._count == 0, timeout)


def serve(app: Flask, host: str = '0.0.0.0', port: Optional[int] = None) -> None:
    """
    Run the threaded server until SIGINT/SIGTERM

    Shutdown order: stop accepting, give in-flight requests the grace
    period, then stop and drain the outbound queue.
    """
    port = port or app.config['PORT']
    grace = app.config['SHUTDOWN_GRACE_SECONDS']
    tracker = InFlightTracker(app.wsgi_app)
    app.wsgi_app = tracker
    server = make_server(host, port, app, threaded=True)

    def shutdown_handler(signum, frame):
        logger.info(f"Received signal {signum}, shutting down")
        # shutdown() blocks until serve_forever returns, so not on this thread
        threading.Thread(target=server.shutdown, name='server-shutdown', daemon=True).start()

    signal.signal(signal.SIGTERM, shutdown_handler)
    signal.signal(signal.SIGINT, shutdown_handler)

    logger.info(f"Listening on {host}:{port}")
    server.serve_forever()

    if not tracker.wait_idle(grace):
        logger.warning(f"In-flight requests still running after {grace}s grace period")
    server.server_close()

    app.mailer.stop(timeout=grace)
    app.db.dispose()
    logger.info("Shutdown complete")


if __name__ == '__main__':
    try:
        serve(create_app(os.environ.get('ENV')))
    except ConfigurationError as e:
        logging.getLogger(__name__).critical(f"Configuration error: {e}")
        sys.exit(1)
