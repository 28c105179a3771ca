# middleware/security.py
"""
Security Middleware for Request Processing
"""

from flask import current_app, g, jsonify, render_template, request, session
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from functools import wraps
import logging
from typing import Optional

from core.errors import FirewatchError, NotFoundError

logger = logging.getLogger(__name__)

SESSION_KEY = 'sid'

# Rate limiter, bound to the app in create_app()
limiter = Limiter(key_func=get_remote_address, default_limits=[])


def public_submit_key() -> str:
    """One shared bucket for all submitters so limits never key on a reporter's address"""
    return 'public-report-submit'


def security_headers(response):
    """Add security headers to all responses"""
    for name, value in current_app.config.get('SECURITY_HEADERS', {}).items():
        response.headers.setdefault(name, value)
    if request.path.startswith('/api/'):
        response.headers['Cache-Control'] = 'no-store'
    return response


def current_session_user_id() -> Optional[str]:
    """User id behind the session cookie, or None; stale ids are cleared"""
    sid = session.get(SESSION_KEY)
    if not sid:
        return None
    try:
        return current_app.session_store.get_user_id(sid)
    except NotFoundError:
        session.pop(SESSION_KEY, None)
        return None


def load_session_user():
    user_id = current_session_user_id()
    if user_id is None:
        return None
    try:
        user = current_app.user_store.get_by_id(user_id)
    except NotFoundError:
        return None
    if not user.is_active:
        return None
    return user


def _json_error(status: int, error: str, message: str):
    return jsonify({'error': error, 'message': message, 'status_code': status}), status


def require_auth(f):
    """Decorator to require an authenticated, active admin"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        user = load_session_user()
        if user is None:
            logger.warning(f"Unauthorized access attempt to {request.endpoint}")
            return _json_error(401, 'Unauthorized', 'Authentication required')

        g.user = user
        return f(*args, **kwargs)
    return decorated_function


def require_super_admin(f):
    """Decorator to require the super_admin role"""
    @wraps(f)
    @require_auth
    def decorated_function(*args, **kwargs):
        if not g.user.is_super_admin:
            current_app.security_manager.log_security_event('forbidden', {
                'required_role': 'super_admin',
            }, user_id=g.user.id)
            return _json_error(403, 'Forbidden', 'Insufficient permissions')
        return f(*args, **kwargs)
    return decorated_function


def maintenance_response():
    if request.path.startswith('/api/'):
        return _json_error(503, 'Service Unavailable',
                           'The report service is temporarily unavailable. Please try again later.')
    return render_template('maintenance.html'), 503


def maintenance_guard(f):
    """
    Decorator for public routes.

    Serves 503 while maintenance mode is on, while SMTP or PGP is
    unverified, or when settings cannot be read.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        try:
            settings = current_app.settings_store.load()
        except FirewatchError as e:
            logger.error(f"Maintenance check could not load settings: {e}")
            return maintenance_response()

        if settings.maintenance_mode or not settings.verified:
            return maintenance_response()
        return f(*args, **kwargs)
    return decorated_function
