# api/auth.py
"""
Admin Authentication API: login, logout, invitations and password resets
"""

from flask import Blueprint, current_app, g, jsonify, session
import logging

from api.helpers import audit, error_response, read_json, require_string
from core.errors import FirewatchError, NotFoundError
from middleware.security import SESSION_KEY, limiter, require_auth

auth_bp = Blueprint('auth', __name__)
logger = logging.getLogger(__name__)


@auth_bp.route('/api/admin/login', methods=['POST'])
@limiter.limit("5 per 10 minutes")
def login():
    """
    Login with email or username and password
    """
    data = read_json({'identifier', 'email', 'username', 'password'})
    identifier = (data.get('identifier') or data.get('email') or data.get('username') or '').strip()
    password = data.get('password') or ''

    # Input validation
    if not identifier or not password:
        return error_response(400, 'Bad Request', 'Username and password required')

    user = current_app.user_store.authenticate(identifier, password)
    if user is None:
        audit('login_failed', {'reason': 'invalid_credentials'})
        return error_response(401, 'Unauthorized', 'Invalid credentials')

    # Fresh cookie; the only thing in it is the opaque session id
    session_id = current_app.session_store.create(user.id)
    session.clear()
    session[SESSION_KEY] = session_id
    session.permanent = True

    g.user = user
    audit('login_success')

    return jsonify({
        'success': True,
        'user': user.to_dict(),
    })


@auth_bp.route('/api/admin/logout', methods=['POST'])
@require_auth
def logout():
    """Log out everywhere: every session of this user is deleted"""
    current_app.session_store.delete_all_by_user_id(g.user.id)
    session.clear()
    audit('logout')
    return jsonify({'success': True})


@auth_bp.route('/api/admin/me', methods=['GET'])
@require_auth
def me():
    return jsonify({'user': g.user.to_dict()})


@auth_bp.route('/api/admin/password', methods=['POST'])
@require_auth
def change_password():
    data = read_json({'currentPassword', 'newPassword'})
    current_password = data.get('currentPassword') or ''
    new_password = require_string(data, 'newPassword')

    if not current_app.user_store.verify_user_password(g.user.id, current_password):
        audit('password_change_failed', {'reason': 'wrong_current_password'})
        return error_response(400, 'Bad Request', 'Current password is incorrect')

    current_app.user_store.set_password(g.user.id, new_password)
    session.clear()
    audit('password_changed')
    return jsonify({'success': True})


@auth_bp.route('/api/accept-invite', methods=['POST'])
@limiter.limit("10 per hour")
def accept_invite():
    data = read_json({'token', 'password'})
    token = require_string(data, 'token')
    password = require_string(data, 'password')

    try:
        user = current_app.user_store.accept_invite(token, password)
    except NotFoundError:
        return error_response(400, 'Bad Request', 'Invitation is invalid or has expired')

    current_app.security_manager.log_security_event('invite_accepted', user_id=user.id)
    return jsonify({'user': user.to_dict()}), 201


@auth_bp.route('/api/admin/forgot-password', methods=['POST'])
@limiter.limit("5 per 10 minutes")
def forgot_password():
    """Always 202, whether or not the address belongs to an admin"""
    data = read_json({'email'})
    email = (data.get('email') or '').strip()

    result = current_app.user_store.create_password_reset(email) if email else None
    if result is not None:
        user, token = result
        url = f"{current_app.config['ADMIN_INVITE_BASE_URL']}/reset-password?token={token}"
        try:
            current_app.mailer.send_password_reset(user.email, url)
        except FirewatchError as e:
            logger.error(f"Password reset email could not be queued: {e}")
        current_app.security_manager.log_security_event('password_reset_requested', user_id=user.id)

    return jsonify({'status': 'accepted'}), 202


@auth_bp.route('/api/admin/reset-password', methods=['POST'])
@limiter.limit("10 per hour")
def reset_password():
    data = read_json({'token', 'password'})
    token = require_string(data, 'token')
    password = require_string(data, 'password')

    try:
        user_id = current_app.user_store.reset_password(token, password)
    except NotFoundError:
        return error_response(400, 'Bad Request', 'Reset link is invalid or has expired')

    current_app.security_manager.log_security_event('password_reset', user_id=user_id)
    return jsonify({'success': True})
