# api/admin_settings.py
"""
Admin settings API: masked read, update with verification, re-apply, test send
"""

import logging

from flask import Blueprint, current_app, jsonify, request

from api.helpers import audit, error_response
from core.errors import FirewatchError
from middleware.security import require_auth

admin_settings_bp = Blueprint('admin_settings', __name__)
logger = logging.getLogger(__name__)


@admin_settings_bp.route('/api/admin/settings', methods=['GET'])
@require_auth
def get_settings():
    return jsonify({'settings': current_app.settings_service.masked()})


@admin_settings_bp.route('/api/admin/settings', methods=['PUT'])
@require_auth
def update_settings():
    """Save, then verify SMTP and PGP before answering"""
    result = current_app.settings_service.update(request.get_json(silent=True))
    audit('settings_updated', {'smtpVerified': result['smtpVerified'], 'pgpVerified': result['pgpVerified']})
    return jsonify(result)


@admin_settings_bp.route('/api/admin/settings/apply', methods=['POST'])
@require_auth
def apply_settings():
    result = current_app.settings_service.apply()
    audit('settings_applied', {'smtpVerified': result['smtpVerified'], 'pgpVerified': result['pgpVerified']})
    return jsonify(result)


@admin_settings_bp.route('/api/admin/settings/test-email', methods=['POST'])
@require_auth
def test_email():
    """Send a plain test message using only the stored settings"""
    try:
        current_app.settings_service.send_test_email()
    except FirewatchError as e:
        logger.error(f"Test email failed: {e}")
        audit('settings_test_email', {'sent': False})
        return error_response(502, 'Bad Gateway', f"Send failed: {e}")

    audit('settings_test_email', {'sent': True})
    return jsonify({'status': 'sent'})
