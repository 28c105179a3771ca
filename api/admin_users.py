# api/admin_users.py
"""
Super-admin user management: list, invite, update role/status, delete
"""

import logging

from flask import Blueprint, current_app, g, jsonify

from api.helpers import audit, read_json, require_string
from core.errors import FirewatchError
from middleware.security import require_super_admin

admin_users_bp = Blueprint('admin_users', __name__)
logger = logging.getLogger(__name__)


@admin_users_bp.route('/api/admin/users', methods=['GET'])
@require_super_admin
def list_users():
    return jsonify({'users': [user.to_dict() for user in current_app.user_store.list_users()]})


@admin_users_bp.route('/api/admin/users', methods=['POST'])
@require_super_admin
def invite_user():
    data = read_json({'email', 'role'})
    email = require_string(data, 'email')
    role = require_string(data, 'role')

    token = current_app.user_store.create_invite(email, role)
    url = f"{current_app.config['ADMIN_INVITE_BASE_URL']}/accept-invite?token={token}"

    email_queued = True
    try:
        current_app.mailer.send_invite(email, url)
    except FirewatchError as e:
        email_queued = False
        logger.warning(f"Invitation created but email could not be queued: {e}")

    audit('user_invited', {'role': role, 'emailQueued': email_queued})
    return jsonify({'inviteUrl': url, 'emailQueued': email_queued}), 201


@admin_users_bp.route('/api/admin/users/<user_id>', methods=['PUT'])
@require_super_admin
def update_user(user_id):
    data = read_json({'role', 'status'})
    user = current_app.user_store.update_user(user_id, role=data.get('role'), status=data.get('status'))
    audit('user_updated', {'target': user_id, 'role': user.role, 'status': user.status})
    return jsonify({'user': user.to_dict()})


@admin_users_bp.route('/api/admin/users/<user_id>', methods=['DELETE'])
@require_super_admin
def delete_user(user_id):
    current_app.user_store.delete_user(user_id, acting_user_id=g.user.id)
    audit('user_deleted', {'target': user_id})
    return jsonify({'success': True})
