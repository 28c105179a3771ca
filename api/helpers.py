# api/helpers.py
"""
Shared request/response helpers for the JSON API blueprints
"""

from typing import Any, Dict, Iterable, Optional

from flask import current_app, g, jsonify, request

from core.errors import ValidationError


def read_json(allowed_keys: Optional[Iterable[str]] = None) -> Dict[str, Any]:
    """Request body as a JSON object; unknown keys are rejected when ``allowed_keys`` is given"""
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("request body must be a JSON object")
    if allowed_keys is not None:
        unknown = set(data) - set(allowed_keys)
        if unknown:
            raise ValidationError(f"unknown field(s): {', '.join(sorted(unknown))}")
    return data


def require_string(data: Dict[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{key} is required")
    return value


def error_response(status: int, error: str, message: str):
    return jsonify({'error': error, 'message': message, 'status_code': status}), status


def audit(event_type: str, details: Dict[str, Any] = None) -> None:
    user = g.get('user')
    current_app.security_manager.log_security_event(
        event_type, details, user_id=user.id if user is not None else None
    )


def acting_username() -> str:
    user = g.get('user')
    return user.username if user is not None else ''
