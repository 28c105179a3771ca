# api/report.py
"""
Public report API: live schema and anonymous submission
"""

import logging

from flask import Blueprint, current_app, jsonify, request

from api.helpers import error_response
from core.errors import FirewatchError, NotFoundError, ValidationError
from core.template_engine import build_report_values, render_template
from middleware.security import limiter, maintenance_guard, public_submit_key

report_bp = Blueprint('report', __name__)
logger = logging.getLogger(__name__)

SUBMIT_KEYS = {'schemaVersion', 'fields'}


def _unavailable():
    return error_response(503, 'Service Unavailable',
                          'The report service is temporarily unavailable. Please try again later.')


@report_bp.route('/api/report', methods=['GET'])
@maintenance_guard
def get_report_schema():
    try:
        schema = current_app.schema_store.live_schema()
    except NotFoundError:
        logger.error("No live schema; public form unavailable")
        return _unavailable()
    return jsonify({'schema': schema.to_dict()})


@report_bp.route('/api/report', methods=['POST'])
@maintenance_guard
@limiter.limit("10 per minute", key_func=public_submit_key)
def submit_report():
    """
    Accept an anonymous report.

    The response is identical whether or not delivery later succeeds.
    Nothing from the submission is stored, echoed or logged.
    """
    try:
        schema = current_app.schema_store.live_schema()
    except NotFoundError:
        logger.error("No live schema; rejecting submission")
        return _unavailable()

    data = request.get_json(silent=True)
    if not isinstance(data, dict) or set(data) - SUBMIT_KEYS:
        return error_response(400, 'Bad Request', 'Bad Request')

    try:
        values = build_report_values(schema, data.get('fields'))
    except ValidationError:
        return error_response(400, 'Bad Request', 'Bad Request')

    body = render_template(schema.email_template(schema.default_lang), values)
    try:
        current_app.mailer.send_report(body)
    except FirewatchError as e:
        logger.error(f"Report delivery failed: {type(e).__name__}: {e}")

    return jsonify({'status': 'submitted'}), 202
