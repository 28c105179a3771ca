# api/admin_report.py
"""
Admin report-schema API: draft editing, publishing and revert
"""

import logging

from flask import Blueprint, current_app, jsonify, request

from api.helpers import acting_username, audit, read_json
from core.errors import NotFoundError
from core.report_schema import SCHEMA_VERSION, SUPPORTED_LANGUAGES, ReportSchema
from core.template_engine import render_preview
from middleware.security import require_auth

admin_report_bp = Blueprint('admin_report', __name__)
logger = logging.getLogger(__name__)


def _optional(loader):
    try:
        return loader().to_dict()
    except NotFoundError:
        return None


@admin_report_bp.route('/api/admin/report', methods=['GET'])
@require_auth
def get_schemas():
    store = current_app.schema_store
    return jsonify({
        'draft': _optional(store.draft_schema),
        'live': _optional(store.live_schema),
        'supportedLanguages': SUPPORTED_LANGUAGES,
    })


@admin_report_bp.route('/api/admin/report', methods=['PUT'])
@require_auth
def update_draft():
    """Replace the draft with a complete schema document"""
    schema = ReportSchema.from_dict(read_json())
    # Stored documents are always current-version
    schema.schema_version = SCHEMA_VERSION

    saved = current_app.schema_store.save_draft(schema, acting_username())
    audit('schema_draft_saved', {'fields': len(saved.fields), 'languages': saved.languages})
    return jsonify({'schema': saved.to_dict()})


@admin_report_bp.route('/api/admin/report/apply', methods=['POST'])
@require_auth
def apply_draft():
    live = current_app.schema_store.promote_draft(acting_username())
    audit('schema_published')
    return jsonify({'schema': live.to_dict()})


@admin_report_bp.route('/api/admin/report/revert', methods=['POST'])
@require_auth
def revert_draft():
    draft = current_app.schema_store.revert_draft_to_live(acting_username())
    audit('schema_draft_reverted')
    return jsonify({'schema': draft.to_dict()})


@admin_report_bp.route('/api/admin/report/preview', methods=['GET'])
@require_auth
def preview_email():
    source = request.args.get('source', 'draft')
    store = current_app.schema_store
    schema = store.live_schema() if source == 'live' else store.draft_schema()
    lang = schema.resolve_lang(request.args.get('lang'))
    return jsonify({
        'lang': lang,
        'subject': current_app.mailer.snapshot().subject,
        'body': render_preview(schema, lang),
    })
