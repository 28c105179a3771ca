from flask import Blueprint, current_app, render_template, request

from core.errors import NotFoundError
from core.report_schema import SUPPORTED_LANGUAGES
from middleware.security import current_session_user_id, maintenance_guard, maintenance_response

public_bp = Blueprint('public', __name__)


@public_bp.route('/')
@maintenance_guard
def report_form():
    try:
        schema = current_app.schema_store.live_schema()
    except NotFoundError:
        return maintenance_response()

    lang = schema.resolve_lang(request.args.get('lang'))
    fields = [
        {
            'id': f.id,
            'type': f.type,
            'required': f.required,
            'options': f.options,
            'locale': f.locale(lang, schema.default_lang),
        }
        for f in schema.sorted_fields(lang)
    ]
    languages = [info for info in SUPPORTED_LANGUAGES if info['code'] in schema.languages]

    return render_template(
        'report_form.html',
        page=schema.page_locale(lang),
        fields=fields,
        languages=languages,
        current_lang=lang,
        schema_version=schema.schema_version,
        is_admin=current_session_user_id() is not None,
    )


@public_bp.route('/accept-invite')
def accept_invite_page():
    return render_template('token_password.html',
                           title='Accept invitation',
                           action='/api/accept-invite',
                           token=request.args.get('token', ''))


@public_bp.route('/reset-password')
def reset_password_page():
    return render_template('token_password.html',
                           title='Reset password',
                           action='/api/admin/reset-password',
                           token=request.args.get('token', ''))
