# core/template_engine.py
"""
Report Template Engine
Renders the plain-text report email from a schema template and the
submitted field values, and sanitizes those values on the way in.

Templates use ``{{ field_id }}`` tokens only. There are no expressions,
filters or control blocks, so administrator-authored templates cannot
execute anything.
"""

import html
import re
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Set

import bleach

from core.errors import ValidationError
from core.report_schema import ReportSchema

# Configure logging
logger = logging.getLogger(__name__)

TOKEN_PATTERN = re.compile(r'\{\{\s*([A-Za-z0-9_\-]+)\s*\}\}')
MAX_VALUE_LENGTH = 10000
MAX_TEMPLATE_SIZE = 64 * 1024


@dataclass
class TemplateRenderResult:
    """Result of template rendering operation"""
    text: str
    variables_used: Set[str] = field(default_factory=set)
    variables_missing: Set[str] = field(default_factory=set)


def render_template(template: str, values: Mapping[str, Any]) -> str:
    """
    Substitute ``{{id}}`` tokens; tokens without a value render as ""

    >>> render_template("Hello {{name}}", {"name": "Ana"})
    'Hello Ana'
    """
    return render_template_detailed(template, values).text


def render_template_detailed(template: str, values: Mapping[str, Any]) -> TemplateRenderResult:
    if template is None:
        template = ''
    if len(template.encode('utf-8')) > MAX_TEMPLATE_SIZE:
        raise ValidationError(f"Template size exceeds limit of {MAX_TEMPLATE_SIZE} bytes")

    result = TemplateRenderResult(text='')

    def substitute(match: re.Match) -> str:
        name = match.group(1)
        result.variables_used.add(name)
        value = values.get(name)
        if value is None:
            result.variables_missing.add(name)
            return ''
        return str(value)

    result.text = TOKEN_PATTERN.sub(substitute, template)
    return result


def render_preview(schema: ReportSchema, lang: str = None) -> str:
    """Render the email template with each field's placeholder, or ``[label]`` when it has none"""
    lang = schema.resolve_lang(lang)
    values = {}
    for f in schema.fields:
        locale = f.locale(lang, schema.default_lang)
        values[f.id] = locale.placeholder or f"[{locale.label or f.id}]"
    return render_template(schema.email_template(lang), values)


def sanitize_submission_value(value: Any) -> str:
    """Strip markup, trim and cap a submitted value"""
    if value is None:
        return ''
    if not isinstance(value, str):
        raise ValidationError("field values must be strings")
    cleaned = bleach.clean(value, tags=[], attributes={}, strip=True, strip_comments=True)
    # bleach escapes the characters it leaves behind; the email body is plain text
    cleaned = html.unescape(cleaned)
    return cleaned.strip()[:MAX_VALUE_LENGTH]


def build_report_values(schema: ReportSchema, raw_fields: Any) -> Dict[str, str]:
    """
    Sanitize a submission against ``schema``.

    Unknown field ids are dropped. A missing or empty required field, or a
    select value outside its options, raises ValidationError.
    """
    if raw_fields is None:
        raw_fields = {}
    if not isinstance(raw_fields, dict):
        raise ValidationError("fields must be an object")

    values = {}
    for f in schema.fields:
        value = sanitize_submission_value(raw_fields.get(f.id))
        if f.required and not value:
            raise ValidationError(f"missing required field: {f.id}")
        if f.type == 'select' and value and value not in f.options:
            raise ValidationError(f"invalid option for field: {f.id}")
        values[f.id] = value
    return values
