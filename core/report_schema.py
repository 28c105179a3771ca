# core/report_schema.py
"""
Report form definition: languages, page texts, typed fields and the
outbound email template(s).

Documents are stored as JSON. Version 1 documents carry one flat set of
texts and a single ``emailTemplate``; version 2 documents carry per-language
``i18n`` maps. Version 1 input is migrated to version 2 on load.
"""

import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from core.errors import ValidationError

SCHEMA_VERSION = 2
DEFAULT_LANGUAGE = 'en'

FIELD_TYPES = ('text', 'textarea', 'select', 'accordion')
FIELD_ID_PATTERN = re.compile(r'^[A-Za-z0-9_\-]{1,64}$')
MAX_FIELDS = 50

SUPPORTED_LANGUAGES = [
    {'code': 'en', 'name': 'English'},
    {'code': 'es', 'name': 'Español'},
    {'code': 'fr', 'name': 'Français'},
    {'code': 'pt', 'name': 'Português'},
    {'code': 'vi', 'name': 'Tiếng Việt'},
    {'code': 'zh', 'name': '中文'},
    {'code': 'ar', 'name': 'العربية'},
]
SUPPORTED_LANGUAGE_CODES = {lang['code'] for lang in SUPPORTED_LANGUAGES}

_SCHEMA_KEYS = {'schemaVersion', 'languages', 'page', 'fields', 'emailTemplates', 'updatedAt', 'updatedBy'}
_FIELD_KEYS = {'id', 'type', 'order', 'required', 'options', 'i18n'}
_FIELD_LOCALE_KEYS = {'label', 'description', 'placeholder', 'order'}
_PAGE_LOCALE_KEYS = {'title', 'subtitle', 'submitButtonLabel'}

# Version 1 shapes
_V1_SCHEMA_KEYS = {'schemaVersion', 'page', 'fields', 'emailTemplate', 'updatedAt', 'updatedBy'}
_V1_FIELD_KEYS = {'id', 'type', 'order', 'label', 'description', 'placeholder', 'required', 'options'}


def _check_keys(data: Any, allowed: set, where: str) -> Dict[str, Any]:
    if not isinstance(data, dict):
        raise ValidationError(f"{where} must be an object")
    unknown = set(data) - allowed
    if unknown:
        raise ValidationError(f"unknown field(s) in {where}: {', '.join(sorted(unknown))}")
    return data


def _str(value: Any, where: str) -> str:
    if value is None:
        return ''
    if not isinstance(value, str):
        raise ValidationError(f"{where} must be a string")
    return value


def _int(value: Any, where: str) -> int:
    if value is None:
        return 0
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{where} must be an integer")
    return value


def _bool(value: Any, where: str) -> bool:
    if value is None:
        return False
    if not isinstance(value, bool):
        raise ValidationError(f"{where} must be a boolean")
    return value


def _parse_time(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if not isinstance(value, str):
        raise ValidationError("updatedAt must be an RFC 3339 timestamp")
    try:
        parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError as e:
        raise ValidationError(f"updatedAt is not a valid timestamp: {value}") from e
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _format_time(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.replace(microsecond=0).isoformat() + 'Z'


@dataclass
class FieldLocale:
    label: str = ''
    description: str = ''
    placeholder: str = ''
    order: int = 0  # 0 means "use the field's global order"

    @classmethod
    def from_dict(cls, data: Any, where: str) -> 'FieldLocale':
        _check_keys(data, _FIELD_LOCALE_KEYS, where)
        return cls(
            label=_str(data.get('label'), f"{where}.label"),
            description=_str(data.get('description'), f"{where}.description"),
            placeholder=_str(data.get('placeholder'), f"{where}.placeholder"),
            order=_int(data.get('order'), f"{where}.order"),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'label': self.label,
            'description': self.description,
            'placeholder': self.placeholder,
        }
        if self.order:
            data['order'] = self.order
        return data


@dataclass
class PageLocale:
    title: str = ''
    subtitle: str = ''
    submit_button_label: str = ''

    @classmethod
    def from_dict(cls, data: Any, where: str) -> 'PageLocale':
        _check_keys(data, _PAGE_LOCALE_KEYS, where)
        return cls(
            title=_str(data.get('title'), f"{where}.title"),
            subtitle=_str(data.get('subtitle'), f"{where}.subtitle"),
            submit_button_label=_str(data.get('submitButtonLabel'), f"{where}.submitButtonLabel"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'title': self.title,
            'subtitle': self.subtitle,
            'submitButtonLabel': self.submit_button_label,
        }


@dataclass
class Field:
    id: str
    type: str = 'text'
    order: int = 0
    required: bool = False
    options: List[str] = field(default_factory=list)
    i18n: Dict[str, FieldLocale] = field(default_factory=dict)

    def display_order(self, lang: str) -> int:
        """Locale-specific order when set, otherwise the global order"""
        locale = self.i18n.get(lang)
        if locale is not None and locale.order != 0:
            return locale.order
        return self.order

    def locale(self, lang: str, default_lang: str = DEFAULT_LANGUAGE) -> FieldLocale:
        """Texts for ``lang``, each falling back to the default language, then empty"""
        requested = self.i18n.get(lang) or FieldLocale()
        fallback = self.i18n.get(default_lang) or FieldLocale()
        return FieldLocale(
            label=requested.label or fallback.label,
            description=requested.description or fallback.description,
            placeholder=requested.placeholder or fallback.placeholder,
            order=self.display_order(lang),
        )

    @classmethod
    def from_dict(cls, data: Any, where: str) -> 'Field':
        _check_keys(data, _FIELD_KEYS, where)
        i18n_raw = data.get('i18n') or {}
        if not isinstance(i18n_raw, dict):
            raise ValidationError(f"{where}.i18n must be an object")
        options = data.get('options') or []
        if not isinstance(options, list) or not all(isinstance(o, str) for o in options):
            raise ValidationError(f"{where}.options must be a list of strings")
        return cls(
            id=_str(data.get('id'), f"{where}.id"),
            type=_str(data.get('type'), f"{where}.type") or 'text',
            order=_int(data.get('order'), f"{where}.order"),
            required=_bool(data.get('required'), f"{where}.required"),
            options=list(options),
            i18n={
                lang: FieldLocale.from_dict(loc, f"{where}.i18n.{lang}")
                for lang, loc in i18n_raw.items()
            },
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'id': self.id,
            'type': self.type,
            'order': self.order,
            'required': self.required,
            'i18n': {lang: loc.to_dict() for lang, loc in self.i18n.items()},
        }
        if self.options:
            data['options'] = list(self.options)
        return data


@dataclass
class ReportSchema:
    """A complete report form definition"""
    languages: List[str] = field(default_factory=lambda: [DEFAULT_LANGUAGE])
    page: Dict[str, PageLocale] = field(default_factory=dict)
    fields: List[Field] = field(default_factory=list)
    email_templates: Dict[str, str] = field(default_factory=dict)
    schema_version: int = SCHEMA_VERSION
    updated_at: Optional[datetime] = None
    updated_by: str = ''

    @property
    def default_lang(self) -> str:
        return self.languages[0] if self.languages else DEFAULT_LANGUAGE

    def resolve_lang(self, lang: Optional[str]) -> str:
        return lang if lang in self.languages else self.default_lang

    def page_locale(self, lang: str) -> PageLocale:
        requested = self.page.get(lang) or PageLocale()
        fallback = self.page.get(self.default_lang) or PageLocale()
        return PageLocale(
            title=requested.title or fallback.title,
            subtitle=requested.subtitle or fallback.subtitle,
            submit_button_label=requested.submit_button_label or fallback.submit_button_label,
        )

    def email_template(self, lang: Optional[str] = None) -> str:
        lang = lang or self.default_lang
        return self.email_templates.get(lang) or self.email_templates.get(self.default_lang, '')

    def sorted_fields(self, lang: str) -> List[Field]:
        # sorted() is stable, so equal orders keep definition order
        return sorted(self.fields, key=lambda f: f.display_order(lang))

    def field_by_id(self, field_id: str) -> Optional[Field]:
        for f in self.fields:
            if f.id == field_id:
                return f
        return None

    def validate(self) -> 'ReportSchema':
        if not self.languages:
            raise ValidationError("schema must enable at least one language")
        if len(set(self.languages)) != len(self.languages):
            raise ValidationError("languages must not contain duplicates")
        for lang in self.languages:
            if lang not in SUPPORTED_LANGUAGE_CODES:
                raise ValidationError(f"unsupported language: {lang}")
        if len(self.fields) > MAX_FIELDS:
            raise ValidationError(f"schema may define at most {MAX_FIELDS} fields")

        seen = set()
        for f in self.fields:
            if not FIELD_ID_PATTERN.match(f.id or ''):
                raise ValidationError(f"invalid field id: {f.id!r}")
            if f.id in seen:
                raise ValidationError(f"duplicate field id: {f.id}")
            seen.add(f.id)
            if f.type not in FIELD_TYPES:
                raise ValidationError(f"field {f.id}: unknown type {f.type!r}")
            if f.type == 'select' and not f.options:
                raise ValidationError(f"field {f.id}: select fields need at least one option")
        return self

    def content_dict(self) -> Dict[str, Any]:
        """Everything except provenance"""
        return {
            'schemaVersion': self.schema_version,
            'languages': list(self.languages),
            'page': {lang: loc.to_dict() for lang, loc in self.page.items()},
            'fields': [f.to_dict() for f in self.fields],
            'emailTemplates': dict(self.email_templates),
        }

    def to_dict(self) -> Dict[str, Any]:
        data = self.content_dict()
        data['updatedAt'] = _format_time(self.updated_at)
        if self.updated_by:
            data['updatedBy'] = self.updated_by
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)

    @classmethod
    def from_dict(cls, data: Any) -> 'ReportSchema':
        """Strict decode; version 1 documents are migrated"""
        if not isinstance(data, dict):
            raise ValidationError("schema must be an object")
        if 'emailTemplate' in data or _int(data.get('schemaVersion'), 'schemaVersion') == 1:
            return cls._from_v1(data)

        _check_keys(data, _SCHEMA_KEYS, 'schema')
        languages = data.get('languages') or [DEFAULT_LANGUAGE]
        if not isinstance(languages, list) or not all(isinstance(l, str) for l in languages):
            raise ValidationError("languages must be a list of locale codes")
        page_raw = data.get('page') or {}
        if not isinstance(page_raw, dict):
            raise ValidationError("page must be an object")
        fields_raw = data.get('fields') or []
        if not isinstance(fields_raw, list):
            raise ValidationError("fields must be a list")
        templates = data.get('emailTemplates') or {}
        if not isinstance(templates, dict) or not all(isinstance(t, str) for t in templates.values()):
            raise ValidationError("emailTemplates must map locale codes to strings")

        return cls(
            schema_version=_int(data.get('schemaVersion'), 'schemaVersion') or SCHEMA_VERSION,
            languages=list(languages),
            page={lang: PageLocale.from_dict(loc, f"page.{lang}") for lang, loc in page_raw.items()},
            fields=[Field.from_dict(f, f"fields[{i}]") for i, f in enumerate(fields_raw)],
            email_templates=dict(templates),
            updated_at=_parse_time(data.get('updatedAt')),
            updated_by=_str(data.get('updatedBy'), 'updatedBy'),
        )

    @classmethod
    def _from_v1(cls, data: Dict[str, Any]) -> 'ReportSchema':
        _check_keys(data, _V1_SCHEMA_KEYS, 'schema')
        lang = DEFAULT_LANGUAGE
        fields = []
        for i, raw in enumerate(data.get('fields') or []):
            where = f"fields[{i}]"
            _check_keys(raw, _V1_FIELD_KEYS, where)
            options = raw.get('options') or []
            if not isinstance(options, list):
                raise ValidationError(f"{where}.options must be a list of strings")
            fields.append(Field(
                id=_str(raw.get('id'), f"{where}.id"),
                type=_str(raw.get('type'), f"{where}.type") or 'text',
                order=_int(raw.get('order'), f"{where}.order"),
                required=_bool(raw.get('required'), f"{where}.required"),
                options=list(options),
                i18n={lang: FieldLocale(
                    label=_str(raw.get('label'), f"{where}.label"),
                    description=_str(raw.get('description'), f"{where}.description"),
                    placeholder=_str(raw.get('placeholder'), f"{where}.placeholder"),
                )},
            ))
        return cls(
            schema_version=SCHEMA_VERSION,
            languages=[lang],
            page={lang: PageLocale.from_dict(data.get('page') or {}, 'page')},
            fields=fields,
            email_templates={lang: _str(data.get('emailTemplate'), 'emailTemplate')},
            updated_at=_parse_time(data.get('updatedAt')),
            updated_by=_str(data.get('updatedBy'), 'updatedBy'),
        )

    @classmethod
    def from_json(cls, raw: str) -> 'ReportSchema':
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"schema is not valid JSON: {e}") from e
        return cls.from_dict(data)


def _salute_field(field_id: str, order: int, label: str, description: str,
                  placeholder: str, required: bool) -> Field:
    return Field(
        id=field_id,
        type='text',
        order=order,
        required=required,
        i18n={DEFAULT_LANGUAGE: FieldLocale(label=label, description=description, placeholder=placeholder)},
    )


DEFAULT_EMAIL_TEMPLATE = (
    "New Community Report\n\n"
    "Size:\n{{size}}\n\n"
    "Activity:\n{{activity}}\n\n"
    "Location:\n{{location}}\n\n"
    "Unit:\n{{unit}}\n\n"
    "Time:\n{{time}}\n\n"
    "Equipment:\n{{equipment}}\n\n"
    "---\nThis report was submitted anonymously."
)


def default_salute_schema() -> ReportSchema:
    """The built-in SALUTE form used to seed an empty store"""
    return ReportSchema(
        schema_version=SCHEMA_VERSION,
        languages=[DEFAULT_LANGUAGE],
        page={DEFAULT_LANGUAGE: PageLocale(
            title="Community Incident Report",
            subtitle="All submissions are anonymous. No identifying information is collected.",
            submit_button_label="Submit Report",
        )},
        fields=[
            _salute_field('size', 1, 'Size', "Describe the number of people or scale of the incident.",
                          "Approximately 10 individuals...", True),
            _salute_field('activity', 2, 'Activity', "What was happening? Describe the activity or behavior observed.",
                          "A group was seen...", True),
            _salute_field('location', 3, 'Location', "Where did this occur?",
                          "Near the east gate...", True),
            _salute_field('unit', 4, 'Unit', "Describe any uniforms, markings, or affiliations observed.",
                          "No visible markings...", False),
            _salute_field('time', 5, 'Time', "When did this occur?",
                          "Around 14:30 today...", True),
            _salute_field('equipment', 6, 'Equipment', "Describe any equipment, vehicles, or tools observed.",
                          "Two unmarked vehicles...", False),
        ],
        email_templates={DEFAULT_LANGUAGE: DEFAULT_EMAIL_TEMPLATE},
    )
