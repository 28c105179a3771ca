import pytest

from core.errors import ValidationError
from core.report_schema import (
    DEFAULT_LANGUAGE, SCHEMA_VERSION, Field, FieldLocale, PageLocale, ReportSchema,
    default_salute_schema,
)


def _two_language_schema():
    return ReportSchema(
        languages=['en', 'es'],
        page={
            'en': PageLocale(title='Report', subtitle='Anonymous', submit_button_label='Send'),
            'es': PageLocale(title='Informe'),
        },
        fields=[
            Field(id='what', order=1, required=True, i18n={
                'en': FieldLocale(label='What', placeholder='Describe'),
                'es': FieldLocale(label='Qué', order=2),
            }),
            Field(id='where', order=2, i18n={
                'en': FieldLocale(label='Where'),
                'es': FieldLocale(order=1),
            }),
        ],
        email_templates={'en': 'What: {{what}}', 'es': 'Qué: {{what}}'},
    )


def test_default_schema_is_salute():
    schema = default_salute_schema().validate()
    assert schema.schema_version == SCHEMA_VERSION
    assert [f.locale(DEFAULT_LANGUAGE).label for f in schema.sorted_fields('en')] == [
        'Size', 'Activity', 'Location', 'Unit', 'Time', 'Equipment']
    required = {f.id for f in schema.fields if f.required}
    assert required == {'size', 'activity', 'location', 'time'}
    assert '{{activity}}' in schema.email_template()


def test_display_order_uses_locale_override():
    schema = _two_language_schema()
    assert [f.id for f in schema.sorted_fields('en')] == ['what', 'where']
    assert [f.id for f in schema.sorted_fields('es')] == ['where', 'what']


def test_locale_falls_back_to_default_language():
    schema = _two_language_schema()
    what = schema.field_by_id('what')
    assert what.locale('es').label == 'Qué'
    assert what.locale('es').placeholder == 'Describe'
    assert schema.field_by_id('where').locale('es').label == 'Where'
    assert schema.field_by_id('where').locale('fr').label == 'Where'


def test_page_and_template_fall_back():
    schema = _two_language_schema()
    page = schema.page_locale('es')
    assert page.title == 'Informe'
    assert page.subtitle == 'Anonymous'
    assert schema.email_template('fr') == 'What: {{what}}'
    assert schema.resolve_lang('fr') == 'en'
    assert schema.resolve_lang('es') == 'es'


def test_dict_round_trip_keeps_content():
    schema = _two_language_schema()
    decoded = ReportSchema.from_dict(schema.to_dict())
    assert decoded.content_dict() == schema.content_dict()


def test_strict_decode_rejects_unknown_keys():
    data = default_salute_schema().to_dict()
    data['theme'] = 'dark'
    with pytest.raises(ValidationError, match='theme'):
        ReportSchema.from_dict(data)

    data = default_salute_schema().to_dict()
    data['fields'][0]['i18n']['en']['tooltip'] = 'x'
    with pytest.raises(ValidationError, match='tooltip'):
        ReportSchema.from_dict(data)


def test_strict_decode_rejects_wrong_types():
    data = default_salute_schema().to_dict()
    data['fields'][0]['required'] = 'yes'
    with pytest.raises(ValidationError):
        ReportSchema.from_dict(data)


def test_version_one_document_is_migrated():
    schema = ReportSchema.from_dict({
        'schemaVersion': 1,
        'page': {'title': 'Old form', 'subtitle': '', 'submitButtonLabel': 'Go'},
        'fields': [
            {'id': 'activity', 'type': 'textarea', 'order': 1, 'label': 'Activity', 'required': True},
        ],
        'emailTemplate': 'Activity: {{activity}}',
    })
    assert schema.schema_version == SCHEMA_VERSION
    assert schema.languages == ['en']
    assert schema.page_locale('en').title == 'Old form'
    assert schema.field_by_id('activity').locale('en').label == 'Activity'
    assert schema.email_template() == 'Activity: {{activity}}'


@pytest.mark.parametrize('mutate, message', [
    (lambda s: s.fields.append(Field(id='size')), 'duplicate field id'),
    (lambda s: s.fields.append(Field(id='bad id!')), 'invalid field id'),
    (lambda s: s.fields.append(Field(id='x', type='checkbox')), 'unknown type'),
    (lambda s: s.fields.append(Field(id='x', type='select')), 'at least one option'),
    (lambda s: s.languages.clear(), 'at least one language'),
    (lambda s: s.languages.append('xx'), 'unsupported language'),
])
def test_validate_rejects(mutate, message):
    schema = default_salute_schema()
    mutate(schema)
    with pytest.raises(ValidationError, match=message):
        schema.validate()
