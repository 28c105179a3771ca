from sqlalchemy import delete

from core.database_models import ReportSchemaRow
from core.errors import QueueFullError

VALID_FIELDS = {
    'size': 'About 10',
    'activity': 'Loading boxes',
    'location': 'East gate',
    'time': '14:30',
}


def test_public_form_in_maintenance_until_verified(client):
    response = client.get('/')
    assert response.status_code == 503
    assert b'Temporarily unavailable' in response.data

    response = client.get('/api/report')
    assert response.status_code == 503
    assert response.get_json()['error'] == 'Service Unavailable'


def test_public_form_renders_live_schema(client, verified_settings):
    response = client.get('/')
    assert response.status_code == 200
    assert b'Community Incident Report' in response.data
    assert b'name="activity"' in response.data
    assert response.headers['X-Frame-Options'] == 'DENY'
    assert 'Content-Security-Policy' in response.headers


def test_unknown_language_falls_back(client, verified_settings):
    response = client.get('/?lang=xx')
    assert response.status_code == 200
    assert b'Submit Report' in response.data


def test_live_schema_json(client, verified_settings):
    response = client.get('/api/report')
    assert response.status_code == 200
    schema = response.get_json()['schema']
    assert schema['schemaVersion'] == 2
    assert [f['id'] for f in schema['fields']][:2] == ['size', 'activity']
    assert response.headers['Cache-Control'] == 'no-store'


def test_submission_missing_required_field_is_not_sent(client, mailer, verified_settings):
    fields = dict(VALID_FIELDS)
    del fields['activity']
    response = client.post('/api/report', json={'schemaVersion': 2, 'fields': fields})

    assert response.status_code == 400
    assert response.get_json()['message'] == 'Bad Request'
    assert mailer.reports == []


def test_valid_submission_is_rendered_and_sent(client, mailer, verified_settings):
    response = client.post('/api/report', json={
        'schemaVersion': 2,
        'fields': dict(VALID_FIELDS, unit='<b>None</b>'),
    })

    assert response.status_code == 202
    assert response.get_json() == {'status': 'submitted'}
    assert len(mailer.reports) == 1
    body = mailer.reports[0]
    assert 'Activity:\nLoading boxes' in body
    assert 'Unit:\nNone' in body
    assert '{{' not in body
    assert b'Loading boxes' not in response.data


def test_delivery_failure_looks_like_success(client, mailer, verified_settings):
    mailer.fail_with = QueueFullError("mailer: queue full, message not queued")
    response = client.post('/api/report', json={'fields': VALID_FIELDS})
    assert response.status_code == 202
    assert response.get_json() == {'status': 'submitted'}


def test_unknown_submission_keys_rejected(client, mailer, verified_settings):
    response = client.post('/api/report', json={'fields': VALID_FIELDS, 'contact': 'me'})
    assert response.status_code == 400
    assert mailer.reports == []


def test_maintenance_mode_blocks_submission(app, client, mailer, verified_settings):
    verified_settings.maintenance_mode = True
    app.settings_store.save(verified_settings)

    response = client.post('/api/report', json={'fields': VALID_FIELDS})
    assert response.status_code == 503
    assert mailer.reports == []


def test_missing_live_schema_is_unavailable(app, client, verified_settings):
    with app.db.session_factory.begin() as session:
        session.execute(delete(ReportSchemaRow))

    assert client.get('/api/report').status_code == 503
    assert client.get('/').status_code == 503


def test_health(client):
    response = client.get('/api/health')
    assert response.status_code == 200
    body = response.get_json()
    assert body['status'] == 'healthy'
    assert 'timestamp' in body


def test_unknown_route_is_json_404(client):
    response = client.get('/api/nothing-here')
    assert response.status_code == 404
    assert response.get_json()['status_code'] == 404
