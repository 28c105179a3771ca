def _draft(client):
    return client.get('/api/admin/report').get_json()['draft']


def test_requires_authentication(client):
    assert client.get('/api/admin/report').status_code == 401
    assert client.post('/api/admin/report/apply').status_code == 401


def test_get_returns_draft_and_live(admin_client):
    body = admin_client.get('/api/admin/report').get_json()
    assert body['draft']['page']['en']['title'] == 'Community Incident Report'
    assert body['live']['updatedBy'] == 'system'
    assert {'code': 'en', 'name': 'English'} in body['supportedLanguages']


def test_edit_then_publish(admin_client, verified_settings):
    draft = _draft(admin_client)
    draft['page']['en']['title'] = 'Neighbourhood Watch'

    response = admin_client.put('/api/admin/report', json=draft)
    assert response.status_code == 200
    saved = response.get_json()['schema']
    assert saved['schemaVersion'] == 2
    assert saved['updatedBy'] == 'root'

    # Not public until applied
    live = admin_client.get('/api/report').get_json()['schema']
    assert live['page']['en']['title'] == 'Community Incident Report'

    assert admin_client.post('/api/admin/report/apply').status_code == 200
    live = admin_client.get('/api/report').get_json()['schema']
    assert live['page']['en']['title'] == 'Neighbourhood Watch'

    body = admin_client.get('/api/admin/report').get_json()
    assert body['draft']['page'] == body['live']['page']
    assert body['draft']['fields'] == body['live']['fields']


def test_strict_draft_validation(admin_client):
    draft = _draft(admin_client)
    draft['footer'] = 'x'
    assert admin_client.put('/api/admin/report', json=draft).status_code == 400

    draft = _draft(admin_client)
    draft['fields'].append(dict(draft['fields'][0]))
    response = admin_client.put('/api/admin/report', json=draft)
    assert response.status_code == 400
    assert 'duplicate field id' in response.get_json()['message']


def test_revert_discards_draft_edits(admin_client):
    draft = _draft(admin_client)
    draft['fields'] = draft['fields'][:2]
    admin_client.put('/api/admin/report', json=draft)
    assert len(_draft(admin_client)['fields']) == 2

    response = admin_client.post('/api/admin/report/revert')
    assert response.status_code == 200
    assert len(_draft(admin_client)['fields']) == 6


def test_add_language_and_preview(admin_client):
    draft = _draft(admin_client)
    draft['languages'] = ['en', 'es']
    draft['page']['es'] = {'title': 'Informe comunitario', 'subtitle': '', 'submitButtonLabel': 'Enviar'}
    draft['fields'][1]['i18n']['es'] = {'label': 'Actividad', 'description': '', 'placeholder': 'Un grupo...'}
    draft['emailTemplates']['es'] = 'Actividad: {{activity}}'
    assert admin_client.put('/api/admin/report', json=draft).status_code == 200

    preview = admin_client.get('/api/admin/report/preview?lang=es').get_json()
    assert preview['lang'] == 'es'
    assert preview['body'] == 'Actividad: Un grupo...'

    preview = admin_client.get('/api/admin/report/preview?lang=fr').get_json()
    assert preview['lang'] == 'en'
    assert 'Approximately 10 individuals...' in preview['body']


def test_preview_of_live(admin_client):
    preview = admin_client.get('/api/admin/report/preview?source=live').get_json()
    assert 'A group was seen...' in preview['body']
    assert preview['subject']
