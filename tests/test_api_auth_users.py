from urllib.parse import parse_qs, urlparse

import pytest
from sqlalchemy import select, update

from core.database_models import AdminUser
from core.errors import QueueFullError, StorageError

from conftest import ADMIN_EMAIL, ADMIN_PASSWORD

NEW_PASSWORD = 'another-long-password'


def _token(url):
    return parse_qs(urlparse(url).query)['token'][0]


@pytest.fixture
def invite(admin_client, mailer):
    def _invite(email, role='admin'):
        response = admin_client.post('/api/admin/users', json={'email': email, 'role': role})
        assert response.status_code == 201
        return response.get_json()['inviteUrl']
    return _invite


def test_login_with_email_or_username(app, client, super_admin, login):
    assert login(client, ADMIN_EMAIL, 'wrong password!').status_code == 401
    assert login(client, 'nobody@example.org').status_code == 401

    response = login(client, 'root')
    assert response.status_code == 200
    assert response.get_json()['user']['role'] == 'super_admin'
    assert client.get('/api/admin/me').get_json()['user']['email'] == ADMIN_EMAIL


def test_login_requires_both_fields(client):
    assert client.post('/api/admin/login', json={'identifier': 'root'}).status_code == 400
    assert client.post('/api/admin/login', json={'identifier': 'root', 'password': 'x',
                                                 'remember': True}).status_code == 400


def test_logout_ends_every_session(app, admin_client, login):
    other = app.test_client()
    assert login(other, ADMIN_EMAIL).status_code == 200

    assert admin_client.post('/api/admin/logout').status_code == 200
    assert admin_client.get('/api/admin/me').status_code == 401
    assert other.get('/api/admin/me').status_code == 401


def test_password_change_logs_out(admin_client, client, login):
    response = admin_client.post('/api/admin/password', json={
        'currentPassword': 'not the password', 'newPassword': NEW_PASSWORD})
    assert response.status_code == 400

    response = admin_client.post('/api/admin/password', json={
        'currentPassword': ADMIN_PASSWORD, 'newPassword': 'short'})
    assert response.status_code == 400

    response = admin_client.post('/api/admin/password', json={
        'currentPassword': ADMIN_PASSWORD, 'newPassword': NEW_PASSWORD})
    assert response.status_code == 200
    assert admin_client.get('/api/admin/me').status_code == 401
    assert login(client, ADMIN_EMAIL).status_code == 401
    assert login(client, ADMIN_EMAIL, NEW_PASSWORD).status_code == 200


def test_email_is_not_stored_in_clear(app, super_admin):
    with app.db.session_factory() as session:
        row = session.execute(select(AdminUser)).scalar_one()
    assert ADMIN_EMAIL.encode() not in row.email_encrypted
    assert row.email_hmac != ADMIN_EMAIL
    assert row.password_hash.startswith('$2')


def test_unreadable_email_is_a_storage_error(app, super_admin):
    with app.db.session_factory.begin() as session:
        session.execute(update(AdminUser).where(AdminUser.id == super_admin.id)
                        .values(email_encrypted=b'\x00' * 40))

    with pytest.raises(StorageError, match='unreadable'):
        app.user_store.get_by_id(super_admin.id)
    with pytest.raises(StorageError):
        app.user_store.list_users()


def test_invite_flow(app, client, invite, mailer, login):
    url = invite('new.admin@example.org')
    assert url.startswith('https://firewatch.example.org/accept-invite?token=')
    assert mailer.invites == [('new.admin@example.org', url)]

    token = _token(url)
    response = client.post('/api/accept-invite', json={'token': token, 'password': NEW_PASSWORD})
    assert response.status_code == 201
    assert response.get_json()['user']['role'] == 'admin'

    # Single use
    response = client.post('/api/accept-invite', json={'token': token, 'password': NEW_PASSWORD})
    assert response.status_code == 400

    newcomer = app.test_client()
    assert login(newcomer, 'new.admin@example.org', NEW_PASSWORD).status_code == 200


def test_invite_page_renders(client):
    response = client.get('/accept-invite?token=abc')
    assert response.status_code == 200
    assert b'value="abc"' in response.data


def test_invite_for_existing_user_rejected(admin_client):
    response = admin_client.post('/api/admin/users', json={'email': ADMIN_EMAIL, 'role': 'admin'})
    assert response.status_code == 400


def test_invite_still_created_when_email_fails(admin_client, mailer):
    mailer.fail_with = QueueFullError("mailer: queue full, message not queued")
    response = admin_client.post('/api/admin/users', json={'email': 'x@example.org', 'role': 'admin'})
    assert response.status_code == 201
    assert response.get_json()['emailQueued'] is False


def test_forgot_and_reset_password(app, client, super_admin, mailer, login):
    response = client.post('/api/admin/forgot-password', json={'email': 'unknown@example.org'})
    assert response.status_code == 202
    assert mailer.resets == []

    response = client.post('/api/admin/forgot-password', json={'email': ADMIN_EMAIL})
    assert response.status_code == 202
    to, url = mailer.resets[0]
    assert to == ADMIN_EMAIL
    assert '/reset-password?token=' in url

    response = client.post('/api/admin/reset-password', json={'token': _token(url), 'password': NEW_PASSWORD})
    assert response.status_code == 200
    assert login(client, ADMIN_EMAIL).status_code == 401
    assert login(client, ADMIN_EMAIL, NEW_PASSWORD).status_code == 200

    response = client.post('/api/admin/reset-password', json={'token': _token(url), 'password': NEW_PASSWORD})
    assert response.status_code == 400


def test_reset_invalidates_existing_sessions(app, admin_client, mailer):
    anonymous = app.test_client()
    anonymous.post('/api/admin/forgot-password', json={'email': ADMIN_EMAIL})
    token = _token(mailer.resets[0][1])
    anonymous.post('/api/admin/reset-password', json={'token': token, 'password': NEW_PASSWORD})

    assert admin_client.get('/api/admin/me').status_code == 401


def test_users_require_super_admin(app, invite, login):
    accept = app.test_client()
    accept.post('/api/accept-invite', json={'token': _token(invite('plain@example.org')), 'password': NEW_PASSWORD})

    plain = app.test_client()
    assert login(plain, 'plain@example.org', NEW_PASSWORD).status_code == 200
    assert plain.get('/api/admin/users').status_code == 403
    assert plain.get('/api/admin/settings').status_code == 200


def test_last_super_admin_is_protected(admin_client, super_admin):
    response = admin_client.put(f'/api/admin/users/{super_admin.id}', json={'role': 'admin'})
    assert response.status_code == 400
    response = admin_client.put(f'/api/admin/users/{super_admin.id}', json={'status': 'inactive'})
    assert response.status_code == 400
    response = admin_client.delete(f'/api/admin/users/{super_admin.id}')
    assert response.status_code == 400
    assert 'own account' in response.get_json()['message']


def test_update_and_delete_user(app, admin_client, invite, login):
    app.test_client().post('/api/accept-invite', json={
        'token': _token(invite('second@example.org')), 'password': NEW_PASSWORD})
    second_id = app.user_store.get_by_email('second@example.org').id

    second = app.test_client()
    assert login(second, 'second@example.org', NEW_PASSWORD).status_code == 200

    response = admin_client.put(f'/api/admin/users/{second_id}', json={'role': 'super_admin'})
    assert response.get_json()['user']['role'] == 'super_admin'
    assert response.status_code == 200
    assert admin_client.put(f'/api/admin/users/{second_id}', json={'role': 'owner'}).status_code == 400

    users = admin_client.get('/api/admin/users').get_json()['users']
    assert {u['email'] for u in users} == {ADMIN_EMAIL, 'second@example.org'}

    assert admin_client.delete(f'/api/admin/users/{second_id}').status_code == 200
    assert second.get('/api/admin/me').status_code == 401
    assert admin_client.delete(f'/api/admin/users/{second_id}').status_code == 404


def test_deactivated_user_is_logged_out(app, admin_client, invite, login):
    app.test_client().post('/api/accept-invite', json={
        'token': _token(invite('third@example.org')), 'password': NEW_PASSWORD})
    third_id = app.user_store.get_by_email('third@example.org').id
    third = app.test_client()
    login(third, 'third@example.org', NEW_PASSWORD)

    admin_client.put(f'/api/admin/users/{third_id}', json={'status': 'inactive'})
    assert third.get('/api/admin/me').status_code == 401
    assert login(app.test_client(), 'third@example.org', NEW_PASSWORD).status_code == 401
