from datetime import timedelta

import pytest

from app import create_app
from core.errors import ConfigurationError, NotFoundError
from core.session_store import SessionStore

from conftest import HMAC_KEY, SETTINGS_KEY, RecordingMailer


def _overrides(**extra):
    values = {
        'SETTINGS_ENCRYPTION_KEY': SETTINGS_KEY,
        'EMAIL_HMAC_KEY': HMAC_KEY,
        'SETTINGS_ENVIRON': {},
        'SEED_ADMIN_EMAIL': '',
        'SEED_ADMIN_PASSWORD': '',
    }
    values.update(extra)
    return values


def test_wrong_key_length_fails_startup():
    with pytest.raises(ConfigurationError):
        create_app('testing', overrides=_overrides(SETTINGS_ENCRYPTION_KEY=b'too short'),
                   mailer=RecordingMailer())


def test_missing_key_fails_startup(monkeypatch):
    monkeypatch.delenv('EMAIL_HMAC_KEY', raising=False)
    monkeypatch.delenv('EMAIL_HMAC_KEY_FILE', raising=False)
    with pytest.raises(ConfigurationError, match='EMAIL_HMAC_KEY'):
        create_app('testing', overrides=_overrides(EMAIL_HMAC_KEY=None), mailer=RecordingMailer())


def test_seed_admin_created_once():
    app = create_app('testing', overrides=_overrides(
        SEED_ADMIN_EMAIL='first@example.org', SEED_ADMIN_PASSWORD='a-long-enough-password'),
        mailer=RecordingMailer())
    assert app.user_store.count() == 1
    assert app.user_store.get_by_email('first@example.org').is_super_admin
    assert app.user_store.seed_first_admin('other@example.org', 'a-long-enough-password') is False


def test_weak_seed_password_fails_startup():
    with pytest.raises(ConfigurationError, match='seed admin'):
        create_app('testing', overrides=_overrides(
            SEED_ADMIN_EMAIL='first@example.org', SEED_ADMIN_PASSWORD='short'),
            mailer=RecordingMailer())


def test_startup_does_not_verify(app, mailer):
    settings = app.settings_store.load()
    assert not settings.smtp_verified
    assert not settings.pgp_verified
    assert settings.maintenance_mode


def test_expired_sessions(app, super_admin):
    store = SessionStore(app.db, ttl=timedelta(seconds=-1))
    sid = store.create(super_admin.id)
    with pytest.raises(NotFoundError):
        store.get_user_id(sid)
    assert store.delete_expired() == 1
