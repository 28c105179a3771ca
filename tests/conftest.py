# tests/conftest.py
"""
Shared fixtures: an app on in-memory SQLite with fixed keys, a recording
mailer in place of the SMTP queue and a throwaway PGP key pair.
"""

import pytest
import pgpy
from pgpy.constants import (
    CompressionAlgorithm, HashAlgorithm, KeyFlags, PubKeyAlgorithm, SymmetricKeyAlgorithm
)

from app import create_app
from core.crypto import Crypter
from core.database import init_database
from core.errors import SMTPConfigurationError
from core.settings_store import AppSettings
from services.mailer import Mailer, MailerConfig

SETTINGS_KEY = b'0123456789abcdef0123456789abcdef'
HMAC_KEY = b'fedcba9876543210fedcba9876543210'
ADMIN_EMAIL = 'root@example.org'
ADMIN_PASSWORD = 'correct-horse-battery'
REACHABLE_HOST = 'smtp.example.org'


class RecordingMailer:
    """Stands in for the live EmailQueue; records what would have been sent"""

    def __init__(self):
        self.config = MailerConfig()
        self.reports = []
        self.invites = []
        self.resets = []
        self.fail_with = None
        self.stopped = False

    def _check(self):
        if self.fail_with is not None:
            raise self.fail_with

    def send_report(self, body):
        self._check()
        self.reports.append(body)

    def send_invite(self, to, url):
        self._check()
        self.invites.append((to, url))

    def send_password_reset(self, to, url):
        self._check()
        self.resets.append((to, url))

    def snapshot(self):
        return self.config

    def reconfigure(self, config):
        self.config = config

    def stop(self, timeout=None):
        self.stopped = True


class ProbeMailer(Mailer):
    """Real mailer whose SMTP handshake is simulated: only listed hosts answer"""

    def __init__(self, config, send_fn=None, reachable=()):
        super().__init__(config, send_fn=send_fn)
        self.reachable = reachable

    def ping(self):
        config = self.snapshot()
        if config.host not in self.reachable:
            raise SMTPConfigurationError(
                f"mailer ping: dial {config.host}:{config.port}: connection refused")


@pytest.fixture(scope='session')
def pgp_keypair():
    key = pgpy.PGPKey.new(PubKeyAlgorithm.RSAEncryptOrSign, 2048)
    uid = pgpy.PGPUID.new('Firewatch Reports', email='reports@example.org')
    key.add_uid(
        uid,
        usage={KeyFlags.Sign, KeyFlags.EncryptCommunications, KeyFlags.EncryptStorage},
        hashes=[HashAlgorithm.SHA256],
        ciphers=[SymmetricKeyAlgorithm.AES256],
        compression=[CompressionAlgorithm.Uncompressed],
    )
    return key


@pytest.fixture(scope='session')
def public_key(pgp_keypair):
    return str(pgp_keypair.pubkey)


@pytest.fixture(scope='session')
def decrypt(pgp_keypair):
    def _decrypt(armored):
        message = pgp_keypair.decrypt(pgpy.PGPMessage.from_blob(armored)).message
        if isinstance(message, (bytes, bytearray)):
            message = message.decode('utf-8')
        return message
    return _decrypt


@pytest.fixture
def db():
    database = init_database('sqlite://')
    yield database
    database.dispose()


@pytest.fixture
def crypter():
    return Crypter(SETTINGS_KEY)


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def reachable_hosts():
    return {REACHABLE_HOST}


@pytest.fixture
def sent_messages():
    return []


@pytest.fixture
def mailer_factory(reachable_hosts, sent_messages):
    def factory(settings):
        return ProbeMailer(MailerConfig.from_settings(settings),
                           send_fn=lambda config, message: sent_messages.append(message),
                           reachable=reachable_hosts)
    return factory


@pytest.fixture
def app(mailer, mailer_factory):
    app = create_app('testing', overrides={
        'SETTINGS_ENCRYPTION_KEY': SETTINGS_KEY,
        'EMAIL_HMAC_KEY': HMAC_KEY,
        'SETTINGS_ENVIRON': {},
        'SEED_ADMIN_EMAIL': '',
        'SEED_ADMIN_PASSWORD': '',
        'ADMIN_INVITE_BASE_URL': 'https://firewatch.example.org',
    }, mailer=mailer, mailer_factory=mailer_factory)
    yield app
    app.db.dispose()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def verified_settings(app, public_key):
    """Settings that pass the maintenance guard"""
    settings = AppSettings(
        destination_email='reports@example.org',
        smtp_host=REACHABLE_HOST,
        smtp_user='mailer',
        smtp_pass='secret',
        smtp_from_address='noreply@example.org',
        maintenance_mode=False,
        pgp_key=public_key,
        smtp_verified=True,
        pgp_verified=True,
    )
    app.settings_store.save(settings)
    return settings


@pytest.fixture
def super_admin(app):
    return app.user_store.create_user(ADMIN_EMAIL, ADMIN_PASSWORD, 'super_admin')


@pytest.fixture
def login():
    def _login(client, identifier, password=ADMIN_PASSWORD):
        return client.post('/api/admin/login', json={'identifier': identifier, 'password': password})
    return _login


@pytest.fixture
def admin_client(client, super_admin, login):
    response = login(client, ADMIN_EMAIL)
    assert response.status_code == 200
    return client
