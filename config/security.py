# config/security.py
"""
Configuration for Firewatch deployments

Values come from the environment (optionally via a .env file). Secrets are
never generated as a fallback: a missing or malformed key is a
ConfigurationError raised to whoever is creating the app.
"""

import os
from datetime import timedelta
from typing import List, Mapping, Optional

from dotenv import load_dotenv

from core.crypto import KEY_SIZE
from core.errors import ConfigurationError

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None or value == '':
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    return int(value) if value else default


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    return float(value) if value else default


def _env_list(name: str) -> List[str]:
    return [item.strip() for item in os.environ.get(name, '').split(',') if item.strip()]


def load_secret_key(name: str, environ: Optional[Mapping[str, str]] = None) -> bytes:
    """
    Read a 32-byte key from ``NAME`` or from the file named by ``NAME_FILE``.

    One trailing newline is stripped from file contents. Anything other
    than exactly 32 bytes is rejected.
    """
    env = os.environ if environ is None else environ
    raw = env.get(name)
    path = env.get(f"{name}_FILE")

    if raw:
        key = raw.encode('utf-8')
    elif path:
        try:
            with open(path, 'rb') as fh:
                key = fh.read()
        except OSError as e:
            raise ConfigurationError(f"{name}_FILE could not be read: {e}") from e
        if key.endswith(b'\r\n'):
            key = key[:-2]
        elif key.endswith(b'\n'):
            key = key[:-1]
    else:
        raise ConfigurationError(f"{name} (or {name}_FILE) must be set")

    if len(key) != KEY_SIZE:
        raise ConfigurationError(f"{name} must be exactly {KEY_SIZE} bytes, got {len(key)}")
    return key


class BaseConfig:
    """Settings shared by every environment"""

    ENV = 'production'
    VERSION = os.environ.get('APP_VERSION', '1.0.0')
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')

    # Session cookie carries only the opaque server-side session id
    SESSION_COOKIE_NAME = 'firewatch_session'
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = 'Strict'
    PERMANENT_SESSION_LIFETIME = timedelta(hours=4)

    MAX_CONTENT_LENGTH = 1 * 1024 * 1024  # 1MB

    # Rate limiting
    RATELIMIT_STORAGE_URI = 'memory://'
    RATELIMIT_STRATEGY = 'fixed-window'
    RATELIMIT_HEADERS_ENABLED = True

    # Security headers
    SECURITY_HEADERS = {
        'X-Content-Type-Options': 'nosniff',
        'X-Frame-Options': 'DENY',
        'Strict-Transport-Security': 'max-age=31536000; includeSubDomains',
        'Referrer-Policy': 'no-referrer',
        'Permissions-Policy': 'camera=(), microphone=(), geolocation=()',
        'Content-Security-Policy': (
            "default-src 'self'; script-src 'self'; style-src 'self' 'unsafe-inline'; "
            "img-src 'self' data:; object-src 'none'; base-uri 'self'; form-action 'self'; "
            "frame-ancestors 'none'"
        ),
    }

    SHUTDOWN_GRACE_SECONDS = 30
    SEED_ADMIN_EMAIL = ''
    SEED_ADMIN_PASSWORD = ''

    def __init__(self):
        # Read at instantiation so tests and .env changes are honoured
        self.SECRET_KEY = os.environ.get('SESSION_SECRET', '')
        self.DATABASE_URL = os.environ.get('DATABASE_URL', 'sqlite:///firewatch.db')
        self.PORT = _env_int('PORT', 8080)
        self.ADMIN_INVITE_BASE_URL = os.environ.get('ADMIN_INVITE_BASE_URL', 'http://localhost:8080').rstrip('/')
        self.SESSION_COOKIE_SECURE = _env_bool('SECURE_COOKIES', self.ENV == 'production')
        self.CORS_TRUSTED_ORIGINS = _env_list('CORS_TRUSTED_ORIGINS')
        self.SEED_ADMIN_EMAIL = os.environ.get('SEED_ADMIN_EMAIL', '')
        self.SEED_ADMIN_PASSWORD = os.environ.get('SEED_ADMIN_PASSWORD', '')
        self.BCRYPT_ROUNDS = _env_int('BCRYPT_ROUNDS', 12)

        self.SMTP_TIMEOUT_SECONDS = _env_float('SMTP_TIMEOUT_SECONDS', 10.0)
        self.MAIL_QUEUE_SIZE = _env_int('MAIL_QUEUE_SIZE', 100)
        self.MAIL_QUEUE_RATE_SECONDS = _env_float('MAIL_QUEUE_RATE_SECONDS', 1.0)
        self.MAIL_QUEUE_MAX_RETRIES = _env_int('MAIL_QUEUE_MAX_RETRIES', 3)
        self.MAIL_QUEUE_BACKOFF_SECONDS = _env_float('MAIL_QUEUE_BACKOFF_SECONDS', 5.0)
        self.SHUTDOWN_GRACE_SECONDS = _env_int('SHUTDOWN_GRACE_SECONDS', 30)


class DevelopmentConfig(BaseConfig):
    ENV = 'development'
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'DEBUG')


class TestingConfig(BaseConfig):
    ENV = 'testing'
    TESTING = True
    RATELIMIT_ENABLED = False

    def __init__(self):
        super().__init__()
        self.DATABASE_URL = 'sqlite://'
        self.SECRET_KEY = self.SECRET_KEY or 'testing-session-secret'
        self.BCRYPT_ROUNDS = 4
        self.SESSION_COOKIE_SECURE = False


class ProductionConfig(BaseConfig):
    ENV = 'production'


CONFIGS = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
}


def get_config(config_name: Optional[str] = None) -> BaseConfig:
    name = config_name or os.environ.get('ENV', 'production')
    try:
        return CONFIGS[name]()
    except KeyError:
        raise ConfigurationError(f"unknown ENV {name!r}, expected one of: {', '.join(CONFIGS)}") from None


def validate_config(config: Mapping[str, object]) -> List[str]:
    """Problems that must stop startup, as messages"""
    problems = []
    if not config.get('SECRET_KEY'):
        problems.append("SESSION_SECRET must be set")
    elif config.get('ENV') == 'production' and len(str(config['SECRET_KEY'])) < 32:
        problems.append("SESSION_SECRET must be at least 32 characters in production")
    return problems
