# services/mailer.py
"""
SMTP Mailer with mandatory STARTTLS and PGP/MIME report encryption

Provides:
- ping(): dial, STARTTLS and authenticate without sending anything
- can_encrypt(): check that the configured PGP public key is usable
- send_report(): encrypt a report body and deliver it as PGP/MIME
- send_invite() / send_password_reset() / send_test(): plain transactional mail

The active configuration is an immutable MailerConfig swapped under a lock.
The lock is never held across network calls.
"""

import asyncio
import logging
import ssl
import threading
from dataclasses import dataclass
from email.mime.base import MIMEBase
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, formatdate, make_msgid
from typing import Callable, Optional

import aiosmtplib
import pgpy

from core.errors import (
    FirewatchError, PGPConfigurationError, SMTPConfigurationError, TransientDeliveryError
)
from core.settings_store import AppSettings, contains_private_key

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0
REPORT_SUBJECT = "New Community Report"
INVITE_SUBJECT = "You've been invited to Firewatch"
RESET_SUBJECT = "Reset your Firewatch password"
TEST_SUBJECT = "Firewatch test email"

INVITE_BODY = (
    "You have been invited to access Firewatch.\n\n"
    "Accept your invitation:\n{url}\n\n"
    "This link expires in 48 hours."
)
RESET_BODY = (
    "A password reset was requested for your Firewatch account.\n\n"
    "Choose a new password:\n{url}\n\n"
    "This link expires in 1 hour. If you did not request it, ignore this email."
)
TEST_BODY = (
    "This is a test email from Firewatch.\n\n"
    "If you received it, outbound SMTP delivery is working."
)

_SMTP_ERRORS = (aiosmtplib.SMTPException, OSError, asyncio.TimeoutError)
# Hostname resolution raises UnicodeError (a ValueError) for malformed labels
_DIAL_ERRORS = _SMTP_ERRORS + (ValueError,)


@dataclass(frozen=True)
class MailerConfig:
    """Immutable snapshot of everything a send needs"""
    host: str = ''
    port: int = 587
    user: str = ''
    password: str = ''
    from_address: str = ''
    from_name: str = ''
    destination: str = ''
    subject: str = REPORT_SUBJECT
    pgp_key: str = ''
    timeout: float = DEFAULT_TIMEOUT

    @classmethod
    def from_settings(cls, settings: AppSettings, timeout: float = DEFAULT_TIMEOUT) -> 'MailerConfig':
        return cls(
            host=settings.smtp_host,
            port=int(settings.smtp_port or 0),
            user=settings.smtp_user,
            password=settings.smtp_pass,
            from_address=settings.smtp_from_address,
            from_name=settings.smtp_from_name,
            destination=settings.destination_email,
            subject=settings.email_subject_template or REPORT_SUBJECT,
            pgp_key=settings.pgp_key,
            timeout=timeout,
        )


@dataclass
class Message:
    """A fully built outbound message; ``mime`` is already encrypted where required"""
    to: str
    subject: str
    mime: MIMEBase


SendFn = Callable[[MailerConfig, Message], None]


# ----------------------------------------------------------------------
# PGP
# ----------------------------------------------------------------------

def load_public_key(armored: str) -> pgpy.PGPKey:
    """Parse an armored public key; raises PGPConfigurationError"""
    if not armored or not armored.strip():
        raise PGPConfigurationError("no PGP public key configured")
    if contains_private_key(armored):
        raise PGPConfigurationError("invalid PGP public key: private key material is not accepted")

    try:
        loaded = pgpy.PGPKey.from_blob(armored.strip())
    except Exception as e:
        raise PGPConfigurationError(f"invalid PGP public key: {e}") from e

    key = loaded[0] if isinstance(loaded, tuple) else loaded
    if key is None:
        raise PGPConfigurationError("PGP key parsed but no keys found in keyring")
    if not key.is_public:
        raise PGPConfigurationError("invalid PGP public key: private key material is not accepted")
    return key


def encrypt_body(armored_key: str, plaintext: str) -> str:
    """Encrypt ``plaintext`` to the key; returns an ASCII-armored PGP MESSAGE"""
    key = load_public_key(armored_key)
    try:
        encrypted = key.encrypt(pgpy.PGPMessage.new(plaintext))
    except Exception as e:
        raise PGPConfigurationError(f"PGP encryption failed: {e}") from e
    return str(encrypted)


def build_pgp_mime(armored_message: str) -> MIMEMultipart:
    """RFC 3156 multipart/encrypted container"""
    outer = MIMEMultipart('encrypted', protocol='application/pgp-encrypted')
    outer.preamble = 'This is an OpenPGP/MIME encrypted message (RFC 4880 and 3156)'

    version = MIMEBase('application', 'pgp-encrypted')
    version['Content-Description'] = 'PGP/MIME version identification'
    version.set_payload('Version: 1\n')

    payload = MIMEBase('application', 'octet-stream', name='encrypted.asc')
    payload['Content-Description'] = 'OpenPGP encrypted message'
    payload['Content-Disposition'] = 'inline; filename="encrypted.asc"'
    payload.set_payload(armored_message)

    for part in (version, payload):
        del part['MIME-Version']
        outer.attach(part)
    return outer


# ----------------------------------------------------------------------
# SMTP
# ----------------------------------------------------------------------

def _tls_context() -> ssl.SSLContext:
    context = ssl.create_default_context()
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    return context


async def _open_session(config: MailerConfig, stage: str) -> aiosmtplib.SMTP:
    """Connect, require and negotiate STARTTLS, then authenticate"""
    if not config.host:
        raise SMTPConfigurationError(f"{stage}: no SMTP host configured")

    smtp = aiosmtplib.SMTP(
        hostname=config.host,
        port=config.port,
        timeout=config.timeout,
        use_tls=False,
        start_tls=False,
    )

    try:
        await smtp.connect()
    except _DIAL_ERRORS as e:
        raise SMTPConfigurationError(f"{stage}: dial {config.host}:{config.port}: {e}") from e

    try:
        await smtp.ehlo()
        if not smtp.supports_extension('starttls'):
            raise SMTPConfigurationError(f"{stage}: SMTP server does not support STARTTLS")
        await smtp.starttls(tls_context=_tls_context(), server_hostname=config.host)
    except SMTPConfigurationError:
        smtp.close()
        raise
    except _DIAL_ERRORS as e:
        smtp.close()
        raise SMTPConfigurationError(f"{stage}: STARTTLS: {e}") from e

    if not config.user:
        smtp.close()
        raise SMTPConfigurationError(f"{stage}: auth: no SMTP user configured")
    try:
        await smtp.login(config.user, config.password)
    except _SMTP_ERRORS as e:
        smtp.close()
        raise SMTPConfigurationError(f"{stage}: auth: {e}") from e
    return smtp


async def _quit(smtp: aiosmtplib.SMTP) -> None:
    try:
        await smtp.quit()
    except _SMTP_ERRORS as e:
        logger.debug(f"SMTP QUIT failed: {e}")
        smtp.close()


async def _async_ping(config: MailerConfig) -> None:
    smtp = await _open_session(config, 'mailer ping')
    await _quit(smtp)


async def _async_send(config: MailerConfig, message: Message) -> None:
    smtp = await _open_session(config, 'mailer send')
    try:
        await smtp.send_message(message.mime, sender=config.from_address, recipients=[message.to])
    except _SMTP_ERRORS as e:
        smtp.close()
        raise TransientDeliveryError(f"mailer send: {e}") from e
    await _quit(smtp)


def _run(coro, config: MailerConfig) -> None:
    """Drive an SMTP coroutine from a request or worker thread with an overall deadline"""
    # connect, STARTTLS, auth and data each get their own transport timeout
    deadline = config.timeout * 4
    try:
        asyncio.run(asyncio.wait_for(coro, timeout=deadline))
    except asyncio.TimeoutError as e:
        raise SMTPConfigurationError(f"SMTP exchange with {config.host}:{config.port} timed out") from e


def smtp_send(config: MailerConfig, message: Message) -> None:
    """Default transport: one SMTP session per message"""
    _run(_async_send(config, message), config)


class Mailer:
    """
    Outbound mail for reports, invites and verification checks
    """

    def __init__(self, config: MailerConfig, send_fn: Optional[SendFn] = None):
        self._lock = threading.Lock()
        self._config = config
        self._send_fn = send_fn or smtp_send

    @classmethod
    def from_settings(cls, settings: AppSettings, timeout: float = DEFAULT_TIMEOUT,
                      send_fn: Optional[SendFn] = None) -> 'Mailer':
        return cls(MailerConfig.from_settings(settings, timeout), send_fn=send_fn)

    def snapshot(self) -> MailerConfig:
        with self._lock:
            return self._config

    def reconfigure(self, config: MailerConfig) -> None:
        with self._lock:
            self._config = config
        logger.info(f"Mailer reconfigured for {config.host or '(no host)'}:{config.port}")

    # Verification

    def ping(self) -> None:
        """Raises SMTPConfigurationError unless dial, STARTTLS and auth all succeed"""
        config = self.snapshot()
        _run(_async_ping(config), config)

    def can_encrypt(self) -> None:
        """Raises PGPConfigurationError unless the configured key parses to a usable public key"""
        load_public_key(self.snapshot().pgp_key)

    # Message construction

    def _headers(self, mime: MIMEBase, config: MailerConfig, to: str, subject: str) -> None:
        domain = config.from_address.rsplit('@', 1)[-1] if '@' in config.from_address else None
        mime['Subject'] = subject
        mime['From'] = formataddr((config.from_name, config.from_address))
        mime['To'] = to
        mime['Date'] = formatdate(usegmt=True)
        mime['Message-ID'] = make_msgid(domain=domain)

    def build_report(self, body: str) -> Message:
        """Encrypt ``body`` and wrap it as PGP/MIME; fails closed without a key"""
        config = self.snapshot()
        if not config.pgp_key or not config.pgp_key.strip():
            raise PGPConfigurationError("PGP public key is not configured")
        if not config.destination:
            raise SMTPConfigurationError("no destination email configured")

        mime = build_pgp_mime(encrypt_body(config.pgp_key, body))
        subject = config.subject or REPORT_SUBJECT
        self._headers(mime, config, config.destination, subject)
        return Message(to=config.destination, subject=subject, mime=mime)

    def build_plain(self, to: str, subject: str, body: str) -> Message:
        config = self.snapshot()
        mime = MIMEText(body, 'plain', 'utf-8')
        self._headers(mime, config, to, subject)
        return Message(to=to, subject=subject, mime=mime)

    # Delivery

    def deliver(self, message: Message) -> None:
        config = self.snapshot()
        try:
            self._send_fn(config, message)
        except TransientDeliveryError:
            raise
        except FirewatchError as e:
            raise TransientDeliveryError(str(e)) from e
        logger.info(f"Delivered message to {message.to}: {message.subject}")

    def send_report(self, body: str) -> None:
        self.deliver(self.build_report(body))

    def send_invite(self, to: str, url: str) -> None:
        self.deliver(self.build_plain(to, INVITE_SUBJECT, INVITE_BODY.format(url=url)))

    def send_password_reset(self, to: str, url: str) -> None:
        self.deliver(self.build_plain(to, RESET_SUBJECT, RESET_BODY.format(url=url)))

    def send_test(self) -> None:
        """Plain test message to the configured destination, sent synchronously"""
        config = self.snapshot()
        if not config.destination:
            raise SMTPConfigurationError("no destination email configured")
        self.deliver(self.build_plain(config.destination, TEST_SUBJECT, TEST_BODY))
