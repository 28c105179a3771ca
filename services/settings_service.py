# services/settings_service.py
"""
Settings updates and credential verification

verify_and_persist() is the single routine behind both the settings-update
and the settings-apply actions: it probes SMTP and PGP with a throwaway
mailer built from the candidate settings, stores the verdict on the
settings record and points the live mailer at the new configuration.
"""

import dataclasses
import logging
import re
from typing import Any, Callable, Dict, Optional

from email_validator import EmailNotValidError, validate_email

from core.errors import FirewatchError, ValidationError
from core.settings_store import (
    JSON_KEYS, VERIFICATION_KEYS, AppSettings, SettingsStore, contains_private_key
)
from services.mailer import DEFAULT_TIMEOUT, Mailer, MailerConfig

logger = logging.getLogger(__name__)

PRIVATE_KEY_REJECTED = "PGP private keys are not accepted, paste the public key only"

_STRING_KEYS = {
    'destinationEmail', 'emailSubjectTemplate', 'smtpHost', 'smtpUser', 'smtpPass',
    'smtpFromAddress', 'smtpFromName', 'reportRetentionPolicy', 'pgpKey',
}
_ACCEPTED_KEYS = set(JSON_KEYS.values()) | {'smtpPassSet'}
_ATTRS = {key: attr for attr, key in JSON_KEYS.items()}
# URLs, addresses and pasted whitespace; label syntax is left to the dial check
_HOST_REJECT = re.compile(r"[\s/@]")

MailerFactory = Callable[[AppSettings], Mailer]


def _check_address(value: str, key: str) -> str:
    if not value:
        return value
    try:
        return validate_email(value, check_deliverability=False).normalized
    except EmailNotValidError as e:
        raise ValidationError(f"{key}: {e}") from e


class SettingsService:
    def __init__(self, store: SettingsStore, live_mailer,
                 mailer_factory: Optional[MailerFactory] = None,
                 timeout: float = DEFAULT_TIMEOUT):
        self.store = store
        self.live_mailer = live_mailer
        self.timeout = timeout
        self.mailer_factory = mailer_factory or (lambda s: Mailer.from_settings(s, timeout=self.timeout))

    def masked(self) -> Dict[str, Any]:
        return self.store.load().to_masked_dict()

    def verify_and_persist(self, settings: AppSettings) -> Dict[str, Any]:
        """Probe SMTP and PGP, persist the verdict, reconfigure the live mailer"""
        probe = self.mailer_factory(settings)

        try:
            probe.ping()
            settings.smtp_verified, settings.smtp_error = True, ''
        except FirewatchError as e:
            settings.smtp_verified, settings.smtp_error = False, str(e)

        try:
            probe.can_encrypt()
            settings.pgp_verified, settings.pgp_error = True, ''
        except FirewatchError as e:
            settings.pgp_verified, settings.pgp_error = False, str(e)

        self.store.save(settings)

        if not settings.verified:
            logger.warning(
                f"Settings saved but not verified: smtp_verified={settings.smtp_verified} "
                f"smtp_error={settings.smtp_error!r} pgp_verified={settings.pgp_verified} "
                f"pgp_error={settings.pgp_error!r}"
            )
        else:
            logger.info("Settings verified (SMTP and PGP)")

        self.live_mailer.reconfigure(MailerConfig.from_settings(settings, self.timeout))
        return settings.verification()

    def decode_update(self, payload: Any, current: AppSettings) -> AppSettings:
        """
        Strictly decode an admin update on top of ``current``.

        Omitted keys keep their stored value. Verification keys and
        ``smtpPassSet`` are accepted and ignored. An empty ``smtpPass``
        means "unchanged".
        """
        if not isinstance(payload, dict):
            raise ValidationError("request body must be a JSON object")
        unknown = set(payload) - _ACCEPTED_KEYS
        if unknown:
            raise ValidationError(f"unknown field(s): {', '.join(sorted(unknown))}")

        updated = dataclasses.replace(current)

        for key, value in payload.items():
            if key in VERIFICATION_KEYS or key == 'smtpPassSet':
                continue
            if key in _STRING_KEYS:
                if value is None:
                    value = ''
                if not isinstance(value, str):
                    raise ValidationError(f"{key} must be a string")
                if key not in ('smtpPass', 'pgpKey'):
                    value = value.strip()
            elif key == 'smtpPort':
                if isinstance(value, str) and value.strip().isdigit():
                    value = int(value.strip())
                if isinstance(value, bool) or not isinstance(value, int) or not 1 <= value <= 65535:
                    raise ValidationError("smtpPort must be an integer between 1 and 65535")
            elif key == 'maintenanceMode':
                if not isinstance(value, bool):
                    raise ValidationError("maintenanceMode must be a boolean")
            setattr(updated, _ATTRS[key], value)

        if contains_private_key(updated.pgp_key):
            raise ValidationError(PRIVATE_KEY_REJECTED)

        if 'smtpHost' in payload and _HOST_REJECT.search(updated.smtp_host):
            raise ValidationError("smtpHost must be a bare host name or IP address")

        updated.destination_email = _check_address(updated.destination_email, 'destinationEmail')
        updated.smtp_from_address = _check_address(updated.smtp_from_address, 'smtpFromAddress')

        if not payload.get('smtpPass'):
            updated.smtp_pass = current.smtp_pass
        return updated

    def update(self, payload: Any) -> Dict[str, Any]:
        current = self.store.load()
        updated = self.decode_update(payload, current)
        return self.verify_and_persist(updated)

    def apply(self) -> Dict[str, Any]:
        """Re-run verification against the stored settings"""
        return self.verify_and_persist(self.store.load())

    def send_test_email(self) -> None:
        """Synchronous plain test message using only stored values"""
        self.mailer_factory(self.store.load()).send_test()
