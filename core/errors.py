# core/errors.py
"""
Exception hierarchy shared by the stores, the mailer and the HTTP layer
"""


class FirewatchError(Exception):
    """Base exception for Firewatch operations"""
    pass


class NotFoundError(FirewatchError):
    """Requested row (schema, session, token, user) does not exist"""
    pass


class ValidationError(FirewatchError):
    """Malformed input from a client or an administrator"""
    pass


class StorageError(FirewatchError):
    """Transaction, encryption or decryption failure"""
    pass


class ConfigurationError(FirewatchError):
    """Missing or unusable configuration"""
    pass


class SMTPConfigurationError(ConfigurationError):
    """SMTP reachability, STARTTLS or authentication failure"""
    pass


class PGPConfigurationError(ConfigurationError):
    """PGP public key missing or unusable"""
    pass


class TransientDeliveryError(FirewatchError):
    """Outbound delivery failed and may be retried"""
    pass


class QueueFullError(TransientDeliveryError):
    """Outbound queue buffer is full"""
    pass
