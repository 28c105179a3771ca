# core/crypto.py
"""
Authenticated encryption for secrets at rest and keyed hashing for
pseudonymous lookups of admin email addresses.
"""

import hashlib
import hmac
import logging
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from core.errors import ConfigurationError, StorageError

logger = logging.getLogger(__name__)

KEY_SIZE = 32
NONCE_SIZE = 12


class Crypter:
    """
    AES-256-GCM with a fresh random nonce per call.

    Ciphertext layout: nonce (12 bytes) || ciphertext || tag
    """

    def __init__(self, key: bytes):
        if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_SIZE:
            raise ConfigurationError(f"encryption key must be exactly {KEY_SIZE} bytes")
        self._aead = AESGCM(bytes(key))

    def encrypt(self, plaintext: bytes) -> bytes:
        nonce = os.urandom(NONCE_SIZE)
        return nonce + self._aead.encrypt(nonce, plaintext, None)

    def decrypt(self, data: bytes) -> bytes:
        if data is None or len(data) < NONCE_SIZE:
            raise StorageError("ciphertext too short")

        nonce, ciphertext = data[:NONCE_SIZE], data[NONCE_SIZE:]
        try:
            return self._aead.decrypt(nonce, ciphertext, None)
        except InvalidTag as e:
            raise StorageError("decryption failed: authentication tag mismatch") from e

    def encrypt_str(self, value: str) -> bytes:
        return self.encrypt(value.encode('utf-8'))

    def decrypt_str(self, data: bytes) -> str:
        return self.decrypt(data).decode('utf-8')


def normalize_email(email: str) -> str:
    return (email or '').strip().lower()


def email_hmac(key: bytes, email: str) -> str:
    """HMAC-SHA256 hex digest of the normalized address, used for exact-match lookup"""
    return hmac.new(key, normalize_email(email).encode('utf-8'), hashlib.sha256).hexdigest()


def hash_token(token: str) -> str:
    """Tokens are stored only as their SHA-256 hex digest"""
    return hashlib.sha256(token.encode('utf-8')).hexdigest()
