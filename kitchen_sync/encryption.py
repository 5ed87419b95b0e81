"""
At-rest encryption for OAuth tokens.

Payload layout is base64(iv | auth tag | ciphertext) using AES-256-GCM with a
12 byte IV and a 16 byte tag.
"""

import base64
import binascii
import logging
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from kitchen_sync.config import config

logger = logging.getLogger(__name__)

IV_LENGTH = 12
AUTH_TAG_LENGTH = 16
KEY_LENGTH = 32


class TokenEncryptionError(Exception):
    pass


class TokenDecryptionError(TokenEncryptionError):
    pass


def decode_key(raw_key: str) -> bytes:
    """Accepts a base64 or hex encoded 256-bit key."""
    trimmed = raw_key.strip()

    try:
        decoded = base64.b64decode(trimmed, validate=True)
        if len(decoded) == KEY_LENGTH:
            return decoded
    except (binascii.Error, ValueError):
        pass

    try:
        decoded = bytes.fromhex(trimmed)
        if len(decoded) == KEY_LENGTH:
            return decoded
    except ValueError:
        pass

    raise TokenEncryptionError(
        "TOKEN_ENCRYPTION_KEY must decode to 32 bytes. Provide a base64 or hex encoded 256-bit key."
    )


class TokenCipher:
    def __init__(self, key: bytes):
        if len(key) != KEY_LENGTH:
            raise TokenEncryptionError("Token encryption key must be 32 bytes")
        self._aesgcm = AESGCM(key)

    @classmethod
    def from_raw_key(cls, raw_key: Optional[str]) -> "TokenCipher":
        if not raw_key:
            raise TokenEncryptionError(
                "Missing TOKEN_ENCRYPTION_KEY environment variable. "
                "Generate a 32-byte key encoded in base64 to encrypt OAuth tokens."
            )
        return cls(decode_key(raw_key))

    def encrypt(self, value: str) -> str:
        iv = os.urandom(IV_LENGTH)
        sealed = self._aesgcm.encrypt(iv, value.encode("utf-8"), None)
        # cryptography appends the tag, the stored layout keeps it after the IV
        ciphertext, tag = sealed[:-AUTH_TAG_LENGTH], sealed[-AUTH_TAG_LENGTH:]
        return base64.b64encode(iv + tag + ciphertext).decode("ascii")

    def decrypt(self, payload: str) -> str:
        try:
            buffer = base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError) as e:
            raise TokenDecryptionError("Encrypted payload is not valid base64") from e

        if len(buffer) < IV_LENGTH + AUTH_TAG_LENGTH:
            raise TokenDecryptionError("Encrypted payload is too short to contain IV and auth tag")

        iv = buffer[:IV_LENGTH]
        tag = buffer[IV_LENGTH:IV_LENGTH + AUTH_TAG_LENGTH]
        ciphertext = buffer[IV_LENGTH + AUTH_TAG_LENGTH:]

        try:
            plaintext = self._aesgcm.decrypt(iv, ciphertext + tag, None)
        except InvalidTag as e:
            raise TokenDecryptionError("Encrypted payload failed authentication") from e
        return plaintext.decode("utf-8")


_cipher: Optional[TokenCipher] = None


def get_cipher() -> TokenCipher:
    global _cipher
    if _cipher is None:
        _cipher = TokenCipher.from_raw_key(config.TOKEN_ENCRYPTION_KEY)
    return _cipher


def encrypt_token(value: str) -> str:
    return get_cipher().encrypt(value)


def decrypt_token(payload: str) -> str:
    return get_cipher().decrypt(payload)


def is_token_encrypted(value: Optional[str]) -> bool:
    if not value:
        return False
    try:
        decrypt_token(value)
        return True
    except TokenDecryptionError:
        return False
