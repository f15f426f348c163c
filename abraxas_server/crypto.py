"""
Symmetric encryption for tokens stored at rest.

Repository access tokens and agent-runtime credentials are stored encrypted
with AES-256-GCM. The stored blob is base64 of ``iv | salt | tag | ciphertext``
(16, 64 and 16 bytes followed by the ciphertext). The salt is carried for
compatibility with existing rows and is not used in key derivation.

Configuration:
    ENCRYPTION_KEY: 64 hex characters (32 bytes)
"""

import base64
import binascii
import logging
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .errors import CryptoConfigError, DecryptionError, EncryptionError

logger = logging.getLogger(__name__)

IV_LENGTH = 16
SALT_LENGTH = 64
TAG_LENGTH = 16
HEADER_LENGTH = IV_LENGTH + SALT_LENGTH + TAG_LENGTH


def _load_key(key_hex: Optional[str]) -> bytes:
    if not key_hex:
        raise CryptoConfigError('ENCRYPTION_KEY is not configured')
    try:
        key = bytes.fromhex(key_hex)
    except ValueError:
        raise CryptoConfigError('ENCRYPTION_KEY must be hex encoded')
    if len(key) != 32:
        raise CryptoConfigError('ENCRYPTION_KEY must be 32 bytes (64 hex chars)')
    return key


def encrypt_token(token: str, key_hex: Optional[str]) -> str:
    """Encrypt a token, returning the base64 blob to store."""
    key = _load_key(key_hex)
    try:
        iv = os.urandom(IV_LENGTH)
        salt = os.urandom(SALT_LENGTH)
        # AESGCM appends the tag to the ciphertext
        sealed = AESGCM(key).encrypt(iv, token.encode('utf-8'), None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
    except Exception as e:
        logger.error(f'Token encryption failed: {type(e).__name__}')
        raise EncryptionError('Failed to encrypt token') from e
    return base64.b64encode(iv + salt + tag + ciphertext).decode('ascii')


def decrypt_token(encrypted: str, key_hex: Optional[str]) -> str:
    """Decrypt a blob produced by ``encrypt_token``."""
    key = _load_key(key_hex)
    try:
        raw = base64.b64decode(encrypted, validate=True)
    except (binascii.Error, ValueError) as e:
        raise DecryptionError('Failed to decrypt token') from e
    if len(raw) < HEADER_LENGTH:
        raise DecryptionError('Failed to decrypt token')

    iv = raw[:IV_LENGTH]
    tag = raw[IV_LENGTH + SALT_LENGTH:HEADER_LENGTH]
    ciphertext = raw[HEADER_LENGTH:]
    try:
        plaintext = AESGCM(key).decrypt(iv, ciphertext + tag, None)
        return plaintext.decode('utf-8')
    except (InvalidTag, UnicodeDecodeError) as e:
        raise DecryptionError('Failed to decrypt token') from e
