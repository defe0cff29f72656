"""Payload encryption at rest.

Every payload is serialized to compact JSON and encrypted with AES-256-CBC
under a key derived from the caller's phone number. Records are stored as
``ivHex:cipherHex`` with a fresh random IV per write.
"""
import binascii
import hashlib
import json
import logging
import os
import re
from typing import Any, Optional

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from budgetsync.errors import EncryptionError, KeyLengthError

logger = logging.getLogger(__name__)

KEY_LENGTH = 32  # AES-256
IV_LENGTH = 16   # AES block size
RECORD_SEPARATOR = ":"

_NON_DIGITS = re.compile(r"\D")


def normalize_identity(identity: str) -> str:
    """Strip everything but digits and keep the last 10 (drops country code)."""
    return _NON_DIGITS.sub("", identity or "")[-10:]


def derive_key(identity: str, salt: str) -> bytes:
    """Derive the per-user AES-256 key.

    The first 32 hex characters of SHA-256(digits + salt) are used as the raw
    key bytes, which keeps records written by earlier clients readable.
    """
    digits = normalize_identity(identity)
    digest = hashlib.sha256(f"{digits}{salt}".encode("utf-8")).hexdigest()
    return digest[:KEY_LENGTH].encode("ascii")


def _check_key(key: bytes) -> None:
    if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_LENGTH:
        size = len(key) if isinstance(key, (bytes, bytearray)) else type(key).__name__
        raise KeyLengthError(f"Key must be {KEY_LENGTH} bytes, got {size}")


def encrypt(payload: Any, key: bytes) -> str:
    """Encrypt a JSON-serializable payload into an ``ivHex:cipherHex`` record."""
    _check_key(key)
    try:
        plaintext = json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    except (TypeError, ValueError) as e:
        raise EncryptionError(f"Payload is not serializable: {e}") from e

    try:
        iv = os.urandom(IV_LENGTH)
        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(plaintext) + padder.finalize()
        encryptor = Cipher(algorithms.AES(bytes(key)), modes.CBC(iv)).encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()
    except ValueError as e:
        raise EncryptionError("Cipher operation failed") from e

    if not ciphertext:
        raise EncryptionError("Cipher produced no output")

    return f"{binascii.hexlify(iv).decode('ascii')}{RECORD_SEPARATOR}{binascii.hexlify(ciphertext).decode('ascii')}"


def decrypt(record: str, key: bytes) -> Optional[Any]:
    """Decrypt a record. Any malformed or undecryptable input yields ``None``."""
    _check_key(key)

    if not isinstance(record, str) or RECORD_SEPARATOR not in record:
        logger.warning("Decrypt rejected: record has no iv separator")
        return None

    iv_hex, _, data_hex = record.partition(RECORD_SEPARATOR)
    try:
        iv = binascii.unhexlify(iv_hex)
        ciphertext = binascii.unhexlify(data_hex)
    except (binascii.Error, ValueError):
        logger.warning("Decrypt rejected: record is not valid hex")
        return None

    if len(iv) != IV_LENGTH or not ciphertext or len(ciphertext) % IV_LENGTH:
        logger.warning(f"Decrypt rejected: bad lengths (iv={len(iv)}, data={len(ciphertext)})")
        return None

    try:
        decryptor = Cipher(algorithms.AES(bytes(key)), modes.CBC(iv)).decryptor()
        padded = decryptor.update(ciphertext) + decryptor.finalize()
        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
        plaintext = unpadder.update(padded) + unpadder.finalize()
    except ValueError:
        # Bad padding is what a wrong key usually looks like
        logger.warning("Decryption failed: wrong key or corrupted ciphertext")
        return None

    try:
        return json.loads(plaintext.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        logger.warning("Decryption failed: plaintext is not valid JSON")
        return None


class PayloadCipher:
    """Binds the deployment salt to key derivation."""

    def __init__(self, salt: str):
        if not salt:
            raise ValueError("salt must not be empty")
        self._salt = salt

    def key_for(self, identity: str) -> bytes:
        return derive_key(identity, self._salt)

    def encrypt_for(self, identity: str, payload: Any) -> str:
        return encrypt(payload, self.key_for(identity))

    def decrypt_for(self, identity: str, record: str) -> Optional[Any]:
        return decrypt(record, self.key_for(identity))
