"""
LiveAuth - Enrollment Encryption
================================
AES-256-GCM (authenticated encryption) for the stored face baselines.

  - 256-bit key kept in a separate key file (created with 0600 perms)
  - Fresh 96-bit nonce per write, stored as the blob prefix
  - JSON payloads only (no pickle: the store is read back from disk)
"""

import json
import logging
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

_log = logging.getLogger("BiometricEncryptor")

_NONCE_BYTES = 12
_KEY_BYTES = 32


class DecryptionError(Exception):
    """Blob was tampered with, truncated, or encrypted under another key."""


def load_or_create_key(key_path: str) -> bytes:
    """Read the AES key from `key_path`, generating it on first use."""
    if os.path.exists(key_path):
        with open(key_path, "rb") as f:
            key = f.read()
        if len(key) != _KEY_BYTES:
            raise ValueError(f"Key file {key_path} must hold {_KEY_BYTES} bytes, found {len(key)}")
        return key

    key_dir = os.path.dirname(key_path)
    if key_dir:
        os.makedirs(key_dir, exist_ok=True)
    key = AESGCM.generate_key(bit_length=256)
    fd = os.open(key_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(key)
    _log.info("Generated new enrollment key at %s", key_path)
    return key


class BiometricEncryptor:
    """Encrypts and decrypts JSON-serializable payloads."""

    def __init__(self, key: bytes):
        if len(key) != _KEY_BYTES:
            raise ValueError(f"AES-256 key must be {_KEY_BYTES} bytes")
        self._aes = AESGCM(key)

    def encrypt_data(self, data: object) -> bytes:
        """Returns nonce + ciphertext + tag."""
        payload = json.dumps(data).encode("utf-8")
        nonce = os.urandom(_NONCE_BYTES)
        return nonce + self._aes.encrypt(nonce, payload, None)

    def decrypt_data(self, blob: bytes) -> object:
        if len(blob) <= _NONCE_BYTES:
            raise DecryptionError("Encrypted blob is truncated")
        nonce, ciphertext = blob[:_NONCE_BYTES], blob[_NONCE_BYTES:]
        try:
            plaintext = self._aes.decrypt(nonce, ciphertext, None)
        except InvalidTag as e:
            _log.error("Decryption failed: authentication tag mismatch")
            raise DecryptionError("Authentication tag mismatch") from e
        return json.loads(plaintext.decode("utf-8"))
