from __future__ import annotations

import base64
import binascii
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .errors import DecryptionFailed

IV_LENGTH = 12
TAG_LENGTH = 16


class SecretCipher:
    """AES-256-GCM with the platform master key.

    Stored format: IV (12 bytes) || ciphertext || tag (16 bytes).
    """

    def __init__(self, master_key_b64: str):
        try:
            key = base64.b64decode(master_key_b64, validate=True)
        except binascii.Error as e:
            raise ValueError(f"Master key is not valid base64: {e}") from e
        if len(key) != 32:
            raise ValueError(f"Invalid master key length: {len(key)} bytes (expected 32)")
        self._aead = AESGCM(key)

    def encrypt(self, plaintext: str) -> bytes:
        iv = os.urandom(IV_LENGTH)
        return iv + self._aead.encrypt(iv, plaintext.encode("utf-8"), None)

    def decrypt(self, encrypted: bytes) -> str:
        if not isinstance(encrypted, (bytes, bytearray, memoryview)):
            raise DecryptionFailed("Encrypted value must be bytes")
        blob = bytes(encrypted)
        if len(blob) < IV_LENGTH + TAG_LENGTH + 1:
            raise DecryptionFailed("Encrypted data too short")
        try:
            # AESGCM expects the tag appended to the ciphertext, as stored.
            plaintext = self._aead.decrypt(blob[:IV_LENGTH], blob[IV_LENGTH:], None)
            return plaintext.decode("utf-8")
        except (InvalidTag, UnicodeDecodeError) as e:
            raise DecryptionFailed(f"Failed to decrypt secret: {type(e).__name__}") from e
