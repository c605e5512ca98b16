"""
Identity Registry Encryption Service
Journal payloads carry identity contact details, so they can be sealed with
AES-256-CBC under MASTER_KEY before they reach SQLite.
"""

import os
import base64
import hashlib
from typing import Optional, Union
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from identity_registry.config import config

IV_SIZE = 16
BLOCK_BITS = 128


def parse_master_key(key_hex: str) -> bytes:
    """Decode a hex master key, requiring exactly 256 bits."""
    if not key_hex:
        raise ValueError("MASTER_KEY is empty")
    try:
        key = bytes.fromhex(key_hex.removeprefix("0x"))
    except ValueError:
        raise ValueError("MASTER_KEY must be hex encoded")
    if len(key) != 32:
        raise ValueError(f"MASTER_KEY must decode to 32 bytes, got {len(key)}")
    return key


class EncryptionService:
    """Seals and opens journal payloads."""

    def __init__(self, master_key: Optional[str] = None):
        self.key = parse_master_key(master_key or config.MASTER_KEY)

    def _cipher(self, iv: bytes) -> Cipher:
        return Cipher(algorithms.AES(self.key), modes.CBC(iv))

    def encrypt(self, data: bytes) -> bytes:
        """
        Encrypt with a fresh random IV.

        Returns:
            Base64 of IV || ciphertext
        """
        iv = os.urandom(IV_SIZE)
        padder = padding.PKCS7(BLOCK_BITS).padder()
        encryptor = self._cipher(iv).encryptor()
        sealed = encryptor.update(padder.update(data) + padder.finalize()) + encryptor.finalize()
        return base64.b64encode(iv + sealed)

    def decrypt(self, token: bytes) -> bytes:
        raw = base64.b64decode(token)
        decryptor = self._cipher(raw[:IV_SIZE]).decryptor()
        unpadder = padding.PKCS7(BLOCK_BITS).unpadder()
        padded = decryptor.update(raw[IV_SIZE:]) + decryptor.finalize()
        return unpadder.update(padded) + unpadder.finalize()

    def encrypt_text(self, text: str) -> str:
        return self.encrypt(text.encode("utf-8")).decode("ascii")

    def decrypt_text(self, token: str) -> str:
        return self.decrypt(token.encode("ascii")).decode("utf-8")


def get_encryption_service() -> Optional[EncryptionService]:
    """Return a service for the configured MASTER_KEY, or None when unset."""
    if not config.MASTER_KEY:
        return None
    return EncryptionService(config.MASTER_KEY)


def content_hash(data: Union[bytes, str]) -> str:
    """0x-prefixed SHA-256 of proof material, as stored on a credential."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return "0x" + hashlib.sha256(data).hexdigest()
