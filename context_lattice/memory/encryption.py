"""
Field-level encryption for stored context (AES-256-GCM).

Stored format: enc:<version>:<iv>:<ciphertext>:<tag>, each part base64.

Each field gets its own key: PBKDF2-HMAC-SHA256 (100k iterations) over
field name + version yields a 32-byte salt, scrypt then derives the key
from the master key and that salt. Keys are cached per field.
"""

import base64
import json
import logging
import os
import threading
from typing import Any, Dict, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from ..errors import ConfigurationError, EncryptionError

logger = logging.getLogger(__name__)

PREFIX = "enc"
CURRENT_VERSION = 1
IV_LENGTH = 12
SALT_LENGTH = 32
KEY_LENGTH = 32
PBKDF2_ITERATIONS = 100_000
MIN_MASTER_KEY_LENGTH = 32


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _unb64(data: str) -> bytes:
    return base64.b64decode(data.encode("ascii"), validate=True)


class EncryptionService:
    """
    Encrypts and decrypts string fields.

    Disabled services pass every value through unchanged, so callers never
    need to branch on configuration.
    """

    def __init__(self, enabled: bool = False, master_key: Optional[str] = None):
        if enabled and not master_key:
            raise ConfigurationError("Encryption master key is required when encryption is enabled")
        if enabled and len(master_key) < MIN_MASTER_KEY_LENGTH:
            raise ConfigurationError(
                f"Encryption master key must be at least {MIN_MASTER_KEY_LENGTH} characters long"
            )
        self.enabled = enabled
        self._master_key = (master_key or "").encode("utf-8")
        self._key_cache: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config) -> 'EncryptionService':
        return cls(enabled=config.encryption_enabled, master_key=config.encryption_master_key)

    def is_enabled(self) -> bool:
        return self.enabled

    def _derive_key(self, field_name: str, version: int = CURRENT_VERSION) -> bytes:
        cache_key = f"{field_name}_v{version}"
        with self._lock:
            cached = self._key_cache.get(cache_key)
            if cached is not None:
                return cached

            context = field_name.encode("utf-8") + str(version).encode("utf-8")
            salt = PBKDF2HMAC(
                algorithm=hashes.SHA256(),
                length=SALT_LENGTH,
                salt=context,
                iterations=PBKDF2_ITERATIONS,
            ).derive(self._master_key)
            key = Scrypt(salt=salt, length=KEY_LENGTH, n=2 ** 14, r=8, p=1).derive(self._master_key)

            self._key_cache[cache_key] = key
            return key

    @staticmethod
    def is_encrypted(value: Any) -> bool:
        return isinstance(value, str) and value.startswith(PREFIX + ":") and len(value.split(":")) == 5

    def encrypt(self, value: Optional[str], field_name: str) -> Optional[str]:
        if not self.enabled or not value or self.is_encrypted(value):
            return value

        key = self._derive_key(field_name)
        iv = os.urandom(IV_LENGTH)
        sealed = AESGCM(key).encrypt(iv, value.encode("utf-8"), None)
        # AESGCM appends the 16-byte tag to the ciphertext
        ciphertext, tag = sealed[:-16], sealed[-16:]
        return ":".join([PREFIX, str(CURRENT_VERSION), _b64(iv), _b64(ciphertext), _b64(tag)])

    def decrypt(self, value: Optional[str], field_name: str) -> Optional[str]:
        """Plaintext values are returned as is."""
        if not self.enabled or not value or not self.is_encrypted(value):
            return value

        _, version, iv, ciphertext, tag = value.split(":")
        try:
            key = self._derive_key(field_name, int(version))
            plain = AESGCM(key).decrypt(_unb64(iv), _unb64(ciphertext) + _unb64(tag), None)
        except (InvalidTag, ValueError) as e:
            raise EncryptionError(f"Decryption failed for field {field_name}: {str(e) or 'authentication failed'}") from e
        return plain.decode("utf-8")

    def encrypt_json(self, value: Any, field_name: str) -> Optional[str]:
        if value is None:
            return None
        text = value if isinstance(value, str) else json.dumps(value)
        return self.encrypt(text, field_name)

    def decrypt_json(self, value: Optional[str], field_name: str) -> Any:
        if value is None:
            return None
        text = self.decrypt(value, field_name)
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            return text
