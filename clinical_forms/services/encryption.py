"""
Application-layer encryption for answer data at rest.

Answer values are PHI, so the JSON payloads of answer records are
serialized and Fernet-encrypted before they reach the database. The key
comes from PHI_ENCRYPTION_KEY; without one a throwaway key is generated,
which only suits local development and tests.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from cryptography.fernet import Fernet

from clinical_forms.config import settings

logger = logging.getLogger(__name__)


class EncryptionService:
    """Wraps Fernet symmetric encryption for PHI payloads."""

    def __init__(self, key: str | bytes | None = None):
        raw_key = key or settings.PHI_ENCRYPTION_KEY
        if raw_key:
            self._fernet = Fernet(raw_key.encode() if isinstance(raw_key, str) else raw_key)
        else:
            logger.warning("PHI_ENCRYPTION_KEY is not set; using a per-process key")
            self._fernet = Fernet(Fernet.generate_key())

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a string and return base64-encoded ciphertext."""
        if not plaintext:
            return ""
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt base64-encoded ciphertext back to plaintext."""
        if not ciphertext:
            return ""
        return self._fernet.decrypt(ciphertext.encode()).decode()

    def encrypt_json(self, payload: Any) -> str:
        return self.encrypt(json.dumps(payload, separators=(",", ":")))

    def decrypt_json(self, ciphertext: str | None) -> Any:
        plaintext = self.decrypt(ciphertext or "")
        return json.loads(plaintext) if plaintext else None
