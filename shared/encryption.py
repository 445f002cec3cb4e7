"""Encryption of the Notion API token stored in the task cache."""

import base64
import logging
import os
from typing import Optional
from cryptography.fernet import Fernet

logger = logging.getLogger(__name__)

ENCRYPTION_KEY_ENV = 'TASK_ENCRYPTION_KEY'


class EncryptionService:
    """Fernet (AES-128-CBC + HMAC) wrapper for secrets at rest."""

    def __init__(self, encryption_key: Optional[str] = None):
        """
        Initialize encryption service.

        Args:
            encryption_key: Fernet key. Falls back to TASK_ENCRYPTION_KEY,
                          then to a throwaway key that cannot decrypt
                          anything stored by a previous process
        """
        key = encryption_key or os.getenv(ENCRYPTION_KEY_ENV)
        if key:
            self.key = key.encode()
        else:
            logger.warning(f"{ENCRYPTION_KEY_ENV} not set; stored credentials will not survive a restart")
            self.key = Fernet.generate_key()

        self.cipher = Fernet(self.key)

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a secret for storage.

        Args:
            plaintext: The string to encrypt

        Returns:
            Base64-encoded Fernet token, or "" for empty input
        """
        if not plaintext:
            return ""

        token = self.cipher.encrypt(plaintext.encode())
        return base64.b64encode(token).decode()

    def decrypt(self, ciphertext: str) -> str:
        """
        Decrypt a value produced by ``encrypt``.

        Raises:
            cryptography.fernet.InvalidToken: If the key does not match
        """
        if not ciphertext:
            return ""

        token = base64.b64decode(ciphertext.encode())
        return self.cipher.decrypt(token).decode()

    @staticmethod
    def generate_key() -> str:
        """Generate a new key suitable for TASK_ENCRYPTION_KEY."""
        return Fernet.generate_key().decode()
