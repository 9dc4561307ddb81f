"""Symmetric encryption of stored OAuth tokens."""

import logging
import os
from pathlib import Path
from typing import Optional, Union

from cryptography.fernet import Fernet, InvalidToken

from ..errors import AuthError

logger = logging.getLogger(__name__)

ENCRYPTION_KEY_ENV = "ORG_MIGRATOR_ENCRYPTION_KEY"


class TokenCipher:
    """Fernet wrapper used by the token manager for credentials at rest."""

    def __init__(self, key: Optional[Union[str, bytes]] = None, key_file: Optional[str] = None):
        """
        Initialize the cipher.

        The key is taken from, in order: `key`, the ORG_MIGRATOR_ENCRYPTION_KEY
        environment variable, `key_file`. If none is available a new key is
        generated and written to `key_file` when one was given.

        Args:
            key: Fernet key (urlsafe base64, 32 bytes)
            key_file: Path used to load or persist the key
        """
        key = key or os.environ.get(ENCRYPTION_KEY_ENV)

        if not key and key_file and Path(key_file).exists():
            key = Path(key_file).read_bytes().strip()

        if not key:
            key = Fernet.generate_key()
            if key_file:
                Path(key_file).parent.mkdir(parents=True, exist_ok=True)
                Path(key_file).write_bytes(key)
                logger.info(f"Generated new encryption key at {key_file}")
            else:
                logger.warning(
                    "No encryption key configured; using an ephemeral key. "
                    "Stored credentials will not survive a restart."
                )

        if isinstance(key, str):
            key = key.encode()
        self._fernet = Fernet(key)

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode()

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        """
        Decrypt a stored token.

        Raises:
            AuthError: if the value was encrypted with another key or is corrupt
        """
        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except InvalidToken as e:
            raise AuthError(
                "Stored credential could not be decrypted",
                reconnect_required=True,
            ) from e
