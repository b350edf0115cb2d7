"""Encryption at rest for agent connection credentials."""

import base64
import logging
import os
from pathlib import Path

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from common.errors import ConfigurationError

logger = logging.getLogger(__name__)

SECRET_KEY_ENV = "FLEETDECK_SECRET_KEY"
KDF_ITERATIONS = 100000


class CredentialVault:
    """
    Fernet-based encryption for passwords and private keys.

    The key is either an explicit Fernet key (argument or FLEETDECK_SECRET_KEY)
    or derived from a machine-specific identifier with PBKDF2.
    """

    def __init__(self, secret_key: str | bytes | None = None):
        """
        Initialize the vault.

        Args:
            secret_key: urlsafe base64 Fernet key (falls back to env var, then
                to a key derived from the machine id)
        """
        key = secret_key or os.environ.get(SECRET_KEY_ENV)
        if key:
            self._key = key.encode() if isinstance(key, str) else key
        else:
            self._key = self._derive_encryption_key()
        try:
            self._fernet = Fernet(self._key)
        except ValueError as e:
            raise ConfigurationError(f"Invalid credential key: {e}") from e

    @staticmethod
    def generate_key() -> str:
        """Generate a fresh Fernet key suitable for FLEETDECK_SECRET_KEY."""
        return Fernet.generate_key().decode()

    def _derive_encryption_key(self) -> bytes:
        """Derive a key using the machine id as PBKDF2 salt."""
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=self._get_machine_id().encode(),
            iterations=KDF_ITERATIONS,
        )
        return base64.urlsafe_b64encode(kdf.derive(b"fleetdeck-agent-credentials"))

    def _get_machine_id(self) -> str:
        """Get machine-specific identifier."""
        for candidate in (Path("/etc/machine-id"), Path("/var/lib/dbus/machine-id")):
            if candidate.exists():
                return candidate.read_text().strip()

        import getpass
        import socket

        return f"{socket.gethostname()}-{getpass.getuser()}"

    def encrypt(self, plaintext: str | None) -> str | None:
        """Encrypt a secret; None passes through."""
        if plaintext is None:
            return None
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str | None) -> str | None:
        """
        Decrypt a stored secret.

        Raises:
            ConfigurationError: If the token was produced with another key or is corrupt
        """
        if ciphertext is None:
            return None
        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except InvalidToken as e:
            logger.error("Failed to decrypt stored credential")
            raise ConfigurationError("Unable to decrypt stored credential") from e
