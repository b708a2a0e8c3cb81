"""
Credential vaults.

The session store persists tokens through a ``CredentialVault`` so the storage
and encryption mechanism can be swapped without touching the API client.
"""
import base64
from abc import ABC, abstractmethod
from typing import Dict, Optional

import structlog
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

logger = structlog.get_logger(__name__)


class CredentialVault(ABC):
    """Opaque key-value store for sensitive session values."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Return the stored value or None."""

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """Store a value."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove a value if present."""

    @abstractmethod
    def clear(self) -> None:
        """Remove every value held by this vault."""


class MemoryVault(CredentialVault):
    """Process-local vault; values vanish with the process."""

    def __init__(self) -> None:
        self._values: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._values.get(key)

    def set(self, key: str, value: str) -> None:
        self._values[key] = value

    def delete(self, key: str) -> None:
        self._values.pop(key, None)

    def clear(self) -> None:
        self._values.clear()


class EncryptedVault(CredentialVault):
    """
    Vault wrapper that encrypts values with Fernet before handing them on.

    The key is derived from a passphrase with PBKDF2-HMAC-SHA256. Values that
    fail to decrypt (tampered, or written under another passphrase) read as
    missing.
    """

    def __init__(
        self,
        inner: CredentialVault,
        secret: str,
        salt: bytes = b"paylo_credential_vault",
        iterations: int = 100_000,
    ):
        """
        Initialize encrypted vault.

        Args:
            inner: Vault that stores the ciphertext
            secret: Passphrase used to derive the encryption key
            salt: KDF salt
            iterations: PBKDF2 iterations
        """
        if not secret:
            raise ValueError("EncryptedVault requires a non-empty secret")
        self.inner = inner
        self._fernet = Fernet(self._derive_key(secret, salt, iterations))

    @staticmethod
    def _derive_key(secret: str, salt: bytes, iterations: int) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=iterations,
        )
        return base64.urlsafe_b64encode(kdf.derive(secret.encode()))

    def get(self, key: str) -> Optional[str]:
        ciphertext = self.inner.get(key)
        if ciphertext is None:
            return None
        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except InvalidToken:
            logger.warning("vault_value_undecryptable", key=key)
            return None

    def set(self, key: str, value: str) -> None:
        self.inner.set(key, self._fernet.encrypt(value.encode()).decode())

    def delete(self, key: str) -> None:
        self.inner.delete(key)

    def clear(self) -> None:
        self.inner.clear()
