"""
Key resolution for client-side archive encryption.

A key reference names the symmetric key used to encrypt archives before they
leave the machine. It resolves either to a passphrase supplied through the
environment (stretched with PBKDF2) or to a Fernet key file kept in the keys
directory.
"""

import base64
import os
import re
from typing import Optional

from cryptography.fernet import Fernet
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

PASSPHRASE_ENV = 'OPENCLAW_BACKUP_PASSPHRASE'

# Salt is versioned and bound to the key reference so that the same
# passphrase yields different keys for different references
SALT_PREFIX = b'openclaw_backup_client_key_v1:'
KDF_ITERATIONS = 480000


class KeyUnavailableError(Exception):
    """Raised when a key reference cannot be resolved."""
    pass


def derive_key(passphrase: str, key_ref: str, iterations: int = KDF_ITERATIONS) -> bytes:
    """
    Derive a Fernet key from a passphrase.

    Args:
        passphrase: Secret passphrase
        key_ref: Key reference, mixed into the salt
        iterations: PBKDF2 iterations

    Returns:
        URL-safe base64 encoded 32-byte key
    """
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=SALT_PREFIX + key_ref.encode(),
        iterations=iterations,
    )
    return base64.urlsafe_b64encode(kdf.derive(passphrase.encode()))


def key_filename(key_ref: str) -> str:
    """Map a key reference to a safe file name."""
    safe = re.sub(r'[^A-Za-z0-9._-]', '_', key_ref).strip('.')
    return f"{safe or 'default'}.key"


class KeyResolver:
    """Resolves key references to Fernet instances."""

    def __init__(self, keys_dir: Optional[str] = None, passphrase: Optional[str] = None):
        """
        Args:
            keys_dir: Directory holding ``<key_ref>.key`` files
            passphrase: Explicit passphrase; defaults to $OPENCLAW_BACKUP_PASSPHRASE
        """
        self.keys_dir = keys_dir
        self._passphrase = passphrase

    @property
    def passphrase(self) -> Optional[str]:
        return self._passphrase or os.environ.get(PASSPHRASE_ENV)

    def key_path(self, key_ref: str) -> Optional[str]:
        if not self.keys_dir:
            return None
        return os.path.join(self.keys_dir, key_filename(key_ref))

    def resolve(self, key_ref: str) -> Fernet:
        """
        Resolve a key reference.

        Args:
            key_ref: Key reference from the encryption policy

        Returns:
            Fernet instance for the key

        Raises:
            KeyUnavailableError: If neither a passphrase nor a usable key file exists
        """
        if not key_ref:
            raise KeyUnavailableError("No key reference configured")

        if self.passphrase:
            return Fernet(derive_key(self.passphrase, key_ref))

        path = self.key_path(key_ref)
        if not path or not os.path.exists(path):
            raise KeyUnavailableError(
                f"No key available for {key_ref}: set {PASSPHRASE_ENV} or create {path or 'a key file'}"
            )

        try:
            with open(path, 'rb') as f:
                return Fernet(f.read().strip())
        except (OSError, ValueError) as e:
            raise KeyUnavailableError(f"Key file {path} is unusable: {e}") from e

    def can_resolve(self, key_ref: str) -> bool:
        try:
            self.resolve(key_ref)
            return True
        except KeyUnavailableError:
            return False
