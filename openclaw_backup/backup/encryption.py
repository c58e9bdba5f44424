"""
Archive encryption strategies.

- NoEncryption: archives are stored as-is
- ManagedKeyEncryption: S3 encrypts with a KMS key (SSE-KMS); nothing happens locally
- ClientKeyEncryption: archives are encrypted locally with Fernet before upload,
  one token per fixed-size chunk so large archives never sit in memory

The strategy is chosen once from the encryption policy and used for the
whole backup or restore run.
"""

import io
import os
import shutil
import struct
from typing import BinaryIO, Dict, Optional

from cryptography.fernet import InvalidToken

from openclaw_backup.config import (
    ENCRYPTION_CLIENT_KEY,
    ENCRYPTION_MANAGED_KEY,
    ENCRYPTION_NONE,
    EncryptionPolicy,
)
from openclaw_backup.utils.crypto import KeyResolver, KeyUnavailableError


# Client-key ciphertext layout:
#   MAGIC, then frames of <4-byte big-endian token length><Fernet token>.
# Each token decrypts to <8-byte chunk index><1-byte final flag><chunk data>.
MAGIC = b'OCBKENC1'
CHUNK_SIZE = 4 * 1024 * 1024
FRAME_LENGTH = struct.Struct('>I')
CHUNK_HEADER = struct.Struct('>QB')


class EncryptionError(Exception):
    """Raised when data cannot be encrypted (usually a missing key)."""
    pass


class DecryptionError(Exception):
    """Raised when data cannot be decrypted (wrong key or corrupt ciphertext)."""
    pass


class EncryptionFilter:
    """Identity filter; base class for the other strategies."""

    method = ENCRYPTION_NONE
    key_ref: Optional[str] = None

    @property
    def encrypted(self) -> bool:
        return self.method != ENCRYPTION_NONE

    @property
    def transforms_locally(self) -> bool:
        return False

    def upload_params(self) -> Dict[str, str]:
        """Extra object store parameters for the upload request."""
        return {}

    def encrypt_stream(self, src: BinaryIO, dst: BinaryIO):
        shutil.copyfileobj(src, dst)

    def decrypt_stream(self, src: BinaryIO, dst: BinaryIO):
        shutil.copyfileobj(src, dst)

    def encrypt_for_upload(self, data: bytes) -> bytes:
        out = io.BytesIO()
        self.encrypt_stream(io.BytesIO(data), out)
        return out.getvalue()

    def decrypt_after_download(self, data: bytes) -> bytes:
        out = io.BytesIO()
        self.decrypt_stream(io.BytesIO(data), out)
        return out.getvalue()

    def encrypt_file(self, path: str):
        """Encrypt a file in place (no-op unless the filter transforms locally)."""
        if self.transforms_locally:
            _transform_file(path, self.encrypt_stream)

    def decrypt_file(self, path: str):
        """Decrypt a file in place (no-op unless the filter transforms locally)."""
        if self.transforms_locally:
            _transform_file(path, self.decrypt_stream)


class NoEncryption(EncryptionFilter):
    pass


class ManagedKeyEncryption(EncryptionFilter):
    """
    Server-side encryption with a KMS key.

    S3 encrypts on put and decrypts on get, so the local transforms are
    identity and the key only shows up in the upload parameters.
    """

    method = ENCRYPTION_MANAGED_KEY

    def __init__(self, key_id: str):
        self.key_ref = key_id

    def upload_params(self) -> Dict[str, str]:
        return {
            'ServerSideEncryption': 'aws:kms',
            'SSEKMSKeyId': self.key_ref,
        }


class ClientKeyEncryption(EncryptionFilter):
    """
    Local symmetric encryption (Fernet: AES-128-CBC + HMAC-SHA256).

    Data is split into chunks of ``chunk_size`` bytes and each chunk becomes
    its own Fernet token, so memory use stays bounded by the chunk size. The
    chunk index and a final-chunk flag are sealed inside every token;
    reordered, dropped or appended chunks fail decryption.
    """

    method = ENCRYPTION_CLIENT_KEY

    def __init__(self, key_ref: str, resolver: KeyResolver, chunk_size: int = CHUNK_SIZE):
        self.key_ref = key_ref
        self.resolver = resolver
        self.chunk_size = chunk_size

    @property
    def transforms_locally(self) -> bool:
        return True

    def encrypt_stream(self, src: BinaryIO, dst: BinaryIO):
        """
        Encrypt src into dst chunk by chunk.

        Raises:
            EncryptionError: If the key cannot be resolved
        """
        try:
            fernet = self.resolver.resolve(self.key_ref)
        except KeyUnavailableError as e:
            raise EncryptionError(str(e)) from e

        dst.write(MAGIC)
        index = 0
        chunk = src.read(self.chunk_size)
        while True:
            next_chunk = src.read(self.chunk_size) if len(chunk) == self.chunk_size else b''
            final = not next_chunk
            token = fernet.encrypt(CHUNK_HEADER.pack(index, int(final)) + chunk)
            dst.write(FRAME_LENGTH.pack(len(token)))
            dst.write(token)
            if final:
                break
            chunk = next_chunk
            index += 1

    def decrypt_stream(self, src: BinaryIO, dst: BinaryIO):
        """
        Decrypt src into dst chunk by chunk.

        Raises:
            DecryptionError: If the key is unavailable or wrong, or the data was
                truncated or tampered with
        """
        try:
            fernet = self.resolver.resolve(self.key_ref)
        except KeyUnavailableError as e:
            raise DecryptionError(str(e)) from e

        if src.read(len(MAGIC)) != MAGIC:
            raise DecryptionError(f"Not a client-key encrypted archive (key {self.key_ref})")

        # Fernet tokens are base64 of the chunk plus about 90 bytes of overhead
        max_token = 2 * max(self.chunk_size, CHUNK_SIZE) + 1024
        expected_index = 0
        while True:
            prefix = src.read(FRAME_LENGTH.size)
            if len(prefix) != FRAME_LENGTH.size:
                raise DecryptionError("Encrypted archive is truncated")
            (length,) = FRAME_LENGTH.unpack(prefix)
            if length > max_token:
                raise DecryptionError("Encrypted archive is corrupt (oversized chunk)")
            token = src.read(length)
            if len(token) != length:
                raise DecryptionError("Encrypted archive is truncated")

            try:
                plaintext = fernet.decrypt(token)
            except InvalidToken as e:
                raise DecryptionError(
                    f"Decryption failed for key {self.key_ref}: wrong key or corrupt archive"
                ) from e

            if len(plaintext) < CHUNK_HEADER.size:
                raise DecryptionError("Encrypted archive chunk is malformed")
            index, final = CHUNK_HEADER.unpack_from(plaintext)
            if index != expected_index:
                raise DecryptionError(f"Encrypted archive chunk out of order: {index}")
            dst.write(plaintext[CHUNK_HEADER.size:])

            if final:
                break
            expected_index += 1

        if src.read(1):
            raise DecryptionError("Encrypted archive has trailing data")


def _transform_file(path: str, transform):
    tmp_path = f"{path}.part"
    try:
        with open(path, 'rb') as src, open(tmp_path, 'wb') as dst:
            transform(src, dst)
        os.replace(tmp_path, path)
    finally:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)


def create_filter(policy: EncryptionPolicy, resolver: Optional[KeyResolver] = None) -> EncryptionFilter:
    """
    Factory function to create the filter for an encryption policy.

    Args:
        policy: Encryption policy from the backup configuration
        resolver: Key resolver for client-key encryption

    Returns:
        EncryptionFilter instance

    Raises:
        ValueError: If the policy method is invalid
    """
    if not policy.enabled or policy.method == ENCRYPTION_NONE:
        return NoEncryption()
    elif policy.method == ENCRYPTION_MANAGED_KEY:
        return ManagedKeyEncryption(policy.key_ref)
    elif policy.method == ENCRYPTION_CLIENT_KEY:
        return ClientKeyEncryption(policy.key_ref, resolver or KeyResolver())
    else:
        raise ValueError(f"Invalid encryption method: {policy.method}")
