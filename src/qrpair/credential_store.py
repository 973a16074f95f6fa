"""Secure persistence of device credentials.

This module provides:
- Credential: the ``{deviceId, refreshToken, apiUrl}`` triple
- CredentialStore: encrypted, atomically replaced credential record

The three values are kept under fixed namespaced keys inside a single
record, so a reader observes either the previous or the new credential and
never a mix of both.

Security features:
- AES-256-GCM encryption with a per-installation key file
- File permissions (600 for files, 700 for directory)
- Atomic replace via temporary file + ``os.replace``
- Corrupt or partial records are deleted and read as "not paired"
"""

import asyncio
import contextlib
import json
import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Optional

from qrpair.crypto import KEY_LENGTH, decrypt, encrypt, generate_key
from qrpair.errors import CryptoError, NotAuthenticatedError, StorageError

__all__ = [
    "Credential",
    "CredentialStore",
    "StorageError",
]

logger = logging.getLogger(__name__)

DEVICE_ID_KEY = "qrpair.deviceId"
TOKEN_KEY = "qrpair.refreshToken"
API_URL_KEY = "qrpair.apiUrl"
EXTRAS_KEY = "qrpair.extras"

RECORD_FILE = "credentials.bin"
KEY_FILE = "credentials.key"
RECORD_AAD = b"qrpair-credential-v1"

# Server fields that identify the credential and are never taken from extras
CORE_FIELDS = ("deviceId", "refreshToken", "apiUrl")


@dataclass(frozen=True)
class Credential:
    """Credentials of a paired device.

    Attributes:
        device_id: Identifier assigned by the server.
        refresh_token: Bearer token for authenticated requests.
        api_url: Server origin the device is paired with.
        extras: Additional fields returned by the server.
    """

    device_id: str
    refresh_token: str
    api_url: str
    extras: dict[str, Any] = field(default_factory=dict)

    def __repr__(self) -> str:
        # keep the token out of logs and tracebacks
        return (
            f"Credential(device_id={self.device_id!r}, "
            f"refresh_token='***', api_url={self.api_url!r})"
        )

    def to_record(self) -> dict[str, Any]:
        """Convert to the persisted key/value record."""
        return {
            DEVICE_ID_KEY: self.device_id,
            TOKEN_KEY: self.refresh_token,
            API_URL_KEY: self.api_url,
            EXTRAS_KEY: self.extras,
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "Credential":
        """Create from a persisted record.

        Raises:
            StorageError: If any of the three keys is missing or empty.
        """
        values = [record.get(key) for key in (DEVICE_ID_KEY, TOKEN_KEY, API_URL_KEY)]
        if not all(isinstance(v, str) and v for v in values):
            raise StorageError("Partial credential record")
        extras = record.get(EXTRAS_KEY)
        device_id, refresh_token, api_url = values
        return cls(
            device_id=device_id,
            refresh_token=refresh_token,
            api_url=api_url,
            extras=extras if isinstance(extras, dict) else {},
        )

    def merged(
        self,
        refresh_token: Optional[str] = None,
        extras: Optional[dict[str, Any]] = None,
    ) -> "Credential":
        """Return a copy with a rotated token and/or additional extras.

        ``device_id`` and ``api_url`` never change through a merge.
        """
        new_extras = dict(self.extras)
        for key, value in (extras or {}).items():
            if key not in CORE_FIELDS:
                new_extras[key] = value
        return replace(
            self,
            refresh_token=refresh_token or self.refresh_token,
            extras=new_extras,
        )


class CredentialStore:
    """Encrypted file-based credential storage.

    Attributes:
        directory: Storage directory path.
    """

    def __init__(self, directory: Path) -> None:
        """Initialize storage.

        The directory is created on first write.

        Args:
            directory: Path to storage directory.
        """
        self.directory = Path(directory).expanduser()
        self._lock = asyncio.Lock()

    @property
    def record_path(self) -> Path:
        return self.directory / RECORD_FILE

    @property
    def key_path(self) -> Path:
        return self.directory / KEY_FILE

    def _ensure_directory(self) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        os.chmod(self.directory, 0o700)

    def _write_private(self, path: Path, data: bytes) -> None:
        """Atomically replace ``path`` with owner-only permissions."""
        tmp_path = path.with_name(f".{path.name}.tmp")
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        try:
            try:
                os.write(fd, data)
                os.fsync(fd)
            finally:
                os.close(fd)
            os.replace(tmp_path, path)
        except OSError:
            with contextlib.suppress(OSError):
                tmp_path.unlink()
            raise

    def _load_key(self, create: bool) -> Optional[bytes]:
        """Load the record key, generating one when ``create`` is set.

        A key file of the wrong length cannot decrypt anything, so it is
        replaced when creating and reported as corrupt otherwise.
        """
        if self.key_path.exists():
            key = self.key_path.read_bytes()
            if len(key) == KEY_LENGTH:
                return key
            if not create:
                raise StorageError("Credential key file is corrupt")
            logger.warning("Replacing corrupt credential key file")
        elif not create:
            return None
        key = generate_key()
        self._write_private(self.key_path, key)
        logger.debug("Generated credential encryption key")
        return key

    def _read(self) -> Optional[Credential]:
        """Read and decrypt the record.

        Raises:
            StorageError: If the record exists but cannot be used.
        """
        if not self.record_path.exists():
            return None

        key = self._load_key(create=False)
        if key is None:
            raise StorageError("Credential record present without a key")

        try:
            plaintext = decrypt(key, self.record_path.read_bytes(), RECORD_AAD)
            record = json.loads(plaintext)
        except (CryptoError, ValueError) as e:
            raise StorageError(f"Unreadable credential record: {e}") from e

        if not isinstance(record, dict):
            raise StorageError("Credential record is not an object")
        return Credential.from_record(record)

    def _write(self, credential: Credential) -> None:
        self._ensure_directory()
        key = self._load_key(create=True)
        plaintext = json.dumps(credential.to_record()).encode()
        self._write_private(self.record_path, encrypt(key, plaintext, RECORD_AAD))

    def _remove_record(self) -> bool:
        if self.record_path.exists():
            self.record_path.unlink()
            return True
        return False

    async def get_auth_data(self) -> Optional[Credential]:
        """Get the stored credential.

        A record that cannot be read back completely is deleted.

        Returns:
            Credential if a complete one is stored, None otherwise.
        """
        try:
            return self._read()
        except StorageError as e:
            logger.error(f"Discarding stored credentials: {e}")
            try:
                self._remove_record()
            except OSError as remove_error:
                logger.error(f"Failed to remove credentials: {remove_error}")
            return None
        except OSError as e:
            logger.error(f"Failed to read credentials: {e}")
            return None

    async def is_authenticated(self) -> bool:
        """Check if a complete credential is stored."""
        return await self.get_auth_data() is not None

    async def save_auth_data(self, credential: Credential) -> None:
        """Replace the stored credential.

        Raises:
            StorageError: If the record could not be written.
        """
        async with self._lock:
            try:
                self._write(credential)
            except OSError as e:
                raise StorageError(f"Failed to save credentials: {e}") from e
        logger.info(f"Stored credentials for device {credential.device_id}")

    async def merge(
        self,
        refresh_token: Optional[str] = None,
        extras: Optional[dict[str, Any]] = None,
    ) -> Credential:
        """Partially update the stored credential.

        Args:
            refresh_token: Rotated token; None keeps the current one.
            extras: Additional server fields to keep.

        Returns:
            The credential now stored.

        Raises:
            NotAuthenticatedError: If nothing is stored.
            StorageError: If the record could not be written.
        """
        async with self._lock:
            current = await self.get_auth_data()
            if current is None:
                raise NotAuthenticatedError("No stored credentials to update")
            updated = current.merged(refresh_token=refresh_token, extras=extras)
            try:
                self._write(updated)
            except OSError as e:
                raise StorageError(f"Failed to update credentials: {e}") from e
        if updated.refresh_token != current.refresh_token:
            logger.info("Stored rotated refresh token")
        return updated

    async def clear(self) -> None:
        """Delete the stored credential.

        The encryption key is kept for the next pairing.
        """
        async with self._lock:
            try:
                removed = self._remove_record()
            except OSError as e:
                raise StorageError(f"Failed to clear credentials: {e}") from e
        if removed:
            logger.info("Cleared stored credentials")
