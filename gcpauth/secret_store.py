"""Pluggable secret storage backends.

Provides the SecretStore ABC and concrete implementations backed by the
OS credential manager (``keyring``), a machine-bound encrypted file
(``cryptography`` Fernet), or process memory. Every backend stores
opaque strings under string keys; backend failures surface as
``PersistenceError``.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import os
import socket
import tempfile

from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING

import keyring
import keyring.errors

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .exceptions import PersistenceError


if TYPE_CHECKING:
    from .config import StoreSettings


logger = logging.getLogger("gcpauth.store")

KDF_ITERATIONS = 480_000
_KEY_CONTEXT = b"gcpauth-v1"


class SecretStore(ABC):
    """Abstract base class for secret storage.

    All methods are async to support both local and OS-service-backed
    stores.
    """

    name = "abstract"

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """Load the secret stored under ``key``.

        Parameters
        ----------
        key : str
            Entry name.

        Returns
        -------
        str or None
            The stored value, or None if not found.

        Raises
        ------
        PersistenceError
            If the backend cannot be read.
        """

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        """Store ``value`` under ``key``, replacing any previous value.

        Raises
        ------
        PersistenceError
            If the backend cannot be written.
        """

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove ``key``. Missing keys are ignored."""


class MemorySecretStore(SecretStore):
    """In-memory secret store for tests and ephemeral sessions."""

    name = "memory"

    def __init__(self) -> None:
        self._data: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> str | None:
        async with self._lock:
            return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        async with self._lock:
            self._data[key] = value

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._data.pop(key, None)


class KeyringSecretStore(SecretStore):
    """OS credential manager store (macOS Keychain, Windows Credential
    Locker, Secret Service).

    Parameters
    ----------
    service_name : str
        Service name for keyring entries (default "gcpauth").
    """

    name = "keyring"

    def __init__(self, service_name: str = "gcpauth") -> None:
        self._service_name = service_name

    async def get(self, key: str) -> str | None:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, keyring.get_password, self._service_name, key)
        except keyring.errors.KeyringError as exc:
            msg = "Could not read from the OS keyring"
            raise PersistenceError(msg, backend=self.name, reason=str(exc)) from exc

    async def set(self, key: str, value: str) -> None:
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(
                None, keyring.set_password, self._service_name, key, value
            )
        except keyring.errors.KeyringError as exc:
            msg = "Could not write to the OS keyring"
            raise PersistenceError(msg, backend=self.name, reason=str(exc)) from exc

    async def delete(self, key: str) -> None:
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, keyring.delete_password, self._service_name, key)
        except keyring.errors.PasswordDeleteError:
            pass
        except keyring.errors.KeyringError as exc:
            msg = "Could not delete from the OS keyring"
            raise PersistenceError(msg, backend=self.name, reason=str(exc)) from exc


def derive_machine_key(salt: bytes, iterations: int = KDF_ITERATIONS) -> bytes:
    """Derive a Fernet key bound to this machine's host name.

    Parameters
    ----------
    salt : bytes
        Per-install random salt.
    iterations : int
        PBKDF2 iteration count.

    Returns
    -------
    bytes
        URL-safe base64 Fernet key.
    """
    kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=32, salt=salt, iterations=iterations)
    password = socket.gethostname().encode() + _KEY_CONTEXT
    return base64.urlsafe_b64encode(kdf.derive(password))


class EncryptedFileSecretStore(SecretStore):
    """Encrypted JSON file store for hosts without a credential manager.

    The file holds a JSON object mapping each key to a Fernet token.
    Unless an explicit key is given, the Fernet key is derived from the
    host name and a salt file kept next to the store, so the file is
    only readable on the machine that wrote it.

    Parameters
    ----------
    path : str or Path
        Location of the encrypted store.
    key : bytes, optional
        Explicit Fernet key; skips derivation.
    iterations : int
        PBKDF2 iteration count used for derivation.
    """

    name = "file"

    def __init__(
        self,
        path: str | Path,
        key: bytes | None = None,
        iterations: int = KDF_ITERATIONS,
    ) -> None:
        self._path = Path(path).expanduser()
        self._key = key
        self._iterations = iterations
        self._fernet: Fernet | None = None
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def salt_path(self) -> Path:
        return self._path.with_name(self._path.name + ".salt")

    def _get_fernet(self) -> Fernet:
        if self._fernet is None:
            key = self._key
            if key is None:
                key = derive_machine_key(self._load_salt(), self._iterations)
            self._fernet = Fernet(key)
        return self._fernet

    def _load_salt(self) -> bytes:
        salt_path = self.salt_path
        if salt_path.exists():
            return salt_path.read_bytes()
        salt = os.urandom(16)
        salt_path.parent.mkdir(parents=True, exist_ok=True)
        salt_path.write_bytes(salt)
        salt_path.chmod(0o600)
        return salt

    def _read_entries(self) -> dict[str, str]:
        if not self._path.exists():
            return {}
        data = json.loads(self._path.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            msg = "Encrypted store is not a JSON object"
            raise ValueError(msg)
        return data

    def _write_entries(self, entries: dict[str, str]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=".gcpauth-", dir=self._path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(entries, fh)
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, self._path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _get_sync(self, key: str) -> str | None:
        token = self._read_entries().get(key)
        if token is None:
            return None
        return self._get_fernet().decrypt(token.encode()).decode()

    def _set_sync(self, key: str, value: str) -> None:
        entries = self._read_entries()
        entries[key] = self._get_fernet().encrypt(value.encode()).decode()
        self._write_entries(entries)

    def _delete_sync(self, key: str) -> None:
        entries = self._read_entries()
        if entries.pop(key, None) is not None:
            self._write_entries(entries)

    async def get(self, key: str) -> str | None:
        async with self._lock:
            try:
                return await asyncio.to_thread(self._get_sync, key)
            except InvalidToken as exc:
                msg = "Session file cannot be decrypted on this machine"
                raise PersistenceError(msg, backend=self.name, path=str(self._path)) from exc
            except (OSError, ValueError) as exc:
                msg = "Could not read the encrypted session file"
                raise PersistenceError(
                    msg, backend=self.name, path=str(self._path), reason=str(exc)
                ) from exc

    async def set(self, key: str, value: str) -> None:
        async with self._lock:
            try:
                await asyncio.to_thread(self._set_sync, key, value)
            except (OSError, ValueError) as exc:
                msg = "Could not write the encrypted session file"
                raise PersistenceError(
                    msg, backend=self.name, path=str(self._path), reason=str(exc)
                ) from exc

    async def delete(self, key: str) -> None:
        async with self._lock:
            try:
                await asyncio.to_thread(self._delete_sync, key)
            except (OSError, ValueError) as exc:
                msg = "Could not update the encrypted session file"
                raise PersistenceError(
                    msg, backend=self.name, path=str(self._path), reason=str(exc)
                ) from exc


def create_secret_store(settings: StoreSettings) -> SecretStore:
    """Create the secret store selected by ``settings.backend``.

    Parameters
    ----------
    settings : StoreSettings
        Store section of the gcpauth settings.

    Returns
    -------
    SecretStore
        A keyring, encrypted-file, or memory store.
    """
    if settings.backend == "file":
        logger.debug("Using encrypted file secret store at %s", settings.path)
        return EncryptedFileSecretStore(settings.path)
    if settings.backend == "memory":
        logger.debug("Using in-memory secret store")
        return MemorySecretStore()
    logger.debug("Using OS keyring secret store (service %r)", settings.service_name)
    return KeyringSecretStore(settings.service_name)
