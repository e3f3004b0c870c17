"""
Storage backends for the persisted session.

Implements the async key-value contract (get_item/set_item/remove_item)
on top of process memory, the system keyring, or an encrypted file.
"""

import asyncio
import base64
import json
import logging
import os
import threading
from pathlib import Path
from typing import Dict, Optional

import keyring
from keyring.errors import KeyringError, PasswordDeleteError
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from ..shared.exceptions import SessionStorageError
from ..shared.interfaces import IStorage

logger = logging.getLogger(__name__)

DEFAULT_SERVICE_NAME = "authflow"


def default_storage_dir() -> Path:
    """Directory for file-based storage, following XDG conventions."""
    xdg_config = os.environ.get('XDG_CONFIG_HOME')
    if xdg_config:
        return Path(xdg_config) / 'authflow'
    return Path.home() / '.config' / 'authflow'


class MemoryStorage(IStorage):
    """In-process storage. Nothing survives a restart."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._items: Dict[str, str] = dict(initial or {})

    async def get_item(self, key: str) -> Optional[str]:
        return self._items.get(key)

    async def set_item(self, key: str, value: str) -> None:
        self._items[key] = value

    async def remove_item(self, key: str) -> None:
        self._items.pop(key, None)


class KeyringStorage(IStorage):
    """
    Storage in the system keyring.

    Each key becomes one password entry under ``service_name``.
    """

    def __init__(self, service_name: str = DEFAULT_SERVICE_NAME):
        self.service_name = service_name

    @staticmethod
    def is_available(service_name: str = DEFAULT_SERVICE_NAME) -> bool:
        """Check if the system keyring works by round-tripping a sentinel value."""
        check_key = f"{service_name}_availability_check"
        try:
            keyring.set_password(service_name, check_key, "available")
            result = keyring.get_password(service_name, check_key)
            keyring.delete_password(service_name, check_key)
            return result == "available"
        except KeyringError as e:
            logger.debug(f"Keyring not available: {e}")
            return False

    # Keyring backends block (D-Bus, macOS Keychain), so every call runs in a
    # worker thread.
    async def get_item(self, key: str) -> Optional[str]:
        try:
            return await asyncio.to_thread(keyring.get_password, self.service_name, key)
        except KeyringError as e:
            logger.error(f"Failed to read '{key}' from keyring: {e}")
            raise SessionStorageError(f"Failed to read '{key}' from keyring: {e}", cause=e)

    async def set_item(self, key: str, value: str) -> None:
        try:
            await asyncio.to_thread(keyring.set_password, self.service_name, key, value)
        except KeyringError as e:
            logger.error(f"Failed to write '{key}' to keyring: {e}")
            raise SessionStorageError(f"Failed to write '{key}' to keyring: {e}", cause=e)

    async def remove_item(self, key: str) -> None:
        try:
            await asyncio.to_thread(keyring.delete_password, self.service_name, key)
        except PasswordDeleteError:
            # Nothing stored under this key
            pass
        except KeyringError as e:
            logger.error(f"Failed to remove '{key}' from keyring: {e}")
            raise SessionStorageError(f"Failed to remove '{key}' from keyring: {e}", cause=e)


class EncryptedFileStorage(IStorage):
    """
    Storage in a single Fernet-encrypted JSON file.

    The encryption key comes from, in order: the ``encryption_key`` argument,
    a ``passphrase`` run through PBKDF2, the system keyring, or a key file
    next to the storage file (mode 0600).
    """

    def __init__(
        self,
        storage_path: Optional[str] = None,
        service_name: str = DEFAULT_SERVICE_NAME,
        encryption_key: Optional[bytes] = None,
        passphrase: Optional[str] = None,
        use_keyring: bool = True
    ):
        self.storage_path = Path(storage_path) if storage_path else default_storage_dir() / 'session.enc'
        self.service_name = service_name
        self._passphrase = passphrase
        self._use_keyring = use_keyring
        self._encryption_key: Optional[bytes] = encryption_key
        self._file_lock = threading.Lock()

        logger.info(f"Encrypted file storage at {self.storage_path}")

    @property
    def _key_path(self) -> Path:
        return self.storage_path.with_suffix(self.storage_path.suffix + '.key')

    @property
    def _salt_path(self) -> Path:
        return self.storage_path.with_suffix(self.storage_path.suffix + '.salt')

    def _derive_key(self, passphrase: str) -> bytes:
        """Derive a Fernet key from a passphrase with a persisted salt."""
        if self._salt_path.exists():
            salt = self._salt_path.read_bytes()
        else:
            salt = os.urandom(16)
            self._write_private(self._salt_path, salt)

        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=100000,
        )
        return base64.urlsafe_b64encode(kdf.derive(passphrase.encode()))

    def _get_encryption_key(self) -> bytes:
        """Get or create the encryption key."""
        if self._encryption_key:
            return self._encryption_key

        if self._passphrase is not None:
            self._encryption_key = self._derive_key(self._passphrase)
            return self._encryption_key

        if self._use_keyring:
            try:
                stored_key = keyring.get_password(self.service_name, "encryption_key")
                if stored_key:
                    self._encryption_key = stored_key.encode()
                    return self._encryption_key
            except KeyringError as e:
                logger.warning(f"Failed to get encryption key from keyring: {e}")

        if self._key_path.exists():
            self._encryption_key = self._key_path.read_bytes().strip()
            return self._encryption_key

        key = Fernet.generate_key()
        stored_in_keyring = False
        if self._use_keyring:
            try:
                keyring.set_password(self.service_name, "encryption_key", key.decode())
                stored_in_keyring = True
            except KeyringError as e:
                logger.warning(f"Failed to store encryption key in keyring: {e}")

        if not stored_in_keyring:
            self._write_private(self._key_path, key)

        self._encryption_key = key
        return key

    def _write_private(self, path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        os.chmod(path, 0o600)

    def _load_all(self) -> Dict[str, str]:
        if not self.storage_path.exists():
            return {}

        try:
            encrypted_data = self.storage_path.read_bytes()
            decrypted = Fernet(self._get_encryption_key()).decrypt(encrypted_data).decode()
            items = json.loads(decrypted)
        except (InvalidToken, ValueError) as e:
            logger.warning(f"Failed to read storage file {self.storage_path}: {e}")
            return {}
        except OSError as e:
            raise SessionStorageError(f"Failed to read storage file: {e}", cause=e)

        if not isinstance(items, dict):
            logger.warning(f"Unexpected content in storage file {self.storage_path}")
            return {}
        return items

    def _save_all(self, items: Dict[str, str]) -> None:
        try:
            if not items:
                if self.storage_path.exists():
                    self.storage_path.unlink()
                return

            encrypted = Fernet(self._get_encryption_key()).encrypt(json.dumps(items).encode())
            self._write_private(self.storage_path, encrypted)
        except OSError as e:
            logger.error(f"Failed to write storage file: {e}")
            raise SessionStorageError(f"Failed to write storage file: {e}", cause=e)

    def _sync_get_item(self, key: str) -> Optional[str]:
        with self._file_lock:
            value = self._load_all().get(key)
        return value if isinstance(value, str) else None

    def _sync_set_item(self, key: str, value: str) -> None:
        with self._file_lock:
            items = self._load_all()
            items[key] = value
            self._save_all(items)

    def _sync_remove_item(self, key: str) -> None:
        with self._file_lock:
            items = self._load_all()
            if key in items:
                del items[key]
                self._save_all(items)

    # File I/O, key derivation and keyring lookups all block; they run in a
    # worker thread, one read-modify-write at a time.
    async def get_item(self, key: str) -> Optional[str]:
        return await asyncio.to_thread(self._sync_get_item, key)

    async def set_item(self, key: str, value: str) -> None:
        await asyncio.to_thread(self._sync_set_item, key, value)

    async def remove_item(self, key: str) -> None:
        await asyncio.to_thread(self._sync_remove_item, key)


def create_storage(
    backend: str = "memory",
    service_name: str = DEFAULT_SERVICE_NAME,
    storage_path: Optional[str] = None
) -> IStorage:
    """
    Build a storage backend by name.

    Args:
        backend: ``memory``, ``keyring``, ``file`` or ``auto`` (keyring when
            it works, encrypted file otherwise)
        service_name: Keyring service name
        storage_path: Path of the encrypted file

    Returns:
        Storage instance
    """
    if backend == "memory":
        return MemoryStorage()
    if backend == "keyring":
        return KeyringStorage(service_name)
    if backend == "file":
        return EncryptedFileStorage(storage_path, service_name)
    if backend == "auto":
        if KeyringStorage.is_available(service_name):
            return KeyringStorage(service_name)
        return EncryptedFileStorage(storage_path, service_name, use_keyring=False)

    raise ValueError(f"Unknown storage backend: {backend}")
