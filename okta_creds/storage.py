"""Secure key/value storage for cached credentials.

Two backends implement :class:`SecureStorage`: the OS keyring (macOS
Keychain, Windows Credential Locker ...) through ``keyring``, and
Fernet-encrypted files for platforms without a usable keyring.  The backend
is picked once by :func:`select_storage`.
"""

import abc
import hashlib
import logging
import os
import sys
import tempfile
import threading

import keyring
import keyring.errors
from cryptography.fernet import Fernet, InvalidToken

from .errors import ConfigurationError, StorageError

logger = logging.getLogger(__name__)

KEYRING_SERVICE = "okta-creds"
KEY_ENV_VAR = "OKTA_CREDS_CACHE_KEY"
KEY_FILE_NAME = ".key"


class SecureStorage(abc.ABC):
    """Opaque ``read`` / ``write`` / ``delete`` over byte values."""

    @abc.abstractmethod
    def read(self, key):
        """Return the stored bytes for *key*, or None when absent."""

    @abc.abstractmethod
    def write(self, key, data):
        """Store *data* under *key*, replacing any previous value atomically."""

    @abc.abstractmethod
    def delete(self, key):
        """Remove *key*; absent keys are not an error."""


class KeyringStorage(SecureStorage):
    def __init__(self, service=KEYRING_SERVICE):
        self.service = service

    def read(self, key):
        try:
            value = keyring.get_password(self.service, key)
        except keyring.errors.KeyringError as exc:
            raise StorageError(f"cannot read {key} from keyring: {exc.__class__.__name__}") from exc
        return value.encode("utf-8") if value is not None else None

    def write(self, key, data):
        try:
            keyring.set_password(self.service, key, data.decode("utf-8"))
        except keyring.errors.KeyringError as exc:
            raise StorageError(f"cannot write {key} to keyring: {exc.__class__.__name__}") from exc

    def delete(self, key):
        try:
            keyring.delete_password(self.service, key)
        except keyring.errors.PasswordDeleteError:
            logger.debug("No keyring entry for %s", key)
        except keyring.errors.KeyringError as exc:
            raise StorageError(f"cannot delete {key} from keyring: {exc.__class__.__name__}") from exc


class EncryptedFileStorage(SecureStorage):
    """One Fernet-encrypted file per key inside *directory*.

    The encryption key comes from ``OKTA_CREDS_CACHE_KEY`` or a key file
    generated next to the entries with mode 0600.
    """

    def __init__(self, directory, key=None):
        self.directory = directory
        self._key = key
        self._fernet = None
        self._fernet_lock = threading.Lock()

    def _ensure_directory(self):
        os.makedirs(self.directory, mode=0o700, exist_ok=True)

    def _load_key(self):
        if self._key:
            return self._key
        env_key = os.environ.get(KEY_ENV_VAR)
        if env_key:
            return env_key.encode()

        self._ensure_directory()
        key_path = os.path.join(self.directory, KEY_FILE_NAME)
        if os.path.exists(key_path):
            return self._read_key(key_path)

        # The key file only ever appears complete: it is written under a
        # temporary name and hard-linked into place, and the first link wins.
        key = Fernet.generate_key()
        fd, tmp_path = tempfile.mkstemp(dir=self.directory, prefix=".tmp-key-")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(key)
            os.chmod(tmp_path, 0o600)
            try:
                os.link(tmp_path, key_path)
            except FileExistsError:
                return self._read_key(key_path)
        finally:
            os.remove(tmp_path)
        logger.debug("Generated cache encryption key at %s", key_path)
        return key

    def _read_key(self, key_path):
        with open(key_path, "rb") as fh:
            return fh.read().strip()

    @property
    def fernet(self):
        with self._fernet_lock:
            if self._fernet is None:
                try:
                    self._fernet = Fernet(self._load_key())
                except ValueError:
                    raise ConfigurationError("cache encryption key is not a valid Fernet key") from None
            return self._fernet

    def _path(self, key):
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
        return os.path.join(self.directory, f"{digest}.cred")

    def read(self, key):
        path = self._path(key)
        try:
            with open(path, "rb") as fh:
                token = fh.read()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise StorageError(f"cannot read cache entry for {key}: {exc.strerror}") from exc
        try:
            return self.fernet.decrypt(token)
        except InvalidToken:
            raise StorageError(f"cache entry for {key} cannot be decrypted") from None

    def write(self, key, data):
        self._ensure_directory()
        token = self.fernet.encrypt(data)
        fd, tmp_path = tempfile.mkstemp(dir=self.directory, prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(token)
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self._path(key))
        except OSError as exc:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise StorageError(f"cannot write cache entry for {key}: {exc.strerror}") from exc

    def delete(self, key):
        try:
            os.remove(self._path(key))
        except FileNotFoundError:
            logger.debug("No cache file for %s", key)
        except OSError as exc:
            raise StorageError(f"cannot delete cache entry for {key}: {exc.strerror}") from exc


def select_storage(settings, platform=None):
    """Build the storage backend named by ``settings.storage``.

    ``auto`` uses the keyring on macOS and Windows and encrypted files
    elsewhere, where a keyring daemon is often missing.
    """
    platform = platform or sys.platform
    backend = settings.storage
    if backend == "auto":
        backend = "file" if platform.startswith("linux") else "keyring"
    if backend == "keyring":
        return KeyringStorage()
    if backend == "file":
        return EncryptedFileStorage(settings.cache_dir)
    raise ConfigurationError(f"unknown storage backend {backend!r}")
