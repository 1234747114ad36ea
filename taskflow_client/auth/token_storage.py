"""
Credential storage for the TaskFlow session client.

This module persists session credentials in one of two lifetimes: a durable
store that survives restarts (system keyring, or an encrypted file when no
keyring is usable) and an ephemeral store tied to the user's login session
(the XDG runtime directory). Reads try the durable store first; writes for
one login go to the single store selected by the "remember me" flag.
"""

import os
import json
import logging
import base64
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any
from pathlib import Path
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from taskflow_shared.exceptions import StorageError, ErrorCode
from taskflow_shared.interfaces import IKeyValueStorage
from taskflow_shared.models import CredentialPair, SessionRecord, User

logger = logging.getLogger(__name__)


class StorageSlot(Enum):
    """Fixed set of named slots making up a stored session."""
    ACCESS_TOKEN = "auth_access_token"
    REFRESH_TOKEN = "auth_refresh_token"
    TOKEN_EXPIRES_AT = "auth_token_expires_at"
    SESSION_ID = "auth_session_id"
    USER_DATA = "auth_user_data"
    REMEMBER_ME = "auth_remember_me"
    LAST_ACTIVITY = "auth_last_activity"


class MemoryStorage(IKeyValueStorage):
    """Process-local storage. Nothing survives a restart."""

    name = "memory"

    def __init__(self):
        self._data: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)


class KeyringStorage(IKeyValueStorage):
    """Durable storage in the system keyring."""

    name = "keyring"

    def __init__(self, service_name: str = "taskflow-client"):
        self.service_name = service_name

    @staticmethod
    def is_available(service_name: str = "taskflow-client") -> bool:
        """Check if system keyring is available."""
        try:
            import keyring
            test_key = f"{service_name}_test"
            keyring.set_password(service_name, test_key, "test")
            result = keyring.get_password(service_name, test_key)
            keyring.delete_password(service_name, test_key)
            return result == "test"
        except Exception as e:
            logger.debug(f"Keyring not available: {e}")
            return False

    def get(self, key: str) -> Optional[str]:
        import keyring
        try:
            return keyring.get_password(self.service_name, key)
        except Exception as e:
            raise StorageError(f"Keyring read failed for {key}", ErrorCode.STORAGE_READ_FAILED, cause=e) from e

    def set(self, key: str, value: str) -> None:
        import keyring
        try:
            keyring.set_password(self.service_name, key, value)
        except Exception as e:
            raise StorageError(f"Keyring write failed for {key}", ErrorCode.STORAGE_WRITE_FAILED, cause=e) from e

    def remove(self, key: str) -> None:
        import keyring
        from keyring.errors import PasswordDeleteError
        try:
            keyring.delete_password(self.service_name, key)
        except PasswordDeleteError:
            pass
        except Exception as e:
            raise StorageError(f"Keyring delete failed for {key}", ErrorCode.STORAGE_WRITE_FAILED, cause=e) from e


class JSONFileStorage(IKeyValueStorage):
    """Key/value pairs kept in a single JSON file with owner-only permissions."""

    name = "file"

    def __init__(self, path: Path):
        self.path = Path(path)

    def _encode(self, data: Dict[str, str]) -> bytes:
        return json.dumps(data).encode()

    def _decode(self, raw: bytes) -> Dict[str, str]:
        return json.loads(raw.decode())

    def _load(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            return self._decode(self.path.read_bytes())
        except (OSError, ValueError, InvalidToken) as e:
            raise StorageError(
                f"Failed to read {self.path}", ErrorCode.STORAGE_READ_FAILED, cause=e
            ) from e

    def _save(self, data: Dict[str, str]) -> None:
        try:
            if not data:
                self.path.unlink(missing_ok=True)
                return
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_bytes(self._encode(data))
            os.chmod(self.path, 0o600)
        except OSError as e:
            raise StorageError(
                f"Failed to write {self.path}", ErrorCode.STORAGE_WRITE_FAILED, cause=e
            ) from e

    def get(self, key: str) -> Optional[str]:
        return self._load().get(key)

    def set(self, key: str, value: str) -> None:
        data = self._load()
        data[key] = value
        self._save(data)

    def remove(self, key: str) -> None:
        data = self._load()
        if key in data:
            del data[key]
            self._save(data)


class EncryptedFileStorage(JSONFileStorage):
    """
    Durable fallback when no keyring is usable.

    The JSON payload is Fernet-encrypted with a key held in an owner-only key
    file beside the data file.
    """

    name = "encrypted-file"

    def __init__(self, path: Path):
        super().__init__(path)
        self.key_path = self.path.with_suffix('.key')
        self._encryption_key: Optional[bytes] = None

    def _get_encryption_key(self) -> bytes:
        """Get or create encryption key for file storage."""
        if self._encryption_key:
            return self._encryption_key

        if self.key_path.exists():
            self._encryption_key = self.key_path.read_bytes()
            return self._encryption_key

        password = os.urandom(32)
        salt = os.urandom(16)

        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=100000,
        )
        key = base64.urlsafe_b64encode(kdf.derive(password))

        self.key_path.parent.mkdir(parents=True, exist_ok=True)
        self.key_path.write_bytes(key)
        os.chmod(self.key_path, 0o600)

        self._encryption_key = key
        return key

    def _encode(self, data: Dict[str, str]) -> bytes:
        return Fernet(self._get_encryption_key()).encrypt(super()._encode(data))

    def _decode(self, raw: bytes) -> Dict[str, str]:
        return super()._decode(Fernet(self._get_encryption_key()).decrypt(raw))


class EphemeralStorage(JSONFileStorage):
    """
    Storage that lasts as long as the user's login session.

    Lives in ``$XDG_RUNTIME_DIR``, which the OS removes at logout. Without a
    runtime directory it degrades to memory.
    """

    name = "ephemeral"

    def __init__(self, path: Optional[Path] = None):
        super().__init__(path or Path("."))
        self._memory: Optional[MemoryStorage] = None if path else MemoryStorage()

    @classmethod
    def in_runtime_dir(cls, filename: str = "session.json") -> 'EphemeralStorage':
        runtime_dir = os.environ.get('XDG_RUNTIME_DIR')
        if not runtime_dir:
            logger.info("XDG_RUNTIME_DIR not set, ephemeral credentials kept in memory only")
            return cls(None)
        return cls(Path(runtime_dir) / 'taskflow' / filename)

    def get(self, key: str) -> Optional[str]:
        if self._memory is not None:
            return self._memory.get(key)
        return super().get(key)

    def set(self, key: str, value: str) -> None:
        if self._memory is not None:
            self._memory.set(key, value)
        else:
            super().set(key, value)

    def remove(self, key: str) -> None:
        if self._memory is not None:
            self._memory.remove(key)
        else:
            super().remove(key)


class CredentialStore:
    """
    Dual-lifetime credential persistence.

    ``write`` targets exactly one store and removes the slot from the other so
    a slot never lives in both. ``read`` tries durable, then ephemeral, then
    the in-memory fallback. Backend failures never reach callers: the store
    logs them, marks itself degraded and keeps working from memory.
    """

    def __init__(self, durable: IKeyValueStorage, ephemeral: IKeyValueStorage):
        self.durable = durable
        self.ephemeral = ephemeral
        self._fallback = MemoryStorage()
        self._degraded = False

    @classmethod
    def from_config(cls, config) -> 'CredentialStore':
        """Build the default durable/ephemeral pair from client configuration."""
        service_name = config.get_config('storage.service_name', 'taskflow-client')
        keyring_available = (
            bool(config.get_config('storage.use_keyring', True))
            and KeyringStorage.is_available(service_name)
        )

        if keyring_available:
            durable: IKeyValueStorage = KeyringStorage(service_name)
        else:
            durable = EncryptedFileStorage(Path(config.get_durable_storage_path()))

        ephemeral_path = config.get_config('storage.ephemeral_path')
        if ephemeral_path:
            ephemeral = EphemeralStorage(Path(ephemeral_path))
        else:
            ephemeral = EphemeralStorage.in_runtime_dir()

        logger.info(f"Credential store initialized (durable: {durable.name}, ephemeral: {ephemeral.name})")
        return cls(durable, ephemeral)

    @property
    def is_degraded(self) -> bool:
        """True once any backend failed and memory took over."""
        return self._degraded

    def _degrade(self, backend: IKeyValueStorage, operation: str, error: Exception) -> None:
        if not self._degraded:
            logger.warning(f"Credential storage degraded to memory-only ({backend.name} {operation} failed: {error})")
        self._degraded = True

    def write(self, slot: StorageSlot, value: str, durable: bool) -> None:
        target, other = (self.durable, self.ephemeral) if durable else (self.ephemeral, self.durable)
        try:
            target.set(slot.value, value)
            self._fallback.remove(slot.value)
        except StorageError as e:
            self._degrade(target, "write", e)
            self._fallback.set(slot.value, value)
        self._remove_from(other, slot)

    def read(self, slot: StorageSlot) -> Optional[str]:
        for backend in (self.durable, self.ephemeral):
            try:
                value = backend.get(slot.value)
            except StorageError as e:
                self._degrade(backend, "read", e)
                continue
            if value is not None:
                return value
        return self._fallback.get(slot.value)

    def remove(self, slot: StorageSlot) -> None:
        self._remove_from(self.durable, slot)
        self._remove_from(self.ephemeral, slot)
        self._fallback.remove(slot.value)

    def _remove_from(self, backend: IKeyValueStorage, slot: StorageSlot) -> None:
        try:
            backend.remove(slot.value)
        except StorageError as e:
            self._degrade(backend, "remove", e)

    def clear(self) -> None:
        """Empty every slot in both stores. Idempotent, never raises."""
        for slot in StorageSlot:
            self.remove(slot)
        logger.debug("Credential storage cleared")

    # Session record helpers

    def save_record(self, record: SessionRecord) -> None:
        durable = record.remember
        self.save_credentials(record.credentials, durable)
        self.write(StorageSlot.SESSION_ID, record.session_id, durable)
        self.save_identity(record.identity, durable)
        self.write(StorageSlot.REMEMBER_ME, 'true' if record.remember else 'false', durable)
        self.save_last_activity(record.last_activity, durable)

    def save_credentials(self, credentials: CredentialPair, durable: bool) -> None:
        self.write(StorageSlot.ACCESS_TOKEN, credentials.access_token, durable)
        self.write(StorageSlot.REFRESH_TOKEN, credentials.refresh_token, durable)
        self.write(StorageSlot.TOKEN_EXPIRES_AT, credentials.expires_at.isoformat(), durable)

    def save_identity(self, identity: User, durable: bool) -> None:
        self.write(StorageSlot.USER_DATA, json.dumps(identity.to_dict()), durable)

    def save_last_activity(self, last_activity: datetime, durable: bool) -> None:
        self.write(StorageSlot.LAST_ACTIVITY, last_activity.isoformat(), durable)

    def load_record(self) -> Optional[SessionRecord]:
        """
        Reconstruct a session from storage.

        Returns:
            The stored session, or None when any required slot is missing or
            unreadable
        """
        access_token = self.read(StorageSlot.ACCESS_TOKEN)
        refresh_token = self.read(StorageSlot.REFRESH_TOKEN)
        expires_at_str = self.read(StorageSlot.TOKEN_EXPIRES_AT)
        session_id = self.read(StorageSlot.SESSION_ID)
        user_data_str = self.read(StorageSlot.USER_DATA)

        if not (access_token and refresh_token and expires_at_str and session_id and user_data_str):
            return None

        last_activity_str = self.read(StorageSlot.LAST_ACTIVITY)
        remember = self.read(StorageSlot.REMEMBER_ME) == 'true'

        try:
            expires_at = datetime.fromisoformat(expires_at_str)
            identity = User.from_dict(json.loads(user_data_str))
            last_activity = datetime.fromisoformat(last_activity_str) if last_activity_str else datetime.now()
        except (ValueError, TypeError) as e:
            logger.warning(f"Stored session is corrupt, ignoring it: {e}")
            return None

        return SessionRecord(
            identity=identity,
            credentials=CredentialPair(
                access_token=access_token,
                refresh_token=refresh_token,
                expires_at=expires_at
            ),
            session_id=session_id,
            last_activity=last_activity,
            remember=remember
        )

    def stored_location(self, slot: StorageSlot) -> Optional[str]:
        """Name of the backend currently holding ``slot``, for diagnostics."""
        for backend in (self.durable, self.ephemeral, self._fallback):
            try:
                if backend.get(slot.value) is not None:
                    return backend.name
            except StorageError:
                continue
        return None

    def snapshot(self) -> Dict[str, Any]:
        """Slot-to-location map for status output."""
        return {slot.value: self.stored_location(slot) for slot in StorageSlot}
