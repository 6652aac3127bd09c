"""
Storage collaborators for encrypted key material

A storage backend only ever holds an ``EncryptedBlob`` and a small
metadata record (session mode and public key). Plaintext secrets and
passwords are never handed to storage.

Backends:
- KeyringBlobStorage: the operating system keyring
- FileBlobStorage: JSON files in a private directory
- MemoryBlobStorage: process memory, for tests and ephemeral use
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Union
import json
import logging
import os

import aiofiles
import keyring
from keyring.errors import KeyringError, PasswordDeleteError
from pydantic import BaseModel, Field, ValidationError

from .errors import CorruptedBlob, StorageError
from .vault import EncryptedBlob

logger = logging.getLogger("keyhold.storage")


class SessionMetadata(BaseModel):
    """Non-secret record persisted next to the blob"""

    mode: str = Field(..., description="Session mode at the time of saving")
    public_key: str = Field(..., description="Public key hex")


class BlobStorage(ABC):
    """Interface the identity session uses to persist key material"""

    @abstractmethod
    async def save(self, blob: EncryptedBlob) -> None:
        """Persist blob, replacing any previous one"""

    @abstractmethod
    async def load(self) -> Optional[EncryptedBlob]:
        """Load the persisted blob, or None"""

    @abstractmethod
    async def delete(self) -> None:
        """Delete blob and metadata; a no-op when nothing is stored"""

    @abstractmethod
    async def save_metadata(self, metadata: SessionMetadata) -> None:
        pass

    @abstractmethod
    async def load_metadata(self) -> Optional[SessionMetadata]:
        pass


def _parse_metadata(text: str) -> SessionMetadata:
    try:
        return SessionMetadata.model_validate_json(text)
    except ValidationError as e:
        raise CorruptedBlob(f"Malformed session metadata: {e}") from e


class MemoryBlobStorage(BlobStorage):
    """Keeps the serialized blob in memory"""

    def __init__(self):
        self._blob: Optional[str] = None
        self._metadata: Optional[str] = None

    async def save(self, blob: EncryptedBlob) -> None:
        self._blob = blob.to_json()

    async def load(self) -> Optional[EncryptedBlob]:
        if self._blob is None:
            return None
        return EncryptedBlob.from_json(self._blob)

    async def delete(self) -> None:
        self._blob = None
        self._metadata = None

    async def save_metadata(self, metadata: SessionMetadata) -> None:
        self._metadata = metadata.model_dump_json()

    async def load_metadata(self) -> Optional[SessionMetadata]:
        if self._metadata is None:
            return None
        return _parse_metadata(self._metadata)


class KeyringBlobStorage(BlobStorage):
    """Stores the blob in the OS keyring under a per-user entry"""

    def __init__(self, user_id: str = "default", service_name: str = "keyhold"):
        self.user_id = user_id
        self.service_name = service_name
        self.blob_key = f"encrypted_key_{user_id}"
        self.metadata_key = f"session_{user_id}"

    def _get(self, name: str) -> Optional[str]:
        try:
            return keyring.get_password(self.service_name, name)
        except KeyringError as e:
            raise StorageError(f"Error reading from keyring: {e}") from e

    def _set(self, name: str, value: str) -> None:
        try:
            keyring.set_password(self.service_name, name, value)
        except KeyringError as e:
            raise StorageError(f"Error writing to keyring: {e}") from e

    def _delete(self, name: str) -> None:
        try:
            keyring.delete_password(self.service_name, name)
        except PasswordDeleteError:
            # Nothing stored under this name
            pass
        except KeyringError as e:
            raise StorageError(f"Error deleting from keyring: {e}") from e

    async def save(self, blob: EncryptedBlob) -> None:
        self._set(self.blob_key, blob.to_json())
        logger.debug("Saved encrypted key for %s to keyring", self.user_id)

    async def load(self) -> Optional[EncryptedBlob]:
        blob_json = self._get(self.blob_key)
        if not blob_json:
            return None
        return EncryptedBlob.from_json(blob_json)

    async def delete(self) -> None:
        self._delete(self.blob_key)
        self._delete(self.metadata_key)
        logger.info("Deleted stored key material for %s", self.user_id)

    async def save_metadata(self, metadata: SessionMetadata) -> None:
        self._set(self.metadata_key, metadata.model_dump_json())

    async def load_metadata(self) -> Optional[SessionMetadata]:
        metadata_json = self._get(self.metadata_key)
        if not metadata_json:
            return None
        return _parse_metadata(metadata_json)


class FileBlobStorage(BlobStorage):
    """
    Stores the blob as JSON files in a private directory

    Layout::

        <base_path>/
        ├── key.json        # EncryptedBlob
        └── session.json    # SessionMetadata
    """

    BLOB_FILENAME = "key.json"
    METADATA_FILENAME = "session.json"

    def __init__(self, base_path: Union[str, Path]):
        self.base_path = Path(base_path).expanduser()

    @property
    def blob_path(self) -> Path:
        return self.base_path / self.BLOB_FILENAME

    @property
    def metadata_path(self) -> Path:
        return self.base_path / self.METADATA_FILENAME

    async def _write_private(self, file_path: Path, content: str) -> None:
        """Write content atomically with owner-only permissions"""
        try:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = file_path.with_suffix(file_path.suffix + ".tmp")
            fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            os.close(fd)
            async with aiofiles.open(tmp_path, 'w', encoding='utf-8') as f:
                await f.write(content)
            os.replace(tmp_path, file_path)
        except OSError as e:
            raise StorageError(f"Error writing {file_path}: {e}") from e

    async def _read(self, file_path: Path) -> Optional[str]:
        try:
            if not file_path.exists():
                return None
            async with aiofiles.open(file_path, 'r', encoding='utf-8') as f:
                return await f.read()
        except OSError as e:
            raise StorageError(f"Error reading {file_path}: {e}") from e

    async def save(self, blob: EncryptedBlob) -> None:
        await self._write_private(self.blob_path, json.dumps(blob.to_dict(), indent=2))
        logger.debug("Saved encrypted key to %s", self.blob_path)

    async def load(self) -> Optional[EncryptedBlob]:
        content = await self._read(self.blob_path)
        if content is None:
            return None
        return EncryptedBlob.from_json(content)

    async def delete(self) -> None:
        for file_path in (self.blob_path, self.metadata_path):
            try:
                file_path.unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                raise StorageError(f"Error deleting {file_path}: {e}") from e
        logger.info("Deleted stored key material in %s", self.base_path)

    async def save_metadata(self, metadata: SessionMetadata) -> None:
        await self._write_private(self.metadata_path, metadata.model_dump_json(indent=2))

    async def load_metadata(self) -> Optional[SessionMetadata]:
        content = await self._read(self.metadata_path)
        if content is None:
            return None
        return _parse_metadata(content)
