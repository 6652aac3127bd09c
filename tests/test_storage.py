"""Tests for encrypted key storage backends."""

from __future__ import annotations

import stat
from typing import Dict, Tuple

import keyring
import pytest
from keyring.errors import KeyringError, PasswordDeleteError

from keyhold.core.errors import CorruptedBlob, StorageError
from keyhold.core.storage import (
    FileBlobStorage,
    KeyringBlobStorage,
    MemoryBlobStorage,
    SessionMetadata,
)
from keyhold.core.vault import EncryptedBlob, Vault


@pytest.fixture
def blob(vault: Vault) -> EncryptedBlob:
    return vault.encrypt(b"\x07" * 32, "pw")


@pytest.fixture
def fake_keyring(monkeypatch):
    """Replace the keyring backend functions with a dict."""
    store: Dict[Tuple[str, str], str] = {}

    def get_password(service, name):
        return store.get((service, name))

    def set_password(service, name, value):
        store[(service, name)] = value

    def delete_password(service, name):
        if (service, name) not in store:
            raise PasswordDeleteError("not found")
        del store[(service, name)]

    monkeypatch.setattr(keyring, "get_password", get_password)
    monkeypatch.setattr(keyring, "set_password", set_password)
    monkeypatch.setattr(keyring, "delete_password", delete_password)
    return store


METADATA = SessionMetadata(mode="local_encrypted", public_key="a" * 64)


# ---------------------------------------------------------------------------
# Memory
# ---------------------------------------------------------------------------


class TestMemoryBlobStorage:
    """Tests for the in-memory backend."""

    @pytest.mark.asyncio
    async def test_empty(self) -> None:
        storage = MemoryBlobStorage()
        assert await storage.load() is None
        assert await storage.load_metadata() is None

    @pytest.mark.asyncio
    async def test_save_load_delete(self, blob: EncryptedBlob) -> None:
        storage = MemoryBlobStorage()
        await storage.save(blob)
        await storage.save_metadata(METADATA)
        assert await storage.load() == blob
        assert await storage.load_metadata() == METADATA

        await storage.delete()
        assert await storage.load() is None
        assert await storage.load_metadata() is None


# ---------------------------------------------------------------------------
# Files
# ---------------------------------------------------------------------------


class TestFileBlobStorage:
    """Tests for the JSON file backend."""

    @pytest.mark.asyncio
    async def test_save_and_load(self, tmp_path, blob: EncryptedBlob) -> None:
        storage = FileBlobStorage(tmp_path / "keys")
        await storage.save(blob)
        assert (tmp_path / "keys" / "key.json").exists()
        assert await storage.load() == blob

    @pytest.mark.asyncio
    async def test_files_are_private(self, tmp_path, blob: EncryptedBlob) -> None:
        storage = FileBlobStorage(tmp_path)
        await storage.save(blob)
        await storage.save_metadata(METADATA)
        for path in (storage.blob_path, storage.metadata_path):
            assert stat.S_IMODE(path.stat().st_mode) == 0o600

    @pytest.mark.asyncio
    async def test_save_replaces(self, tmp_path, vault: Vault, blob: EncryptedBlob) -> None:
        storage = FileBlobStorage(tmp_path)
        await storage.save(blob)
        newer = vault.encrypt(b"\x08" * 32, "pw")
        await storage.save(newer)
        assert await storage.load() == newer
        assert not list(tmp_path.glob("*.tmp"))

    @pytest.mark.asyncio
    async def test_delete_when_empty(self, tmp_path) -> None:
        storage = FileBlobStorage(tmp_path)
        await storage.delete()
        assert await storage.load() is None

    @pytest.mark.asyncio
    async def test_corrupted_file(self, tmp_path) -> None:
        storage = FileBlobStorage(tmp_path)
        storage.blob_path.write_text("garbage", encoding="utf-8")
        with pytest.raises(CorruptedBlob):
            await storage.load()

    @pytest.mark.asyncio
    async def test_corrupted_metadata(self, tmp_path) -> None:
        storage = FileBlobStorage(tmp_path)
        storage.metadata_path.write_text('{"mode": 1}', encoding="utf-8")
        with pytest.raises(CorruptedBlob):
            await storage.load_metadata()


# ---------------------------------------------------------------------------
# Keyring
# ---------------------------------------------------------------------------


class TestKeyringBlobStorage:
    """Tests for the OS keyring backend."""

    @pytest.mark.asyncio
    async def test_roundtrip_uses_per_user_entries(self, fake_keyring, blob: EncryptedBlob) -> None:
        storage = KeyringBlobStorage(user_id="alice", service_name="keyhold-test")
        await storage.save(blob)
        await storage.save_metadata(METADATA)

        assert ("keyhold-test", "encrypted_key_alice") in fake_keyring
        assert ("keyhold-test", "session_alice") in fake_keyring
        assert await storage.load() == blob
        assert await storage.load_metadata() == METADATA

    @pytest.mark.asyncio
    async def test_users_are_isolated(self, fake_keyring, blob: EncryptedBlob) -> None:
        await KeyringBlobStorage(user_id="alice").save(blob)
        assert await KeyringBlobStorage(user_id="bob").load() is None

    @pytest.mark.asyncio
    async def test_delete_missing_is_noop(self, fake_keyring) -> None:
        storage = KeyringBlobStorage()
        await storage.delete()
        assert fake_keyring == {}

    @pytest.mark.asyncio
    async def test_backend_failure_is_storage_error(self, monkeypatch) -> None:
        def broken(*args):
            raise KeyringError("locked")

        monkeypatch.setattr(keyring, "get_password", broken)
        with pytest.raises(StorageError):
            await KeyringBlobStorage().load()
