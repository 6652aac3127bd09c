"""Shared test fixtures for keyhold."""

from __future__ import annotations

import asyncio
from typing import Dict, List, Optional, Tuple

import pytest

from keyhold.auth.session import IdentitySession
from keyhold.core.crypto import KeyPair, sign_event
from keyhold.core.events import SignedEvent, create_text_note
from keyhold.core.storage import MemoryBlobStorage
from keyhold.core.vault import KdfParams, Vault
from keyhold.client.publish import RelayResponse, Transport

# Cheap KDF so tests don't spend seconds in PBKDF2
FAST_KDF_PARAMS = {
    0: KdfParams(iterations=1_000, hex_payload=True),
    1: KdfParams(iterations=1_000),
}

SECRET_HEX = "0000000000000000000000000000000000000000000000000000000000000003"


@pytest.fixture
def vault() -> Vault:
    """A vault with fast key derivation."""
    return Vault(params=FAST_KDF_PARAMS)


@pytest.fixture
def storage() -> MemoryBlobStorage:
    return MemoryBlobStorage()


@pytest.fixture
def session(storage: MemoryBlobStorage, vault: Vault) -> IdentitySession:
    """An anonymous session backed by memory storage."""
    return IdentitySession(storage=storage, vault=vault, external_timeout=1.0)


@pytest.fixture
def keypair() -> KeyPair:
    return KeyPair.from_secret(bytes.fromhex(SECRET_HEX))


@pytest.fixture
def signed_event(keypair: KeyPair) -> SignedEvent:
    """A valid signed text note."""
    unsigned = create_text_note(keypair.public_key_hex(), "hello relays", created_at=1_700_000_000)
    return sign_event(unsigned, keypair.secret_bytes())


class ScriptedTransport(Transport):
    """
    Transport whose endpoints follow a script.

    Each endpoint maps to (action, delay, message) where action is one of
    "ack", "reject", "hang" or "error".
    """

    def __init__(self, script: Dict[str, Tuple[str, float, str]]):
        self.script = script
        self.sent: List[Tuple[str, str]] = []
        self.cancelled: List[str] = []

    async def send(self, endpoint: str, event: SignedEvent) -> RelayResponse:
        action, delay, message = self.script.get(endpoint, ("ack", 0.0, ""))
        self.sent.append((endpoint, event.id))
        try:
            if action == "hang":
                await asyncio.Event().wait()
            if delay:
                await asyncio.sleep(delay)
        except asyncio.CancelledError:
            self.cancelled.append(endpoint)
            raise
        if action == "reject":
            return RelayResponse.reject(message)
        if action == "error":
            raise ConnectionError(message or "connection refused")
        return RelayResponse.ack(message)


@pytest.fixture
def scripted_transport():
    """Factory for ScriptedTransport instances."""
    def make(script: Optional[Dict[str, Tuple[str, float, str]]] = None) -> ScriptedTransport:
        return ScriptedTransport(script or {})
    return make
