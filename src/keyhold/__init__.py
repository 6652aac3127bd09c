"""
keyhold - Local identity custody and signed event publishing

Keeps a user's secp256k1 signing key safe on the local machine and turns
forum actions into signed, content-addressed events that are published
to a set of independent relays.

Key Features:
- Password vault with versioned PBKDF2 + AES-256-GCM encryption
- Identity session spanning in-memory, encrypted and external-signer keys
- Canonical event ids and deterministic BIP-340 Schnorr signatures
- Concurrent fan-out publishing with per-relay results
- Keyring or file storage for the encrypted key
- Rich terminal-based command line client

Usage:
    from keyhold import KeyholdClient, EventKinds

    client = KeyholdClient()
    await client.initialize()
    await client.session.resume_from_encrypted_blob("password")
    result = await client.sign_and_publish(EventKinds.TEXT_NOTE, "Hello!")
"""

__version__ = "0.1.0"
__author__ = "keyhold Contributors"
__license__ = "AGPLv3"

# Core imports
from .core import (
    EncryptedBlob,
    EventKinds,
    KeyholdConfig,
    KeyPair,
    SignedEvent,
    UnsignedEvent,
    Vault,
    load_config,
    verify_event,
)
from .auth import ExternalSigner, IdentitySession, SessionMode, Signer, SigningResult
from .client import KeyholdClient, PublishCoordinator, PublishOutcome

__all__ = [
    'EncryptedBlob',
    'EventKinds',
    'KeyholdConfig',
    'KeyPair',
    'SignedEvent',
    'UnsignedEvent',
    'Vault',
    'load_config',
    'verify_event',
    'ExternalSigner',
    'IdentitySession',
    'SessionMode',
    'Signer',
    'SigningResult',
    'KeyholdClient',
    'PublishCoordinator',
    'PublishOutcome',
]
