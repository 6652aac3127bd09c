"""
keyhold core module

This module contains the leaf components:
- Vault: password-based authenticated encryption of secret keys
- Event schema, canonical serialization and validation
- secp256k1 key handling and Schnorr signatures
- Storage collaborators for encrypted key material
- Configuration and the error taxonomy
"""

from .errors import (
    KeyholdError,
    VaultError,
    WrongPassword,
    UnsupportedVersion,
    CorruptedBlob,
    SessionError,
    NoKeyAvailable,
    InvalidSecretKey,
    SigningError,
    SigningErrorCode,
    PublishError,
    PublishErrorCode,
    AllEndpointsFailed,
    StorageError,
)
from .vault import Vault, EncryptedBlob, KdfParams
from .events import (
    EventKinds,
    UnsignedEvent,
    SignedEvent,
    canonicalize,
    compute_id,
    compute_id_hex,
    create_event,
    validate_event,
)
from .crypto import KeyPair, sign_event, verify_event, parse_secret_key
from .storage import BlobStorage, FileBlobStorage, KeyringBlobStorage, MemoryBlobStorage
from .config import KeyholdConfig, load_config

__all__ = [
    'KeyholdError',
    'VaultError',
    'WrongPassword',
    'UnsupportedVersion',
    'CorruptedBlob',
    'SessionError',
    'NoKeyAvailable',
    'InvalidSecretKey',
    'SigningError',
    'SigningErrorCode',
    'PublishError',
    'PublishErrorCode',
    'AllEndpointsFailed',
    'StorageError',
    'Vault',
    'EncryptedBlob',
    'KdfParams',
    'EventKinds',
    'UnsignedEvent',
    'SignedEvent',
    'canonicalize',
    'compute_id',
    'compute_id_hex',
    'create_event',
    'validate_event',
    'KeyPair',
    'sign_event',
    'verify_event',
    'parse_secret_key',
    'BlobStorage',
    'FileBlobStorage',
    'KeyringBlobStorage',
    'MemoryBlobStorage',
    'KeyholdConfig',
    'load_config',
]
