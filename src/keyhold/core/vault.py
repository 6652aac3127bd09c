"""
Password vault for keyhold

Encrypts a raw secret key under a password-derived key with AES-256-GCM.
Key derivation is PBKDF2-HMAC-SHA256 and its cost is selected by the
blob's ``version`` so that old blobs keep decrypting after the iteration
count is raised.
"""

from typing import Any, Dict, Mapping, Optional
import asyncio
import base64
import binascii
import json
import logging
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import CorruptedBlob, UnsupportedVersion, WrongPassword

logger = logging.getLogger("keyhold.vault")

SALT_SIZE = 16
NONCE_SIZE = 12
KEY_SIZE = 32
TAG_SIZE = 16


def zeroize(buffer: Optional[bytearray]) -> None:
    """Overwrite a mutable secret buffer in place"""
    if buffer is None:
        return
    for i in range(len(buffer)):
        buffer[i] = 0


class KdfParams(BaseModel):
    """Key-derivation parameters for one blob version"""

    model_config = ConfigDict(frozen=True)

    iterations: int = Field(..., gt=0, description="PBKDF2-HMAC-SHA256 iteration count")
    hex_payload: bool = Field(False, description="Plaintext is the hex text of the key")


DEFAULT_KDF_PARAMS: Dict[int, KdfParams] = {
    # Legacy browser-storage format: base64(salt || iv || ciphertext) of the hex key
    0: KdfParams(iterations=100_000, hex_payload=True),
    1: KdfParams(iterations=600_000),
}
CURRENT_VERSION = 1


class EncryptedBlob(BaseModel):
    """
    At-rest form of a secret key

    Only ever replaced wholesale; nothing but the Vault interprets it.
    """

    model_config = ConfigDict(frozen=True)

    version: int = Field(..., ge=0, description="KDF parameter version")
    kdf_salt: bytes = Field(..., description="16-byte PBKDF2 salt")
    nonce: bytes = Field(..., description="12-byte AES-GCM nonce")
    ciphertext: bytes = Field(..., description="Ciphertext followed by the GCM tag")

    @field_validator('kdf_salt')
    @classmethod
    def validate_salt(cls, v):
        if len(v) != SALT_SIZE:
            raise ValueError(f"kdf_salt must be {SALT_SIZE} bytes")
        return v

    @field_validator('nonce')
    @classmethod
    def validate_nonce(cls, v):
        if len(v) != NONCE_SIZE:
            raise ValueError(f"nonce must be {NONCE_SIZE} bytes")
        return v

    @field_validator('ciphertext')
    @classmethod
    def validate_ciphertext(cls, v):
        if len(v) <= TAG_SIZE:
            raise ValueError("ciphertext is shorter than the authentication tag")
        return v

    def to_dict(self) -> Dict[str, Any]:
        """Export blob as a JSON-safe dictionary"""
        return {
            'version': self.version,
            'kdf_salt': base64.b64encode(self.kdf_salt).decode('ascii'),
            'nonce': base64.b64encode(self.nonce).decode('ascii'),
            'ciphertext': base64.b64encode(self.ciphertext).decode('ascii'),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'EncryptedBlob':
        """Import blob from dictionary, raising CorruptedBlob on malformed input"""
        try:
            return cls(
                version=data['version'],
                kdf_salt=base64.b64decode(data['kdf_salt'], validate=True),
                nonce=base64.b64decode(data['nonce'], validate=True),
                ciphertext=base64.b64decode(data['ciphertext'], validate=True),
            )
        except (KeyError, TypeError, ValueError, binascii.Error) as e:
            raise CorruptedBlob(f"Malformed encrypted blob: {e}") from e

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)

    @classmethod
    def from_json(cls, text: str) -> 'EncryptedBlob':
        try:
            data = json.loads(text)
        except ValueError as e:
            raise CorruptedBlob(f"Encrypted blob is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise CorruptedBlob("Encrypted blob must be a JSON object")
        return cls.from_dict(data)

    @classmethod
    def from_legacy_string(cls, encoded: str) -> 'EncryptedBlob':
        """Import the legacy single-string format base64(salt || iv || ciphertext)"""
        try:
            raw = base64.b64decode(encoded, validate=True)
            return cls(
                version=0,
                kdf_salt=raw[:SALT_SIZE],
                nonce=raw[SALT_SIZE:SALT_SIZE + NONCE_SIZE],
                ciphertext=raw[SALT_SIZE + NONCE_SIZE:],
            )
        except (ValueError, binascii.Error) as e:
            raise CorruptedBlob(f"Malformed legacy blob: {e}") from e


class Vault:
    """
    Password-based authenticated encryption of a raw secret

    Stateless apart from its parameter table. ``encrypt``/``decrypt`` are
    CPU-heavy; use the ``*_async`` variants from event-loop code.
    """

    def __init__(self, params: Optional[Mapping[int, KdfParams]] = None,
                 current_version: int = CURRENT_VERSION):
        self.params: Dict[int, KdfParams] = dict(params if params is not None else DEFAULT_KDF_PARAMS)
        if current_version not in self.params:
            raise UnsupportedVersion(current_version)
        if self.params[current_version].hex_payload:
            raise ValueError("Current vault version must store raw secrets")
        self.current_version = current_version

    def _params_for(self, version: int) -> KdfParams:
        params = self.params.get(version)
        if params is None:
            raise UnsupportedVersion(version)
        return params

    @staticmethod
    def _derive_key(password: str, salt: bytes, params: KdfParams) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_SIZE,
            salt=salt,
            iterations=params.iterations,
        )
        return kdf.derive(password.encode('utf-8'))

    def encrypt(self, secret: bytes, password: str) -> EncryptedBlob:
        """Encrypt secret under password with a fresh salt and nonce"""
        if not secret:
            raise ValueError("Secret must not be empty")
        params = self._params_for(self.current_version)
        salt = os.urandom(SALT_SIZE)
        nonce = os.urandom(NONCE_SIZE)

        key = self._derive_key(password, salt, params)
        ciphertext = AESGCM(key).encrypt(nonce, bytes(secret), None)

        logger.debug("Encrypted secret with vault version %d", self.current_version)
        return EncryptedBlob(
            version=self.current_version,
            kdf_salt=salt,
            nonce=nonce,
            ciphertext=ciphertext,
        )

    def decrypt(self, blob: EncryptedBlob, password: str) -> bytearray:
        """
        Decrypt blob with password

        Raises WrongPassword when the tag does not verify and
        UnsupportedVersion for unknown blob versions. The caller owns the
        returned buffer and should zeroize it after use.
        """
        params = self._params_for(blob.version)
        key = self._derive_key(password, blob.kdf_salt, params)

        try:
            plaintext = AESGCM(key).decrypt(blob.nonce, blob.ciphertext, None)
        except InvalidTag:
            logger.debug("Vault tag verification failed for version %d blob", blob.version)
            raise WrongPassword() from None

        if params.hex_payload:
            try:
                return bytearray(bytes.fromhex(plaintext.decode('ascii')))
            except ValueError as e:
                raise CorruptedBlob("Legacy blob payload is not a hex key") from e
        return bytearray(plaintext)

    def reencrypt(self, blob: EncryptedBlob, old_password: str, new_password: str) -> EncryptedBlob:
        """Re-encrypt blob under a new password and the current version"""
        secret = self.decrypt(blob, old_password)
        try:
            return self.encrypt(secret, new_password)
        finally:
            zeroize(secret)

    async def encrypt_async(self, secret: bytes, password: str) -> EncryptedBlob:
        """Run encrypt in a worker thread"""
        return await asyncio.to_thread(self.encrypt, secret, password)

    async def decrypt_async(self, blob: EncryptedBlob, password: str) -> bytearray:
        """Run decrypt in a worker thread"""
        return await asyncio.to_thread(self.decrypt, blob, password)

    async def reencrypt_async(self, blob: EncryptedBlob, old_password: str,
                              new_password: str) -> EncryptedBlob:
        return await asyncio.to_thread(self.reencrypt, blob, old_password, new_password)
