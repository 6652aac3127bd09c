"""
Identity session state machine

The session is the only place a secret key lives in memory. It moves
between four modes:

    ANONYMOUS ──generate / import(remember) / resume / restore_locked──▶ LOCAL_ENCRYPTED
    ANONYMOUS ──import(remember=False)──────────────────────────────────▶ LOCAL_PLAINTEXT
    ANONYMOUS ──bind_external_signer────────────────────────────────────▶ EXTERNAL_SIGNER
    any mode  ──logout──────────────────────────────────────────────────▶ ANONYMOUS

Every transition holds the session lock, computes its result before
touching state, and either completes or leaves the session exactly as it
was. Neither the plaintext secret nor the password is ever persisted.
"""

from enum import Enum
from typing import Iterable, Optional, Sequence, Tuple, Union
import asyncio
import logging
import time

from ..core.crypto import (
    encode_npub,
    encode_nsec,
    generate_secret,
    is_valid_public_key,
    parse_secret_key,
    public_key_from_secret,
    zeroize,
)
from ..core.errors import (
    CorruptedBlob,
    ExternalSignerUnavailable,
    NoKeyAvailable,
    SessionError,
    SigningErrorCode,
    SigningTimeout,
)
from ..core.events import UnsignedEvent, create_event
from ..core.storage import BlobStorage, MemoryBlobStorage, SessionMetadata
from ..core.vault import EncryptedBlob, Vault
from .external import ExternalSigner
from .signer import (
    DEFAULT_SIGNING_TIMEOUT,
    DelegatedMethod,
    EncryptedKeyMethod,
    PlaintextKeyMethod,
    Signer,
    SigningMethod,
    SigningResult,
)

logger = logging.getLogger("keyhold.session")


class SessionMode(str, Enum):
    """Which signing method, if any, is available"""

    ANONYMOUS = "anonymous"
    EXTERNAL_SIGNER = "external_signer"
    LOCAL_PLAINTEXT = "local_plaintext"
    LOCAL_ENCRYPTED = "local_encrypted"


class Identity:
    """
    A public identity and its secret source

    At most one of the in-memory secret, the encrypted blob (locked) or
    an external signer is the active source. The secret never appears in
    repr and is zeroized on logout.
    """

    def __init__(self, public_key: bytes,
                 encrypted_private_key: Optional[EncryptedBlob] = None,
                 private_key_memory: Optional[bytearray] = None):
        if len(public_key) != 32:
            raise ValueError("Public key must be 32 bytes")
        self.public_key = bytes(public_key)
        self.encrypted_private_key = encrypted_private_key
        self._private_key_memory = private_key_memory

    @property
    def public_key_hex(self) -> str:
        return self.public_key.hex()

    @property
    def npub(self) -> str:
        return encode_npub(self.public_key)

    @property
    def has_secret_in_memory(self) -> bool:
        return self._private_key_memory is not None

    def zeroize(self) -> None:
        """Wipe the in-memory secret"""
        zeroize(self._private_key_memory)
        self._private_key_memory = None

    def __repr__(self) -> str:
        return (f"Identity(public_key={self.public_key_hex[:16]}..., "
                f"encrypted={self.encrypted_private_key is not None}, "
                f"in_memory={self.has_secret_in_memory})")


class IdentitySession:
    """Holds the current identity and governs how it can sign"""

    def __init__(
        self,
        storage: Optional[BlobStorage] = None,
        vault: Optional[Vault] = None,
        signer: Optional[Signer] = None,
        unlock_ttl: Optional[float] = None,
        external_timeout: float = DEFAULT_SIGNING_TIMEOUT
    ):
        self.storage = storage if storage is not None else MemoryBlobStorage()
        self.vault = vault or Vault()
        self.signer = signer or Signer(timeout=external_timeout)
        self.unlock_ttl = unlock_ttl
        self.external_timeout = external_timeout

        self._lock = asyncio.Lock()
        self._mode = SessionMode.ANONYMOUS
        self._identity: Optional[Identity] = None
        self._external: Optional[ExternalSigner] = None
        self._unlocked_at: Optional[float] = None

    # State inspection

    @property
    def lock(self) -> asyncio.Lock:
        """Serializes transitions and signatures against this session"""
        return self._lock

    @property
    def mode(self) -> SessionMode:
        return self._mode

    @property
    def identity(self) -> Optional[Identity]:
        return self._identity

    @property
    def public_key(self) -> Optional[bytes]:
        return self._identity.public_key if self._identity else None

    @property
    def public_key_hex(self) -> Optional[str]:
        return self._identity.public_key_hex if self._identity else None

    @property
    def npub(self) -> Optional[str]:
        return self._identity.npub if self._identity else None

    @property
    def is_authenticated(self) -> bool:
        return self._mode != SessionMode.ANONYMOUS

    @property
    def is_unlocked(self) -> bool:
        """True when signing needs no password or external approval"""
        return self._cached_secret() is not None

    def _cached_secret(self) -> Optional[bytearray]:
        identity = self._identity
        if identity is None or identity._private_key_memory is None:
            return None
        if self._mode == SessionMode.LOCAL_ENCRYPTED and self.unlock_ttl is not None:
            if self._unlocked_at is None or time.monotonic() - self._unlocked_at > self.unlock_ttl:
                logger.debug("Unlocked key cache expired")
                identity.zeroize()
                self._unlocked_at = None
                return None
        return identity._private_key_memory

    def signing_method(self, password: Optional[str] = None) -> SigningMethod:
        """Pick the signing method for the current mode; callers hold the lock"""
        if self._mode == SessionMode.ANONYMOUS or self._identity is None:
            raise NoKeyAvailable()
        if self._mode == SessionMode.EXTERNAL_SIGNER:
            return DelegatedMethod(self._external, self._identity.public_key)

        secret = self._cached_secret()
        if secret is not None:
            return PlaintextKeyMethod(secret)
        return EncryptedKeyMethod(self._identity.encrypted_private_key, self.vault, password)

    # Internal helpers

    def _require_mode(self, *allowed: SessionMode) -> None:
        if self._mode not in allowed:
            raise SessionError(
                f"Operation not allowed in {self._mode.value} mode; log out first"
            )

    def _enter(self, mode: SessionMode, identity: Optional[Identity],
               external: Optional[ExternalSigner] = None) -> None:
        previous = self._identity
        self._mode = mode
        self._identity = identity
        self._external = external
        self._unlocked_at = time.monotonic() if identity is not None and identity.has_secret_in_memory else None
        if previous is not None and previous is not identity:
            previous.zeroize()
        logger.info("Session entered %s mode%s", mode.value,
                    f" for {identity.public_key_hex[:8]}..." if identity else "")

    async def _persist(self, blob: EncryptedBlob, public_key: bytes) -> None:
        await self.storage.save(blob)
        await self.storage.save_metadata(SessionMetadata(
            mode=SessionMode.LOCAL_ENCRYPTED.value,
            public_key=public_key.hex(),
        ))

    # Transitions

    async def generate_and_hold_plaintext(self, password: str) -> Tuple[Identity, str]:
        """
        Generate a fresh key, encrypt and persist it

        Returns the identity and the nsec backup string. The backup is
        shown to the user once; the session does not expose it again.
        """
        async with self._lock:
            self._require_mode(SessionMode.ANONYMOUS)
            secret = generate_secret()
            try:
                public_key = public_key_from_secret(secret)
                blob = await self.vault.encrypt_async(secret, password)
                await self._persist(blob, public_key)
                backup = encode_nsec(secret)
            except BaseException:
                zeroize(secret)
                raise

            identity = Identity(public_key, encrypted_private_key=blob, private_key_memory=secret)
            self._enter(SessionMode.LOCAL_ENCRYPTED, identity)
            return identity, backup

    async def import_plaintext(
        self,
        secret: Union[str, bytes, bytearray],
        password: Optional[str] = None,
        remember: bool = False
    ) -> Identity:
        """
        Import an existing key (hex, nsec or raw bytes)

        With remember, the key is encrypted under password and persisted;
        otherwise it lives only in memory and is gone when the process
        ends.
        """
        async with self._lock:
            self._require_mode(SessionMode.ANONYMOUS)
            if remember and not password:
                raise SessionError("A password is required to remember the key")

            parsed = parse_secret_key(secret)
            try:
                public_key = public_key_from_secret(parsed)
                blob = None
                if remember:
                    blob = await self.vault.encrypt_async(parsed, password)
                    await self._persist(blob, public_key)
            except BaseException:
                zeroize(parsed)
                raise

            identity = Identity(public_key, encrypted_private_key=blob, private_key_memory=parsed)
            mode = SessionMode.LOCAL_ENCRYPTED if remember else SessionMode.LOCAL_PLAINTEXT
            self._enter(mode, identity)
            return identity

    async def resume_from_encrypted_blob(
        self,
        password: str,
        blob: Optional[EncryptedBlob] = None
    ) -> Identity:
        """
        Unlock a persisted (or supplied) encrypted key

        Raises NoKeyAvailable when no blob exists and WrongPassword when
        the password does not decrypt it; the session is left unchanged
        in both cases. The decrypted key is cached in memory only.
        """
        async with self._lock:
            self._require_mode(SessionMode.ANONYMOUS, SessionMode.LOCAL_ENCRYPTED)
            from_storage = blob is None
            if from_storage:
                blob = await self.storage.load()
            if blob is None:
                raise NoKeyAvailable("No encrypted key found in storage")

            secret = await self.vault.decrypt_async(blob, password)
            try:
                public_key = public_key_from_secret(secret)
                if from_storage:
                    metadata = await self.storage.load_metadata()
                    if metadata is None or metadata.public_key != public_key.hex():
                        await self.storage.save_metadata(SessionMetadata(
                            mode=SessionMode.LOCAL_ENCRYPTED.value,
                            public_key=public_key.hex(),
                        ))
            except BaseException:
                zeroize(secret)
                raise

            identity = Identity(public_key, encrypted_private_key=blob, private_key_memory=secret)
            self._enter(SessionMode.LOCAL_ENCRYPTED, identity)
            return identity

    async def restore_locked(self) -> Optional[Identity]:
        """
        Re-enter LOCAL_ENCRYPTED from storage without a password

        The session knows the public key but cannot sign until a password
        is supplied. Returns None when nothing usable is stored.
        """
        async with self._lock:
            self._require_mode(SessionMode.ANONYMOUS)
            blob = await self.storage.load()
            metadata = await self.storage.load_metadata()
            if blob is None or metadata is None:
                return None
            try:
                public_key = bytes.fromhex(metadata.public_key)
            except ValueError as e:
                raise CorruptedBlob("Stored public key is not hex") from e
            if not is_valid_public_key(public_key):
                raise CorruptedBlob("Stored public key is invalid")

            identity = Identity(public_key, encrypted_private_key=blob)
            self._enter(SessionMode.LOCAL_ENCRYPTED, identity)
            return identity

    async def bind_external_signer(
        self,
        capability: ExternalSigner,
        timeout: Optional[float] = None
    ) -> Identity:
        """Use an external signer; no secret enters this process"""
        timeout = self.external_timeout if timeout is None else timeout
        async with self._lock:
            self._require_mode(SessionMode.ANONYMOUS)
            try:
                public_key = await asyncio.wait_for(capability.get_public_key(), timeout)
            except asyncio.TimeoutError:
                raise SigningTimeout("External signer did not return a public key in time") from None

            if not is_valid_public_key(bytes(public_key)):
                raise ExternalSignerUnavailable("External signer returned an invalid public key")

            identity = Identity(bytes(public_key))
            self._enter(SessionMode.EXTERNAL_SIGNER, identity, external=capability)
            return identity

    async def change_password(self, old_password: str, new_password: str) -> Identity:
        """Re-encrypt the stored key under a new password"""
        async with self._lock:
            self._require_mode(SessionMode.LOCAL_ENCRYPTED)
            identity = self._identity
            blob = await self.vault.reencrypt_async(identity.encrypted_private_key, old_password, new_password)
            await self._persist(blob, identity.public_key)
            identity.encrypted_private_key = blob
            logger.info("Password changed for %s...", identity.public_key_hex[:8])
            return identity

    async def lock_key(self) -> None:
        """Drop the cached secret; the session stays LOCAL_ENCRYPTED"""
        async with self._lock:
            if self._mode == SessionMode.LOCAL_ENCRYPTED and self._identity is not None:
                self._identity.zeroize()
                self._unlocked_at = None
                logger.info("Key locked")

    async def logout(self, purge_persisted: bool = False) -> None:
        """Zeroize in-memory secrets and return to ANONYMOUS"""
        async with self._lock:
            if purge_persisted:
                await self.storage.delete()
            if self._identity is not None:
                self._identity.zeroize()
            self._enter(SessionMode.ANONYMOUS, None)

    # Event helpers

    def create_event(
        self,
        kind: int,
        content: str,
        tags: Optional[Iterable[Sequence[str]]] = None,
        created_at: Optional[int] = None
    ) -> UnsignedEvent:
        """Build an unsigned event authored by the session identity"""
        if self._identity is None:
            raise NoKeyAvailable()
        return create_event(kind, content, self._identity.public_key_hex, tags, created_at)

    async def sign(
        self,
        event: UnsignedEvent,
        password: Optional[str] = None,
        timeout: Optional[float] = None
    ) -> SigningResult:
        return await self.signer.sign(event, self, password=password, timeout=timeout)

    async def sign_event(
        self,
        kind: int,
        content: str,
        tags: Optional[Iterable[Sequence[str]]] = None,
        password: Optional[str] = None,
        timeout: Optional[float] = None
    ) -> SigningResult:
        """Create and sign an event in one step"""
        if self._identity is None:
            return SigningResult.failure(SigningErrorCode.NO_KEY_AVAILABLE, "No key available for signing")
        event = self.create_event(kind, content, tags)
        return await self.sign(event, password=password, timeout=timeout)


__all__ = ['IdentitySession', 'Identity', 'SessionMode']
