"""
Event signing for keyhold

``Signer.sign`` turns an UnsignedEvent into a SignedEvent using whatever
secret source the identity session currently provides:

- PlaintextKeyMethod: a secret held in memory
- EncryptedKeyMethod: an encrypted blob, decrypted for this one signature
- DelegatedMethod: an external signer capability

Failures come back as a SigningResult with an error code instead of an
exception, because most of them (password needed, wrong password,
approval timeout) are expected outcomes the caller handles by prompting
and retrying.
"""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Optional
import asyncio
import logging

from pydantic import BaseModel

from ..core.crypto import attach_signature, schnorr_verify, sign_event, zeroize
from ..core.errors import (
    ExternalSignerRejected,
    ExternalSignerUnavailable,
    SigningError,
    SigningErrorCode,
    SigningTimeout,
    WrongPassword,
)
from ..core.events import SignedEvent, UnsignedEvent, compute_id
from ..core.vault import EncryptedBlob, Vault
from .external import ExternalSigner

if TYPE_CHECKING:
    from .session import IdentitySession

logger = logging.getLogger("keyhold.signer")

DEFAULT_SIGNING_TIMEOUT = 15.0


class SigningResult(BaseModel):
    """Outcome of a signing request"""

    event: Optional[SignedEvent] = None
    error: Optional[SigningErrorCode] = None
    message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.event is not None

    @property
    def needs_password(self) -> bool:
        return self.error == SigningErrorCode.NEEDS_PASSWORD

    def unwrap(self) -> SignedEvent:
        """Return the signed event or raise the corresponding SigningError"""
        if self.event is None:
            raise SigningError(self.error or SigningErrorCode.NO_KEY_AVAILABLE, self.message)
        return self.event

    @classmethod
    def success(cls, event: SignedEvent) -> 'SigningResult':
        return cls(event=event)

    @classmethod
    def failure(cls, code: SigningErrorCode, message: Optional[str] = None) -> 'SigningResult':
        return cls(error=code, message=message or code.value.replace("_", " "))


class SigningMethod(ABC):
    """One way of producing a signature"""

    name = "abstract"

    @abstractmethod
    async def sign(self, event: UnsignedEvent, timeout: float) -> SignedEvent:
        """Sign event or raise SigningError"""


class PlaintextKeyMethod(SigningMethod):
    """Signs with a secret already held in memory"""

    name = "plaintext"

    def __init__(self, secret: bytearray):
        self._secret = secret

    async def sign(self, event: UnsignedEvent, timeout: float) -> SignedEvent:
        return sign_event(event, self._secret)


class EncryptedKeyMethod(SigningMethod):
    """Decrypts the blob for a single signature, then zeroizes the secret"""

    name = "encrypted"

    def __init__(self, blob: EncryptedBlob, vault: Vault, password: Optional[str] = None):
        self._blob = blob
        self._vault = vault
        self._password = password

    async def sign(self, event: UnsignedEvent, timeout: float) -> SignedEvent:
        if self._password is None:
            raise SigningError(SigningErrorCode.NEEDS_PASSWORD, "Password required to decrypt private key")

        try:
            secret = await self._vault.decrypt_async(self._blob, self._password)
        except WrongPassword:
            raise SigningError(SigningErrorCode.WRONG_PASSWORD, "Incorrect password") from None

        try:
            return sign_event(event, secret)
        finally:
            zeroize(secret)


class DelegatedMethod(SigningMethod):
    """Asks an external signer to sign the event id"""

    name = "external"

    def __init__(self, capability: ExternalSigner, public_key: bytes):
        self._capability = capability
        self._public_key = public_key

    async def sign(self, event: UnsignedEvent, timeout: float) -> SignedEvent:
        event_id = compute_id(event)

        try:
            signature = await asyncio.wait_for(self._capability.sign_id(event_id), timeout)
        except asyncio.TimeoutError:
            raise SigningTimeout(f"External signer did not respond within {timeout:g}s") from None
        except ExternalSignerRejected as e:
            raise SigningError(SigningErrorCode.EXTERNAL_REJECTED, str(e)) from e
        except ExternalSignerUnavailable as e:
            raise SigningError(SigningErrorCode.EXTERNAL_UNAVAILABLE, str(e)) from e

        if not schnorr_verify(bytes(signature), event_id, self._public_key):
            raise SigningError(
                SigningErrorCode.INVALID_SIGNATURE,
                "External signer returned a signature that does not verify"
            )
        return attach_signature(event, event_id, bytes(signature))


class Signer:
    """
    Produces signed events for an identity session

    Holds the session lock for the whole request, so a session never has
    two signatures (and two password or approval prompts) in flight.
    """

    def __init__(self, timeout: float = DEFAULT_SIGNING_TIMEOUT):
        self.timeout = timeout

    async def sign(
        self,
        event: UnsignedEvent,
        session: 'IdentitySession',
        password: Optional[str] = None,
        timeout: Optional[float] = None
    ) -> SigningResult:
        """Sign event with the session's current secret source"""
        timeout = self.timeout if timeout is None else timeout

        async with session.lock:
            public_key_hex = session.public_key_hex
            if public_key_hex is None:
                logger.debug("Signing refused: no identity in session")
                return SigningResult.failure(SigningErrorCode.NO_KEY_AVAILABLE, "No key available for signing")

            if event.pubkey != public_key_hex:
                raise ValueError("Event pubkey does not belong to the session identity")

            method = session.signing_method(password)
            logger.debug("Signing kind %d event with %s method for %s...",
                         event.kind, method.name, public_key_hex[:8])
            try:
                signed = await method.sign(event, timeout)
            except SigningError as e:
                logger.info("Signing failed (%s): %s", e.code.value, e)
                return SigningResult.failure(e.code, str(e))

        return SigningResult.success(signed)


__all__ = [
    'Signer',
    'SigningResult',
    'SigningMethod',
    'PlaintextKeyMethod',
    'EncryptedKeyMethod',
    'DelegatedMethod',
]
