"""
External signer capability

An external signer (browser extension bridge, hardware device, remote
signer) holds the secret key outside this process and signs event ids
on request, possibly after a human approves. The session never sees the
secret.
"""

from abc import ABC, abstractmethod
import asyncio

from ..core.crypto import KeyPair
from ..core.errors import ExternalSignerRejected, ExternalSignerUnavailable


class ExternalSigner(ABC):
    """Capability injected into the identity session"""

    @abstractmethod
    async def get_public_key(self) -> bytes:
        """
        Return the 32-byte x-only public key

        Raises ExternalSignerUnavailable or ExternalSignerRejected.
        """

    @abstractmethod
    async def sign_id(self, event_id: bytes) -> bytes:
        """
        Return a 64-byte Schnorr signature over the 32-byte event id

        Raises ExternalSignerUnavailable or ExternalSignerRejected.
        """


class LocalKeyExternalSigner(ExternalSigner):
    """
    External signer backed by a key owned by another in-process component

    Useful for bridging a key managed elsewhere (an agent, a test
    harness) into a session. ``approve`` can veto requests and
    ``delay`` simulates a human approval step.
    """

    def __init__(self, secret: bytes, approve: bool = True, delay: float = 0.0):
        self._keypair = KeyPair.from_secret(secret)
        self.approve = approve
        self.delay = delay
        self.available = True
        self.requests = 0

    def _check_available(self) -> None:
        if not self.available:
            raise ExternalSignerUnavailable("External signer is not available")

    async def get_public_key(self) -> bytes:
        self._check_available()
        return self._keypair.public_key_bytes()

    async def sign_id(self, event_id: bytes) -> bytes:
        self._check_available()
        self.requests += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if not self.approve:
            raise ExternalSignerRejected("User rejected the signing request")
        return self._keypair.sign(event_id)


__all__ = ['ExternalSigner', 'LocalKeyExternalSigner']
