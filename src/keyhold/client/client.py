"""
keyhold client

Ties configuration, storage, the identity session and the publish
coordinator together for applications that want one object to create,
sign and publish events, and to retry endpoints that failed.
"""

from typing import Any, Dict, Iterable, List, Optional, Sequence
import logging

from ..auth.session import IdentitySession
from ..auth.signer import Signer, SigningResult
from ..core.config import KeyholdConfig
from ..core.events import SignedEvent, UnsignedEvent, ensure_valid
from ..core.storage import BlobStorage, FileBlobStorage, KeyringBlobStorage
from ..core.vault import Vault
from .publish import PublishCoordinator, PublishOutcome, Transport
from .transports import DirectoryRelayTransport

logger = logging.getLogger("keyhold.client")


def build_storage(config: KeyholdConfig) -> BlobStorage:
    """Create the storage backend named in the config"""
    if config.storage_backend == "file":
        return FileBlobStorage(config.keys_dir)
    return KeyringBlobStorage(user_id=config.user_id, service_name=config.keyring_service)


class PublishRecord:
    """Publish history entry for one event"""

    def __init__(self, event: SignedEvent, outcome: PublishOutcome, endpoints: List[str]):
        self.event = event
        self.outcome = outcome
        self.endpoints = endpoints


class KeyholdClient:
    """Create, sign and publish events for one local identity"""

    def __init__(
        self,
        config: Optional[KeyholdConfig] = None,
        storage: Optional[BlobStorage] = None,
        transport: Optional[Transport] = None,
        vault: Optional[Vault] = None
    ):
        self.config = config or KeyholdConfig()
        self.storage = storage if storage is not None else build_storage(self.config)
        self.vault = vault or Vault(current_version=self.config.kdf_version)
        self.session = IdentitySession(
            storage=self.storage,
            vault=self.vault,
            signer=Signer(timeout=self.config.signing_timeout),
            unlock_ttl=self.config.unlock_ttl,
            external_timeout=self.config.signing_timeout,
        )
        self.transport = transport or DirectoryRelayTransport(self.config.relays_dir)
        self.coordinator = PublishCoordinator(
            self.transport,
            per_endpoint_timeout=self.config.publish_endpoint_timeout,
            overall_timeout=self.config.publish_overall_timeout,
            required_acks=self.config.required_acks,
            retries=self.config.publish_retries,
            backoff_factor=self.config.publish_backoff_factor,
            retry_delay=self.config.publish_retry_delay,
        )
        self._history: Dict[str, PublishRecord] = {}

    async def initialize(self) -> bool:
        """Restore a locked session from storage; True if an identity was found"""
        identity = await self.session.restore_locked()
        if identity is None:
            logger.debug("No stored identity found")
            return False
        logger.info("Restored identity %s... (locked)", identity.public_key_hex[:8])
        return True

    def create_event(
        self,
        kind: int,
        content: str,
        tags: Optional[Iterable[Sequence[str]]] = None,
        created_at: Optional[int] = None
    ) -> UnsignedEvent:
        """Create and validate an unsigned event for the session identity"""
        event = self.session.create_event(kind, content, tags, created_at)
        return ensure_valid(event)

    async def sign_event(self, event: UnsignedEvent, password: Optional[str] = None) -> SigningResult:
        return await self.session.sign(event, password=password)

    async def publish(self, event: SignedEvent, relays: Optional[Iterable[str]] = None,
                      retries: Optional[int] = None) -> PublishOutcome:
        """Publish a signed event and remember the outcome"""
        endpoints = list(relays) if relays is not None else list(self.config.relays)
        if not endpoints:
            raise ValueError("No relays configured")

        outcome = await self.coordinator.publish(event, endpoints, retries=retries)
        self._history[event.id] = PublishRecord(event, outcome, endpoints)
        return outcome

    async def sign_and_publish(
        self,
        kind: int,
        content: str,
        tags: Optional[Iterable[Sequence[str]]] = None,
        password: Optional[str] = None,
        relays: Optional[Iterable[str]] = None
    ) -> Dict[str, Any]:
        """
        Create, sign and publish in one call

        Returns the signing result and, when signing succeeded, the
        publish outcome. A signing failure such as a missing password is
        returned, not raised, so the caller can prompt and retry.
        """
        event = self.create_event(kind, content, tags)
        result = await self.sign_event(event, password=password)
        if not result.ok:
            return {'signing': result, 'publish': None}
        outcome = await self.publish(result.event, relays)
        return {'signing': result, 'publish': outcome}

    def get_publish_status(self, event_id: str) -> Optional[PublishOutcome]:
        record = self._history.get(event_id)
        return record.outcome if record else None

    async def retry_failed(self, event_id: str) -> PublishOutcome:
        """Republish the same signed event to the endpoints that failed"""
        record = self._history.get(event_id)
        if record is None:
            raise KeyError(f"No publish history for event {event_id}")

        failed = [endpoint for endpoint in record.endpoints if endpoint in record.outcome.failed]
        if not failed:
            return record.outcome

        logger.info("Retrying %d failed endpoint(s) for %s...", len(failed), event_id[:8])
        retry = await self.coordinator.publish(record.event, failed)
        record.outcome = record.outcome.merge(retry)
        return record.outcome

    def get_user_info(self) -> Dict[str, Any]:
        """Get current identity information"""
        return {
            'mode': self.session.mode.value,
            'public_key': self.session.public_key_hex,
            'npub': self.session.npub,
            'unlocked': self.session.is_unlocked,
            'storage': self.config.storage_backend,
            'relays': list(self.config.relays),
        }
